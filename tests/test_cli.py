"""CLI tests with click's CliRunner and a mocked API transport."""

import json
import textwrap

import httpx
import pytest
from click.testing import CliRunner

from proxyctl.cli import CLIContext, cli

WIDE = {"COLUMNS": "200"}


@pytest.fixture
def runner():
    return CliRunner()


def api(handler):
    return CLIContext("http://api.test", transport=httpx.MockTransport(handler))


@pytest.mark.cli
class TestValidate:

    def test_valid_file(self, runner, tmp_path):
        path = tmp_path / "services.yml"
        path.write_text(textwrap.dedent("""\
            services:
              web:
                host: app.example
                app_port: 3000
              api:
                host: app.example
                path_prefix: /api
                target: api:8080
        """))
        result = runner.invoke(cli, ["validate", str(path)], env=WIDE)
        assert result.exit_code == 0, result.output
        assert "2 routes across 1 hosts are valid" in result.output

    def test_non_root_without_root(self, runner, tmp_path):
        path = tmp_path / "services.yml"
        path.write_text(textwrap.dedent("""\
            services:
              api:
                host: app.example
                path_prefix: /api
                target: api:8080
        """))
        result = runner.invoke(cli, ["validate", str(path)], env=WIDE)
        assert result.exit_code == 1

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate", str(tmp_path / "nope.yml")])
        assert result.exit_code == 2


@pytest.mark.cli
class TestApiCommands:

    def test_routes_table(self, runner):
        def handler(request):
            assert request.url.path == "/routes/"
            return httpx.Response(200, json=[{
                "service": "web", "host": "app.example", "path": "/", "target": "web:3000",
                "state": "active", "tls": "yes",
            }])

        result = runner.invoke(cli, ["routes"], obj=api(handler), env=WIDE)
        assert result.exit_code == 0, result.output
        assert "app.example" in result.output
        assert "web:3000" in result.output

    def test_empty_certificates(self, runner):
        result = runner.invoke(cli, ["certificates"], obj=api(lambda r: httpx.Response(200, json=[])), env=WIDE)
        assert result.exit_code == 0
        assert "No certificates" in result.output

    def test_reconcile_passes_retry_flag(self, runner):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"applied": [], "removed": [], "skipped": [],
                                             "failed": {"api.example": "timed out"}, "mutations": 2})

        result = runner.invoke(cli, ["reconcile", "--retry-failed"], obj=api(handler), env=WIDE)
        assert result.exit_code == 0, result.output
        assert seen["params"] == {"retry_failed": "true"}
        assert "2 changes" in result.output
        assert "api.example" in result.output

    def test_api_error_reported(self, runner):
        def handler(request):
            return httpx.Response(500, content=json.dumps({"detail": "boom"}))

        result = runner.invoke(cli, ["routes"], obj=api(handler))
        assert result.exit_code == 1
        assert "boom" in result.output

    def test_unreachable_api(self, runner):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = runner.invoke(cli, ["certificates"], obj=api(handler))
        assert result.exit_code == 1
        assert "Cannot reach API" in result.output
