"""ProxyState and controller facade tests."""

from datetime import timedelta

import pytest

from proxyctl.certmanager.models import CertificateMaterial
from proxyctl.controller import ProxyController
from proxyctl.errors import RootRouteMissing
from proxyctl.proxy.routes import CertificateSource
from proxyctl.proxy.state import ProxyEntry, ProxyState
from proxyctl.shared.config import Config


def entry(path="/", target="svc-a", tls=False, material=None):
    return ProxyEntry(
        host="app.example", path=path, target=target, tls=tls,
        fingerprint=material.fingerprint if material else None,
        expires_at=material.expires_at if material else None,
    )


@pytest.fixture
def material(clock):
    return CertificateMaterial(fullchain_pem="chain", private_key_pem="key",
                               expires_at=clock.now + timedelta(days=90), fingerprint="sha256:abc")


@pytest.mark.proxy
class TestProxyState:

    def test_rejects_non_root_without_root(self):
        state = ProxyState()
        with pytest.raises(ValueError):
            state.apply_host("app.example", [entry(path="/api")])
        assert state.hosts() == []

    def test_rejects_tls_without_material(self):
        state = ProxyState()
        with pytest.raises(ValueError):
            state.apply_host("app.example", [entry(tls=True)])

    def test_apply_update_remove(self, material):
        state = ProxyState()
        assert state.apply_host("app.example", [entry(path="/api", tls=True, material=material),
                                                entry(tls=True, material=material)], material) == 2
        assert [m.op for m in state.history] == ["add", "add"]
        assert [m.path for m in state.history] == ["/", "/api"]
        assert state.tls_binding("app.example") == material

        assert state.apply_host("app.example", [entry(target="svc-b")]) == 2
        assert [(m.op, m.path) for m in list(state.history)[2:]] == [("remove", "/api"), ("update", "/")]
        assert state.tls_binding("app.example") is None

        assert state.apply_host("app.example", []) == 1
        assert state.hosts() == []
        assert state.mutation_count == 5

    def test_unchanged_apply_is_free(self):
        state = ProxyState()
        state.apply_host("app.example", [entry()])
        assert state.apply_host("app.example", [entry()]) == 0
        assert len(state.history) == 1

    def test_history_bounded(self):
        state = ProxyState(history_size=3)
        for i in range(5):
            state.apply_host("app.example", [entry(target=f"svc-{i}")])
        assert len(state.history) == 3
        assert state.mutation_count == 5


@pytest.mark.proxy
class TestController:

    @pytest.mark.asyncio
    async def test_invalid_batch_leaves_table_untouched(self, controller, route):
        await controller.declare(route(host="keep.example"))
        with pytest.raises(RootRouteMissing):
            await controller.apply_declarations([route(), route(host="other.example", path_prefix="/api")])
        assert controller.table.hosts() == ["keep.example"]

    @pytest.mark.asyncio
    async def test_prune_removes_undeclared(self, controller, route):
        await controller.apply_declarations([route(host="a.example"), route(host="b.example")])
        await controller.apply_declarations([route(host="b.example")], prune=True)
        assert controller.table.hosts() == ["b.example"]
        assert controller.state.hosts() == ["b.example"]

    @pytest.mark.asyncio
    async def test_batch_without_prune_keeps_existing(self, controller, route):
        await controller.declare(route(host="a.example"))
        await controller.apply_declarations([route(host="a.example", path_prefix="/api")])
        assert [r.path_prefix for r in controller.routes()] == ["/", "/api"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, controller, route, static_tls):
        await controller.declare(route(tls=static_tls), converge=False)
        report = await controller.start(run_scheduler=False)
        assert report.applied == ["app.example"]
        assert controller.certificates()[0]["state"] == "active"
        await controller.stop()

    def test_from_config_without_redis_or_acme(self):
        class Local(Config):
            REDIS_URL = None
            ACME_EMAIL = None

        controller = ProxyController.from_config(Local)
        assert controller.storage is None
        assert set(controller.engine.providers) == {CertificateSource.STATIC}

    def test_from_config_with_redis(self):
        class Persistent(Config):
            REDIS_URL = "redis://redis:6379/0"
            REDIS_PASSWORD = "secret"
            ACME_EMAIL = None

        controller = ProxyController.from_config(Persistent)
        assert controller.storage.redis_url == "redis://:secret@redis:6379/0"


@pytest.mark.proxy
class TestConfig:

    def test_defaults_validate(self):
        Config.validate()

    def test_invalid_values_collected(self):
        class Broken(Config):
            API_PORT = 0
            RENEWAL_BACKOFF_INITIAL = 7200
            RENEWAL_BACKOFF_MAX = 3600

        with pytest.raises(ValueError) as excinfo:
            Broken.validate()
        assert "API_PORT" in str(excinfo.value)
        assert "RENEWAL_BACKOFF_INITIAL" in str(excinfo.value)
