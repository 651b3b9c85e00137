"""Command-line interface for the proxy route controller.

Examples:

\b
    proxyctl validate services.yml
    proxyctl serve --config services.yml
    proxyctl routes
    proxyctl certificates
    proxyctl reconcile --retry-failed
"""

import sys
from typing import Any, Dict, List, Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

from .errors import ProxyControllerError
from .shared.config import Config

console = Console()
err_console = Console(stderr=True)


class CLIContext:
    """Shared state handed to commands via ``click.pass_obj``."""

    def __init__(self, api_url: str, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def request(self, method: str, path: str, **kwargs) -> Any:
        with httpx.Client(base_url=self.api_url, timeout=self.timeout, transport=self.transport) as client:
            response = client.request(method, path, **kwargs)
        if response.is_error:
            try:
                detail = response.json().get('detail', response.text)
            except ValueError:
                detail = response.text
            raise click.ClickException(f"API returned {response.status_code}: {detail}")
        return response.json()

    def output(self, rows: List[Dict[str, Any]], columns: List[str], title: str) -> None:
        if not rows:
            console.print(f"[yellow]No {title.lower()}[/yellow]")
            return
        table = Table(title=title)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*[str(row.get(column) if row.get(column) is not None else "-") for column in columns])
        console.print(table)

    def handle_error(self, error: Exception) -> None:
        if isinstance(error, httpx.HTTPError):
            raise click.ClickException(f"Cannot reach API at {self.api_url}: {error}")
        raise error


@click.group()
@click.option('--api-url', envvar='API_URL', default=Config.API_URL, show_default=True,
              help='Control API base URL')
@click.pass_context
def cli(ctx, api_url):
    """Proxy route and certificate controller."""
    if ctx.obj is None:
        ctx.obj = CLIContext(api_url)


@cli.command()
@click.argument('config', type=click.Path(exists=True, dir_okay=False))
def validate(config):
    """Validate a declarations file without applying it."""
    from .declarations import load_declarations
    from .proxy.table import RouteTable

    try:
        routes = load_declarations(config)
        table = RouteTable()
        for route in routes:
            table.declare(route)
    except ProxyControllerError as e:
        err_console.print(f"[red]✗ {type(e).__name__}: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ {len(routes)} routes across {len(table.hosts())} hosts are valid[/green]")


@cli.command()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='Declarations file applied at startup')
def serve(config_path):
    """Run the controller and its control API."""
    from .main import main
    main(config_path)


@cli.command()
@click.pass_obj
def routes(ctx):
    """List applied routes."""
    try:
        rows = ctx.request('GET', '/routes/')
    except httpx.HTTPError as e:
        ctx.handle_error(e)
    ctx.output(rows, ['service', 'host', 'path', 'target', 'state', 'tls'], title="Routes")


@cli.command()
@click.pass_obj
def certificates(ctx):
    """List certificate assignments."""
    try:
        rows = ctx.request('GET', '/certificates/')
    except httpx.HTTPError as e:
        ctx.handle_error(e)
    ctx.output(rows, ['host', 'source', 'state', 'expires_at', 'error_type'], title="Certificates")


@cli.command()
@click.option('--retry-failed', is_flag=True, help='Retry hosts whose acquisition failed')
@click.pass_obj
def reconcile(ctx, retry_failed):
    """Trigger a convergence pass."""
    try:
        report = ctx.request('POST', '/reconcile', params={'retry_failed': str(retry_failed).lower()})
    except httpx.HTTPError as e:
        ctx.handle_error(e)

    console.print(f"[green]Convergence complete:[/green] {report['mutations']} changes")
    for host, error in sorted(report.get('failed', {}).items()):
        console.print(f"  [red]✗ {host}[/red]: {error}")


def main():
    cli()


if __name__ == '__main__':
    main()
