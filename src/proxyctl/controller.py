"""Controller facade wiring the route table, convergence engine and scheduler."""

from typing import Any, Dict, Iterable, List, Optional

from .certmanager.models import AssignmentState
from .certmanager.providers import CertificateProvider, Clock, build_providers, utcnow
from .certmanager.scheduler import RenewalScheduler
from .proxy.convergence import ConvergenceEngine, ConvergenceReport
from .proxy.routes import ROOT_PREFIX, CertificateSource, Route
from .proxy.sni import SNIContextProvider
from .proxy.state import ProxyState
from .proxy.table import RouteTable
from .shared.config import Config
from .shared.logger import log_info, log_warning
from .storage import AsyncRedisStorage


class ProxyController:
    """Operator-facing entry point.

    Route table mutations take the convergence lock, so ``declare`` and
    ``remove`` queue behind a pass in progress and never interleave with it.
    Each mutation is followed by a convergence pass scoped to the host.
    """

    def __init__(
        self,
        providers: Dict[CertificateSource, CertificateProvider],
        storage: Optional[AsyncRedisStorage] = None,
        config: Optional[Config] = None,
        clock: Clock = utcnow,
    ):
        config = config or Config
        self.storage = storage
        self.table = RouteTable()
        self.state = ProxyState(history_size=config.PROXY_HISTORY_SIZE)
        self.engine = ConvergenceEngine(self.table, providers, state=self.state, storage=storage, clock=clock)
        self.scheduler = RenewalScheduler(
            self.engine,
            check_interval=config.RENEWAL_CHECK_INTERVAL,
            backoff_initial=config.RENEWAL_BACKOFF_INITIAL,
            backoff_max=config.RENEWAL_BACKOFF_MAX,
            clock=clock,
        )
        self.sni = SNIContextProvider(self.state)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> 'ProxyController':
        config = config or Config
        storage = None
        redis_url = config.get_redis_url_with_password()
        if redis_url:
            storage = AsyncRedisStorage(redis_url)
        else:
            log_warning("REDIS_URL not set; certificates will not persist across restarts",
                        component="controller")
        return cls(build_providers(config, storage), storage=storage, config=config)

    async def start(self, run_scheduler: bool = True) -> ConvergenceReport:
        """Restore persisted certificates, converge, and start renewals."""
        if self.storage:
            await self.storage.initialize()
            await self.engine.restore()
        report = await self.engine.converge()
        if run_scheduler:
            await self.scheduler.start()
        log_info("Proxy controller started", component="controller",
                 routes=len(self.table), hosts=len(self.state.hosts()))
        return report

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.storage:
            await self.storage.close()
        log_info("Proxy controller stopped", component="controller")

    async def declare(self, route: Route, converge: bool = True) -> Optional[ConvergenceReport]:
        """Declare a route, then converge its host."""
        async with self.engine.lock:
            changed = self.table.declare(route)
        if not converge:
            return None
        if not changed:
            return ConvergenceReport()
        return await self.engine.converge(hosts=[route.host])

    async def remove(self, host: str, path_prefix: str = ROOT_PREFIX,
                     converge: bool = True) -> Optional[ConvergenceReport]:
        """Remove a route, then converge its host."""
        async with self.engine.lock:
            route = self.table.remove(host, path_prefix)
        if not converge:
            return None
        return await self.engine.converge(hosts=[route.host])

    async def apply_declarations(self, routes: Iterable[Route], prune: bool = False) -> ConvergenceReport:
        """Declare a batch of routes and converge once.

        The batch is checked against a scratch table first, so an invalid
        declaration leaves the live table untouched.

        Args:
            routes: Routes to declare
            prune: Remove declared routes absent from ``routes``
        """
        routes = sorted(routes, key=lambda r: (not r.is_root, r.host, r.path_prefix))
        wanted = {route.key for route in routes}

        async with self.engine.lock:
            stale = [route for route in self.table.list() if route.key not in wanted] if prune else []
            scratch = RouteTable()
            stale_keys = {route.key for route in stale}
            for route in self.table.list():
                if route.is_root and route.key not in stale_keys:
                    scratch.declare(route)
            for route in self.table.list():
                if not route.is_root and route.key not in stale_keys:
                    scratch.declare(route)
            for route in routes:
                scratch.declare(route)

            # Non-root before root
            for route in sorted(stale, key=lambda r: r.is_root):
                self.table.remove(route.host, route.path_prefix)
            for route in routes:
                self.table.declare(route)

        return await self.engine.converge()

    async def reconcile(self, retry_failed: bool = False) -> ConvergenceReport:
        """Run a full convergence pass."""
        return await self.engine.converge(retry_failed=retry_failed)

    def routes(self) -> List[Route]:
        return self.table.list()

    def list(self) -> List[Dict[str, Any]]:
        """Rows describing the applied proxy state.

        Declared routes that are not applied yet appear with their
        assignment state (``pending`` or ``failed``) and ``tls: "no"``.
        """
        rows = []
        applied = set()
        for entry in self.state.list():
            assignment = self.engine.assignment(entry.host)
            state = assignment.state.value if entry.tls and assignment else AssignmentState.ACTIVE.value
            rows.append({
                "service": entry.service,
                "host": entry.host,
                "path": entry.path,
                "target": entry.target,
                "state": state,
                "tls": "yes" if entry.tls else "no",
            })
            applied.add((entry.host, entry.path))

        for route in self.table.list():
            if route.key in applied:
                continue
            assignment = self.engine.assignment(route.host)
            rows.append({
                "service": route.service,
                "host": route.host,
                "path": route.path_prefix,
                "target": route.target,
                "state": assignment.state.value if assignment else AssignmentState.PENDING.value,
                "tls": "no",
            })

        return sorted(rows, key=lambda r: (r["host"], r["path"] != ROOT_PREFIX, r["path"]))

    def certificates(self) -> List[Dict[str, Any]]:
        return [assignment.summary() for assignment in self.engine.assignments()]
