"""Convergence engine: reconciles declared routes with the live proxy state.

A pass runs in three phases:

1. Under the convergence lock, snapshot the route table and open ``pending``
   certificate assignments for TLS hosts that need one.
2. Without the lock, acquire certificates. ACME work is serialized inside its
   provider; other hosts and route declarations proceed meanwhile.
3. Under the lock again, record acquisition outcomes (dropping results whose
   declaration changed in between) and apply each host's routes to the
   proxy state, root route first.

Per-host failures are recorded on the host's assignment and never abort the
pass.
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field

from ..certmanager.models import AssignmentState, CertificateAssignment, CertificateMaterial
from ..certmanager.providers import CertificateProvider, Clock, utcnow
from ..errors import AcquisitionError, AuthorityRejected
from ..shared.logger import log_critical, log_debug, log_error, log_info, log_warning
from .routes import CertificateSource, DNSMode, Route, TLSSettings
from .state import ProxyEntry, ProxyState
from .table import RouteTable

Outcome = Union[CertificateMaterial, Exception]


class ConvergenceReport(BaseModel):
    """What a convergence pass (or targeted renewal) changed."""
    applied: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)
    mutations: int = 0


def _entry(route: Route, material: Optional[CertificateMaterial] = None) -> ProxyEntry:
    return ProxyEntry(
        service=route.service,
        host=route.host,
        path=route.path_prefix,
        target=route.target,
        tls=material is not None,
        fingerprint=material.fingerprint if material else None,
        expires_at=material.expires_at if material else None,
        buffering=route.buffering,
        healthcheck_path=route.healthcheck_path,
    )


class ConvergenceEngine:
    """Sole writer of :class:`ProxyState` and of certificate assignments."""

    def __init__(
        self,
        table: RouteTable,
        providers: Dict[CertificateSource, CertificateProvider],
        state: Optional[ProxyState] = None,
        storage=None,
        clock: Clock = utcnow,
    ):
        self.table = table
        self.providers = providers
        self.state = state or ProxyState()
        self.storage = storage
        self.clock = clock
        self.lock = asyncio.Lock()
        self.passes = 0
        self._assignments: Dict[str, CertificateAssignment] = {}
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}
        self._dirty: Set[str] = set()

    # Introspection

    def assignment(self, host: str) -> Optional[CertificateAssignment]:
        return self._assignments.get(host)

    def assignments(self) -> List[CertificateAssignment]:
        return [self._assignments[host] for host in sorted(self._assignments)]

    def provider_for(self, source: CertificateSource) -> Optional[CertificateProvider]:
        return self.providers.get(source)

    # Persistence

    async def restore(self) -> int:
        """Load persisted assignments so restarts reuse issued certificates."""
        if not self.storage:
            return 0
        restored = await self.storage.list_assignments()
        async with self.lock:
            for assignment in restored:
                self._assignments[assignment.host] = assignment
        log_info(f"Restored {len(restored)} certificate assignments", component="convergence")
        return len(restored)

    async def _persist(self) -> None:
        if not self.storage or not self._dirty:
            self._dirty.clear()
            return
        dirty, self._dirty = self._dirty, set()
        for host in sorted(dirty):
            assignment = self._assignments.get(host)
            if assignment is None:
                await self.storage.delete_assignment(host)
            elif assignment.state != AssignmentState.PENDING:
                await self.storage.store_assignment(assignment)

    def _set_assignment(self, assignment: CertificateAssignment) -> None:
        self._assignments[assignment.host] = assignment
        self._dirty.add(assignment.host)

    def _drop_assignment(self, host: str) -> None:
        if self._assignments.pop(host, None) is not None:
            self._dirty.add(host)
            log_info("Certificate assignment released", component="convergence", host=host)

    # Convergence

    def _scope(self, hosts: Optional[Iterable[str]]) -> Set[str]:
        if hosts is not None:
            return {host.strip().lower() for host in hosts}
        return set(self.table.hosts()) | set(self.state.hosts()) | set(self._assignments)

    def _prepare(self, scope: Set[str], retry_failed: bool) -> Dict[str, Tuple[TLSSettings, DNSMode, str]]:
        """Open pending assignments; return the hosts that need an acquisition."""
        pending = {}
        for host in sorted(scope):
            root = self.table.root_for(host)
            current = self._assignments.get(host)

            if root is None or root.tls is None:
                self._drop_assignment(host)
                continue

            tls_key = root.tls.key
            if current is None or current.tls_key != tls_key:
                self._set_assignment(CertificateAssignment(
                    host=host, source=root.tls.source, tls_key=tls_key, updated_at=self.clock()
                ))
                log_info("Certificate assignment opened", component="convergence",
                         host=host, source=root.tls.source.value)
            elif current.state == AssignmentState.FAILED and retry_failed:
                self._set_assignment(current.model_copy(update={
                    "state": AssignmentState.PENDING, "updated_at": self.clock()
                }))
            elif current.state != AssignmentState.PENDING:
                continue

            pending[host] = (root.tls, root.dns_mode, tls_key)
        return pending

    async def _acquire(self, host: str, tls: TLSSettings, dns_mode: DNSMode) -> CertificateMaterial:
        provider = self.providers.get(tls.source)
        if provider is None:
            raise AuthorityRejected(f"No certificate provider configured for {tls.source.value}", host=host)
        return await provider.acquire(host, tls, dns_mode)

    def _acquisition(self, host: str, tls: TLSSettings, dns_mode: DNSMode, tls_key: str) -> asyncio.Task:
        """Start an acquisition, or join the one already in flight for this declaration."""
        key = (host, tls_key)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._acquire(host, tls, dns_mode))
            self._inflight[key] = task

            def _forget(done: asyncio.Task, key=key) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        else:
            log_debug("Joining in-flight acquisition", component="convergence", host=host)
        return task

    async def _await_outcome(self, host: str, task: asyncio.Task) -> Outcome:
        try:
            return await asyncio.shield(task)
        except AcquisitionError as e:
            log_warning(f"Certificate acquisition failed: {e}", component="convergence",
                        host=host, error_type=type(e).__name__)
            return e
        except Exception as e:
            log_error("Unexpected error during certificate acquisition", component="convergence",
                      host=host, error=e)
            return e

    def _record(self, host: str, tls_key: str, outcome: Outcome, report: ConvergenceReport) -> None:
        current = self._assignments.get(host)
        if current is None or current.tls_key != tls_key:
            log_info("Discarding superseded acquisition result", component="convergence", host=host)
            return

        now = self.clock()
        if isinstance(outcome, Exception):
            state = AssignmentState.EXPIRING if current.is_usable(now) else AssignmentState.FAILED
            self._set_assignment(current.model_copy(update={
                "state": state,
                "last_error": str(outcome),
                "error_type": type(outcome).__name__,
                "updated_at": now,
            }))
            report.failed[host] = str(outcome)
        else:
            self._set_assignment(current.model_copy(update={
                "state": AssignmentState.ACTIVE,
                "material": outcome,
                "last_error": None,
                "error_type": None,
                "updated_at": now,
            }))
            log_info("Certificate active", component="convergence", host=host,
                     source=current.source.value, expires_at=outcome.expires_at.isoformat())

    def _desired_entries(self, host: str, now: datetime) -> Tuple[List[ProxyEntry], Optional[CertificateMaterial], bool]:
        """Compute (entries, material, kept_last_known_good) for a host."""
        routes = self.table.routes_for(host)
        if not routes:
            return [], None, False

        root = routes[0]
        if root.tls is None:
            return [_entry(route) for route in routes], None, False

        assignment = self._assignments.get(host)
        if assignment and assignment.is_usable(now):
            material = assignment.material
            return [_entry(route, material) for route in routes], material, False

        binding = self.state.tls_binding(host)
        if binding and binding.expires_at > now:
            declared = {route.path_prefix for route in routes}
            kept = [entry for entry in self.state.entries_for(host) if entry.path in declared and entry.tls]
            return kept, binding, True

        return [], None, False

    def _apply_host(self, host: str, report: ConvergenceReport) -> None:
        now = self.clock()
        had_entries = bool(self.state.entries_for(host))
        desired, material, kept = self._desired_entries(host, now)

        if kept:
            report.skipped.append(host)
        if not desired and had_entries and self.table.routes_for(host):
            binding = self.state.tls_binding(host)
            if binding and binding.expires_at <= now:
                log_critical("Certificate past hard expiry; dropping TLS traffic", component="convergence",
                             host=host, expired_at=binding.expires_at.isoformat())
            else:
                log_warning("No usable certificate; host withdrawn from proxy", component="convergence", host=host)

        mutations = self.state.apply_host(host, desired, material)
        if not mutations:
            return

        report.mutations += mutations
        if desired:
            report.applied.append(host)
        else:
            report.removed.append(host)
        log_info(f"Applied {mutations} proxy changes", component="convergence", host=host)

    async def converge(self, hosts: Optional[Iterable[str]] = None,
                       retry_failed: bool = False) -> ConvergenceReport:
        """Run one convergence pass over ``hosts`` (default: every known host)."""
        report = ConvergenceReport()

        async with self.lock:
            pending = self._prepare(self._scope(hosts), retry_failed)
            tasks = {
                host: (tls_key, self._acquisition(host, tls, dns_mode, tls_key))
                for host, (tls, dns_mode, tls_key) in pending.items()
            }

        outcomes = {}
        for host, (tls_key, task) in tasks.items():
            outcomes[host] = (tls_key, await self._await_outcome(host, task))

        async with self.lock:
            for host, (tls_key, outcome) in outcomes.items():
                self._record(host, tls_key, outcome, report)
            for host in sorted(self._scope(hosts)):
                self._apply_host(host, report)
            self.passes += 1

        await self._persist()
        log_debug("Convergence pass complete", component="convergence",
                  mutations=report.mutations, failed=len(report.failed))
        return report

    async def renew(self, host: str) -> Optional[CertificateAssignment]:
        """Re-acquire a host's certificate and re-converge that host only.

        Returns:
            The updated assignment, or None when the host no longer declares TLS
            or its declaration changed while the acquisition was running.

        Raises:
            AcquisitionError: when the acquisition fails; the assignment is
                marked ``expiring`` (or ``failed`` if it has no usable material).
        """
        async with self.lock:
            assignment = self._assignments.get(host)
            root = self.table.root_for(host)
            if assignment is None or root is None or root.tls is None or root.tls.key != assignment.tls_key:
                return None
            task = self._acquisition(host, root.tls, root.dns_mode, assignment.tls_key)
            tls_key = assignment.tls_key

        log_info("Renewing certificate", component="convergence", host=host)
        outcome = await self._await_outcome(host, task)

        report = ConvergenceReport()
        async with self.lock:
            self._record(host, tls_key, outcome, report)
            self._apply_host(host, report)
            current = self._assignments.get(host)

        await self._persist()

        if isinstance(outcome, Exception):
            raise outcome
        if current is None or current.tls_key != tls_key:
            return None
        return current

    async def drop_expired(self) -> List[str]:
        """Withdraw hosts whose applied certificate has passed its hard expiry."""
        now = self.clock()
        report = ConvergenceReport()
        async with self.lock:
            for host in self.state.hosts():
                binding = self.state.tls_binding(host)
                if binding and binding.expires_at <= now:
                    self._apply_host(host, report)
        return report.removed
