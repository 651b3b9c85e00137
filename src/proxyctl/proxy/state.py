"""Live reverse-proxy state as applied by the convergence engine."""

from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..certmanager.models import CertificateMaterial
from ..shared.config import Config
from ..shared.logger import log_trace
from .routes import ROOT_PREFIX, BufferingSettings


class ProxyEntry(BaseModel):
    """One active route in the proxy."""
    model_config = ConfigDict(frozen=True)

    service: str = ""
    host: str
    path: str
    target: str
    tls: bool = False
    fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None
    buffering: BufferingSettings = Field(default_factory=BufferingSettings)
    healthcheck_path: str = "/up"

    @property
    def is_root(self) -> bool:
        return self.path == ROOT_PREFIX


class ProxyMutation(BaseModel):
    """A single applied change, kept in the state's history."""
    model_config = ConfigDict(frozen=True)

    op: str  # add, update, remove
    host: str
    path: str
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _root_first(entries) -> List[ProxyEntry]:
    return sorted(entries, key=lambda e: (not e.is_root, e.path))


class ProxyState:
    """Applied routes and TLS bindings, swapped atomically per host.

    Only the convergence engine calls :meth:`apply_host`; everything else
    reads snapshots.
    """

    def __init__(self, history_size: int = Config.PROXY_HISTORY_SIZE):
        self._hosts: Dict[str, Dict[str, ProxyEntry]] = {}
        self._bindings: Dict[str, CertificateMaterial] = {}
        self.mutation_count = 0
        self.history: Deque[ProxyMutation] = deque(maxlen=history_size)

    def hosts(self) -> List[str]:
        return sorted(self._hosts)

    def entries_for(self, host: str) -> List[ProxyEntry]:
        return _root_first(self._hosts.get(host, {}).values())

    def entry(self, host: str, path: str) -> Optional[ProxyEntry]:
        return self._hosts.get(host, {}).get(path)

    def list(self) -> List[ProxyEntry]:
        return [entry for host in self.hosts() for entry in self.entries_for(host)]

    def tls_binding(self, host: str) -> Optional[CertificateMaterial]:
        return self._bindings.get(host)

    def apply_host(self, host: str, desired: List[ProxyEntry],
                   material: Optional[CertificateMaterial] = None) -> int:
        """Replace a host's entries in one step.

        Removals are recorded non-root first, additions root first.

        Returns:
            Number of entry mutations; 0 when ``desired`` matches what is applied.
        """
        desired_map = {entry.path: entry for entry in desired}
        if desired_map and ROOT_PREFIX not in desired_map:
            raise ValueError(f"Refusing to apply non-root routes for {host} without its root route")
        if any(entry.tls for entry in desired) and material is None:
            raise ValueError(f"TLS routes for {host} need certificate material")

        current = self._hosts.get(host, {})
        mutations: List[ProxyMutation] = []

        for path in sorted(current, key=lambda p: (p == ROOT_PREFIX, p)):
            if path not in desired_map:
                mutations.append(ProxyMutation(op="remove", host=host, path=path))

        for entry in _root_first(desired):
            existing = current.get(entry.path)
            if existing is None:
                mutations.append(ProxyMutation(op="add", host=host, path=entry.path))
            elif existing != entry:
                mutations.append(ProxyMutation(op="update", host=host, path=entry.path))

        if not mutations:
            return 0

        if desired_map:
            self._hosts[host] = desired_map
        else:
            self._hosts.pop(host, None)

        if material is not None and desired_map:
            self._bindings[host] = material
        else:
            self._bindings.pop(host, None)

        for mutation in mutations:
            log_trace(f"proxy {mutation.op} {host}{mutation.path}", component="proxy_state")
        self.history.extend(mutations)
        self.mutation_count += len(mutations)
        return len(mutations)
