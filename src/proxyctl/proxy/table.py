"""Authoritative route table keyed by (host, path prefix)."""

from typing import Dict, List, Optional

from ..errors import ConvergenceConflict, InvalidRoute, RootRouteInUse, RootRouteMissing, RouteNotFound
from ..shared.logger import log_debug, log_info
from .routes import ROOT_PREFIX, Route, normalize_host, normalize_path_prefix, route_summary, validate_target


def _ordered(routes: Dict[str, Route]) -> List[Route]:
    """Root route first, then the remaining prefixes in lexical order."""
    return sorted(routes.values(), key=lambda r: (not r.is_root, r.path_prefix))


class RouteTable:
    """In-memory declared routes.

    Invariants enforced on every mutation:
    - at most one root route per host;
    - a non-root route exists only while its host's root route exists;
    - non-root routes never name a TLS source different from the root's.

    The table is not locked internally; callers serialize mutations behind the
    convergence lock.
    """

    def __init__(self):
        self._routes: Dict[str, Dict[str, Route]] = {}
        self.version = 0

    def declare(self, route: Route) -> bool:
        """Declare a route, replacing any prior route at the same key.

        Returns:
            True when the table changed, False for an identical re-declaration.
        """
        try:
            normalize_host(route.host)
            validate_target(route.target)
        except ValueError as e:
            raise InvalidRoute(str(e), host=route.host, path_prefix=route.path_prefix)

        host_routes = self._routes.get(route.host, {})

        if route.is_root:
            for other in host_routes.values():
                if not other.is_root and other.tls and other.tls.source != route.tls_source:
                    raise ConvergenceConflict(
                        f"Route {other.path_prefix} on {route.host} uses {other.tls.source.value} "
                        f"certificates; root route cannot switch to {route.tls_source.value if route.tls else 'no TLS'}",
                        host=route.host, path_prefix=route.path_prefix
                    )
        else:
            root = host_routes.get(ROOT_PREFIX)
            if root is None:
                raise RootRouteMissing(
                    f"Declare the root route for {route.host} before {route.path_prefix}",
                    host=route.host, path_prefix=route.path_prefix
                )
            if route.tls and route.tls.source != root.tls_source:
                raise ConvergenceConflict(
                    f"{route.host} root route uses {root.tls_source.value if root.tls else 'no TLS'}; "
                    f"{route.path_prefix} cannot declare {route.tls.source.value}",
                    host=route.host, path_prefix=route.path_prefix
                )

        if host_routes.get(route.path_prefix) == route:
            log_debug("Route unchanged", component="route_table", host=route.host, path=route.path_prefix)
            return False

        replaced = route.path_prefix in host_routes
        self._routes.setdefault(route.host, {})[route.path_prefix] = route
        self.version += 1
        log_info("Route replaced" if replaced else "Route declared",
                 component="route_table", **route_summary(route))
        return True

    def remove(self, host: str, path_prefix: str = ROOT_PREFIX) -> Route:
        """Remove a declared route and return it."""
        try:
            host = normalize_host(host)
            path_prefix = normalize_path_prefix(path_prefix)
        except ValueError:
            raise RouteNotFound(f"No route for {host}{path_prefix}", host=host, path_prefix=path_prefix)

        host_routes = self._routes.get(host, {})
        route = host_routes.get(path_prefix)
        if route is None:
            raise RouteNotFound(f"No route for {host}{path_prefix}", host=host, path_prefix=path_prefix)

        if route.is_root and len(host_routes) > 1:
            dependents = sorted(p for p in host_routes if p != ROOT_PREFIX)
            raise RootRouteInUse(
                f"Root route for {host} still serves {', '.join(dependents)}",
                host=host, path_prefix=path_prefix
            )

        del host_routes[path_prefix]
        if not host_routes:
            self._routes.pop(host, None)
        self.version += 1
        log_info("Route removed", component="route_table", host=host, path=path_prefix)
        return route

    def get(self, host: str, path_prefix: str = ROOT_PREFIX) -> Optional[Route]:
        return self._routes.get(host, {}).get(path_prefix)

    def root_for(self, host: str) -> Optional[Route]:
        return self.get(host, ROOT_PREFIX)

    def routes_for(self, host: str) -> List[Route]:
        return _ordered(self._routes.get(host, {}))

    def hosts(self) -> List[str]:
        return sorted(self._routes)

    def list(self) -> List[Route]:
        """Snapshot of all routes, grouped by host with the root route first."""
        return [route for host in self.hosts() for route in self.routes_for(host)]

    def by_host(self) -> Dict[str, List[Route]]:
        return {host: self.routes_for(host) for host in self.hosts()}

    def __len__(self) -> int:
        return sum(len(routes) for routes in self._routes.values())

    def __contains__(self, key) -> bool:
        host, path_prefix = key
        return self.get(host, path_prefix) is not None
