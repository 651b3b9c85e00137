"""Exception taxonomy for the proxy route controller.

Route errors are raised at declaration time and surface to the caller.
Acquisition errors are raised by certificate providers; the convergence
engine records them on the host's assignment instead of propagating them.
"""

from typing import Optional


class ProxyControllerError(Exception):
    """Base class for all controller errors."""


class RouteError(ProxyControllerError):
    """Declaration-time error against the route table."""

    def __init__(self, message: str, host: Optional[str] = None, path_prefix: Optional[str] = None):
        super().__init__(message)
        self.host = host
        self.path_prefix = path_prefix


class InvalidRoute(RouteError):
    """Route fields fail syntax validation."""


class RootRouteMissing(RouteError):
    """A non-root route was declared before its host's root route."""


class RootRouteInUse(RouteError):
    """A root route was removed while non-root routes still depend on it."""


class RouteNotFound(RouteError):
    """No route is declared for the given host and path prefix."""


class ConvergenceConflict(RouteError):
    """Declarations disagree on the certificate source for a host."""


class AcquisitionError(ProxyControllerError):
    """Certificate acquisition failed for a host."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class ValidationUnreachable(AcquisitionError):
    """The authority could not reach the validation channel for the host."""


class ValidationTimeout(AcquisitionError):
    """Acquisition did not complete within the configured timeout."""


class RateLimited(AcquisitionError):
    """The authority's issuance quota for the host is exhausted."""

    def __init__(self, message: str, host: Optional[str] = None, retry_after: Optional[str] = None):
        super().__init__(message, host=host)
        self.retry_after = retry_after


class AuthorityRejected(AcquisitionError):
    """The authority refused a malformed or policy-violating request."""


class AuthorityUnavailable(AcquisitionError):
    """The authority's directory could not be contacted."""


class CertificateMaterialInvalid(AcquisitionError):
    """Operator-supplied certificate or key does not parse, or the pair does not match."""
