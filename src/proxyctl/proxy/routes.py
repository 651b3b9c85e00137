"""Route models for host/path-prefix routing."""

import hashlib
import re
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import InvalidRoute

ROOT_PREFIX = "/"

_HOST_LABEL = re.compile(r'^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$')
_NAME_TARGET = re.compile(r'^[A-Za-z0-9]([A-Za-z0-9_.-]*[A-Za-z0-9])?(:(?P<port>\d{1,5}))?$')


class CertificateSource(str, Enum):
    """Where a host's certificate comes from."""
    STATIC = "static"  # Operator-supplied PEM pair
    ACME = "acme"      # Acquired via ACME HTTP-01


class DNSMode(str, Enum):
    """How DNS for a host resolves."""
    DIRECT = "direct"    # Resolves straight to this controller
    PROXIED = "proxied"  # An intermediary (CDN) intercepts traffic


def normalize_host(value: str) -> str:
    """Lower-case and validate a DNS host name."""
    host = (value or "").strip().lower().rstrip('.')
    if not host:
        raise ValueError("host cannot be empty")
    if len(host) > 253:
        raise ValueError(f"host too long: {host}")
    for label in host.split('.'):
        if not _HOST_LABEL.match(label):
            raise ValueError(f"Invalid host name: {value}")
    return host


def normalize_path_prefix(value: str) -> str:
    """Validate a path prefix; strip trailing slashes except for the root."""
    prefix = (value or ROOT_PREFIX).strip()
    if not prefix.startswith('/'):
        raise ValueError(f"path_prefix must start with '/': {value}")
    if any(c in prefix for c in ' ?#'):
        raise ValueError(f"path_prefix contains invalid characters: {value}")
    prefix = prefix.rstrip('/')
    return prefix or ROOT_PREFIX


def _check_port(port: Optional[int], value: str) -> None:
    if port is not None and not (1 <= port <= 65535):
        raise ValueError(f"Port must be between 1 and 65535 in target: {value}")


def validate_target(value: str) -> str:
    """Check a backend address is resolvable syntax (not liveness).

    Accepts ``http(s)://host[:port][/path]`` or ``name[:port]``.
    """
    target = (value or "").strip()
    if not target:
        raise ValueError("target cannot be empty")
    if '://' in target:
        parsed = urlparse(target)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(f"target URL must use http or https: {value}")
        if not parsed.hostname:
            raise ValueError(f"target URL has no host: {value}")
        try:
            port = parsed.port
        except ValueError:
            raise ValueError(f"Invalid port in target: {value}")
        _check_port(port, value)
        return target
    match = _NAME_TARGET.match(target)
    if not match:
        raise ValueError(f"Invalid target: {value}")
    port = match.group('port')
    _check_port(int(port) if port else None, value)
    return target


class TLSSettings(BaseModel):
    """TLS declaration carried by a route."""
    model_config = ConfigDict(frozen=True)

    source: CertificateSource
    certificate_pem: Optional[str] = Field(None, repr=False)
    private_key_pem: Optional[str] = Field(None, repr=False)

    @model_validator(mode='after')
    def check_material(self) -> 'TLSSettings':
        has_cert = bool(self.certificate_pem)
        has_key = bool(self.private_key_pem)
        if self.source == CertificateSource.STATIC and not (has_cert and has_key):
            raise ValueError("static TLS requires certificate_pem and private_key_pem")
        if self.source == CertificateSource.ACME and (has_cert or has_key):
            raise ValueError("acme TLS must not carry certificate material")
        return self

    @property
    def key(self) -> str:
        """Identity of the declaration; changes whenever the host needs a new acquisition."""
        if self.source == CertificateSource.STATIC:
            digest = hashlib.sha256(
                (self.certificate_pem + self.private_key_pem).encode('utf-8')
            ).hexdigest()[:16]
            return f"static:{digest}"
        return "acme"


class BufferingSettings(BaseModel):
    """Request/response buffering limits passed through to the proxy."""
    model_config = ConfigDict(frozen=True)

    requests: bool = True
    responses: bool = True
    max_request_body: int = Field(0, ge=0, description="0 = unlimited")
    max_response_body: int = Field(0, ge=0, description="0 = unlimited")
    memory: int = Field(1_000_000, ge=0, description="Bytes buffered in memory before spooling to disk")


class Route(BaseModel):
    """A desired mapping from (host, path prefix) to a backend target."""
    model_config = ConfigDict(frozen=True)

    service: str = Field("", description="Owning service name, informational")
    host: str
    path_prefix: str = ROOT_PREFIX
    target: str
    tls: Optional[TLSSettings] = None
    dns_mode: DNSMode = DNSMode.DIRECT
    buffering: BufferingSettings = Field(default_factory=BufferingSettings)
    healthcheck_path: str = "/up"

    @field_validator('host')
    @classmethod
    def check_host(cls, v: str) -> str:
        return normalize_host(v)

    @field_validator('path_prefix')
    @classmethod
    def check_path_prefix(cls, v: str) -> str:
        return normalize_path_prefix(v)

    @field_validator('target')
    @classmethod
    def check_target(cls, v: str) -> str:
        return validate_target(v)

    @field_validator('healthcheck_path')
    @classmethod
    def validate_healthcheck_path(cls, v: str) -> str:
        if not v.startswith('/'):
            raise ValueError("healthcheck_path must start with '/'")
        return v

    @property
    def is_root(self) -> bool:
        return self.path_prefix == ROOT_PREFIX

    @property
    def key(self) -> Tuple[str, str]:
        return (self.host, self.path_prefix)

    @property
    def tls_source(self) -> Optional[CertificateSource]:
        return self.tls.source if self.tls else None


def build_route(**fields: Any) -> Route:
    """Construct a Route, converting validation failures to InvalidRoute."""
    try:
        return Route(**fields)
    except ValidationError as e:
        messages = "; ".join(err['msg'] for err in e.errors())
        raise InvalidRoute(f"Invalid route: {messages}",
                           host=fields.get('host'), path_prefix=fields.get('path_prefix'))


def route_summary(route: Route) -> Dict[str, Any]:
    """Loggable description of a route without key material."""
    return {
        "service": route.service,
        "host": route.host,
        "path": route.path_prefix,
        "target": route.target,
        "tls": route.tls_source.value if route.tls else None,
    }
