"""Declared intent loaded from a YAML services file.

Example::

    services:
      web:
        host: app.example
        app_port: 3000
        ssl: true
      api:
        hosts: [app.example]
        path_prefix: /api
        target: http://api:8080
        ssl: true
      legacy:
        host: legacy.example
        target: legacy:80
        ssl:
          certificate_pem: LEGACY_CERT_PEM
          private_key_pem: LEGACY_KEY_PEM

PEM values that do not start with ``-----BEGIN`` name an environment
variable holding the PEM, so secrets stay out of the file.
"""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import InvalidRoute
from .proxy.routes import (
    ROOT_PREFIX,
    BufferingSettings,
    CertificateSource,
    DNSMode,
    Route,
    TLSSettings,
    build_route,
)

PEM_MARKER = "-----BEGIN"


class StaticSSL(BaseModel):
    """Operator-supplied certificate, inline or by environment variable name."""
    model_config = ConfigDict(extra='forbid')

    certificate_pem: str
    private_key_pem: str


class HealthcheckSettings(BaseModel):
    model_config = ConfigDict(extra='forbid')

    path: str = "/up"
    interval: int = Field(1, gt=0, description="Seconds between checks")
    timeout: int = Field(5, gt=0, description="Seconds before a check fails")


class ServiceDeclaration(BaseModel):
    """One service entry of the declarations file."""
    model_config = ConfigDict(extra='forbid')

    host: Optional[str] = None
    hosts: List[str] = Field(default_factory=list)
    path_prefix: str = ROOT_PREFIX
    target: Optional[str] = None
    app_port: Optional[int] = Field(None, ge=1, le=65535)
    ssl: Union[bool, StaticSSL] = False
    dns_mode: DNSMode = DNSMode.DIRECT
    buffering: BufferingSettings = Field(default_factory=BufferingSettings)
    healthcheck: HealthcheckSettings = Field(default_factory=HealthcheckSettings)

    @model_validator(mode='after')
    def check_service(self) -> 'ServiceDeclaration':
        if self.host and self.hosts:
            raise ValueError("use either host or hosts, not both")
        if not self.host and not self.hosts:
            raise ValueError("host or hosts is required")
        if self.target and self.app_port:
            raise ValueError("use either target or app_port, not both")
        return self

    def all_hosts(self) -> List[str]:
        return [self.host] if self.host else list(self.hosts)


class DeclarationsFile(BaseModel):
    model_config = ConfigDict(extra='forbid')

    services: Dict[str, ServiceDeclaration] = Field(default_factory=dict)


def resolve_pem(value: str, environ: Mapping[str, str], service: str) -> str:
    """Return inline PEM as-is, otherwise look it up as an environment variable."""
    if value.lstrip().startswith(PEM_MARKER):
        return value
    pem = environ.get(value)
    if not pem:
        raise InvalidRoute(f"Service {service}: environment variable {value} holding a PEM is not set")
    return pem


def _tls_for(service: str, decl: ServiceDeclaration, environ: Mapping[str, str]) -> Optional[TLSSettings]:
    if decl.ssl is False:
        return None
    if decl.ssl is True:
        return TLSSettings(source=CertificateSource.ACME)
    return TLSSettings(
        source=CertificateSource.STATIC,
        certificate_pem=resolve_pem(decl.ssl.certificate_pem, environ, service),
        private_key_pem=resolve_pem(decl.ssl.private_key_pem, environ, service),
    )


def expand_service(service: str, decl: ServiceDeclaration,
                   environ: Optional[Mapping[str, str]] = None) -> List[Route]:
    """Expand one service into a route per host."""
    environ = os.environ if environ is None else environ
    target = decl.target or f"{service}:{decl.app_port or 80}"
    tls = _tls_for(service, decl, environ)

    return [
        build_route(
            service=service,
            host=host,
            path_prefix=decl.path_prefix,
            target=target,
            tls=tls,
            dns_mode=decl.dns_mode,
            buffering=decl.buffering,
            healthcheck_path=decl.healthcheck.path,
        )
        for host in decl.all_hosts()
    ]


def parse_declarations(data: Optional[Mapping], environ: Optional[Mapping[str, str]] = None) -> List[Route]:
    """Turn a parsed declarations document into routes, root routes first."""
    try:
        document = DeclarationsFile.model_validate(data or {})
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidRoute(f"Invalid declarations: {details}")

    routes: List[Route] = []
    for service, decl in document.services.items():
        routes.extend(expand_service(service, decl, environ))
    return sorted(routes, key=lambda r: (not r.is_root, r.host, r.path_prefix))


def load_declarations(path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> List[Route]:
    """Load routes from a YAML declarations file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidRoute(f"{path} is not valid YAML: {e}")
    return parse_declarations(data, environ)
