"""API request and response models."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..proxy.routes import ROOT_PREFIX, BufferingSettings, DNSMode, TLSSettings


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    scheduler: bool
    redis: str
    routes: int
    hosts_applied: int
    certificates: int


class RouteRequest(BaseModel):
    """Route declaration submitted over the API."""
    service: str = ""
    host: str
    path_prefix: str = ROOT_PREFIX
    target: str
    tls: Optional[TLSSettings] = None
    dns_mode: DNSMode = DNSMode.DIRECT
    buffering: BufferingSettings = Field(default_factory=BufferingSettings)
    healthcheck_path: str = "/up"


class RouteRow(BaseModel):
    service: str
    host: str
    path: str
    target: str
    state: str
    tls: str


class CertificateRow(BaseModel):
    host: str
    source: str
    state: str
    expires_at: Optional[str] = None
    fingerprint: Optional[str] = None
    last_error: Optional[str] = None
    error_type: Optional[str] = None
    updated_at: str


class ReportResponse(BaseModel):
    """Outcome of the convergence triggered by a request."""
    applied: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)
    mutations: int = 0


class ErrorResponse(BaseModel):
    error: str
    detail: str
    host: Optional[str] = None
    path_prefix: Optional[str] = None
