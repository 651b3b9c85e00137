"""Route declarations and the route table."""

from .routes import ROOT_PREFIX, BufferingSettings, CertificateSource, DNSMode, Route, TLSSettings, build_route
from .table import RouteTable

__all__ = [
    'ROOT_PREFIX',
    'BufferingSettings',
    'CertificateSource',
    'DNSMode',
    'Route',
    'TLSSettings',
    'build_route',
    'RouteTable',
]
