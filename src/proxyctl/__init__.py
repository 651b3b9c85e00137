"""Proxy route and certificate controller."""

__version__ = "1.0.0"
