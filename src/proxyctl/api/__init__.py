"""HTTP control API."""

from .server import create_api_app

__all__ = ['create_api_app']
