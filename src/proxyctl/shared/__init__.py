"""Shared utilities for the proxy route controller."""

from .config import Config, get_config

__all__ = ['Config', 'get_config']
