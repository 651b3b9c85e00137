"""Persistence for certificate assignments and ACME account keys."""

from .async_redis_storage import AsyncRedisStorage

__all__ = ['AsyncRedisStorage']
