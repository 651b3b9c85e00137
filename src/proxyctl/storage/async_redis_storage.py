"""Async Redis storage for certificate assignments and ACME account keys.

Everything the convergence engine must remember across restarts lives here:
issued certificate material (so a restart does not re-request certificates)
and the ACME account key per directory and email.
"""

from typing import List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..certmanager.models import CertificateAssignment
from ..shared.logger import log_debug, log_error, log_info

ASSIGNMENT_PREFIX = "cert:"


class AsyncRedisStorage:
    """Async Redis storage backend."""

    def __init__(self, redis_url: str):
        """Initialize Redis connection settings; connect with :meth:`initialize`."""
        self.redis_url = redis_url
        self.redis_client = None

    async def initialize(self):
        """Initialize async Redis connection."""
        if not self.redis_client:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True
            )
            # Test connection
            await self.redis_client.ping()
            log_info("AsyncRedisStorage initialized successfully", component="redis_storage")

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

    async def ensure_initialized(self) -> bool:
        """Ensure Redis client is initialized."""
        if not self.redis_client:
            try:
                await self.initialize()
            except RedisError as e:
                log_error(f"Failed to initialize Redis client: {e}", component="redis_storage")
                self.redis_client = None
                return False
        return True

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        try:
            if not self.redis_client:
                await self.initialize()
            return bool(await self.redis_client.ping())
        except RedisError:
            return False

    # Certificate assignments
    async def store_assignment(self, assignment: CertificateAssignment) -> bool:
        """Store a host's certificate assignment."""
        if not await self.ensure_initialized():
            return False
        try:
            key = f"{ASSIGNMENT_PREFIX}{assignment.host}"
            result = await self.redis_client.set(key, assignment.to_redis())
            log_debug(f"Stored certificate assignment for {assignment.host}", component="redis_storage",
                      state=assignment.state.value)
            return bool(result)
        except RedisError as e:
            log_error(f"Failed to store assignment for {assignment.host}", component="redis_storage", error=e)
            return False

    async def get_assignment(self, host: str) -> Optional[CertificateAssignment]:
        """Retrieve a host's certificate assignment."""
        if not await self.ensure_initialized():
            return None
        try:
            value = await self.redis_client.get(f"{ASSIGNMENT_PREFIX}{host}")
            if value:
                return CertificateAssignment.from_redis(value)
            return None
        except (RedisError, ValidationError) as e:
            log_error(f"Failed to get assignment for {host}", component="redis_storage", error=e)
            return None

    async def list_assignments(self) -> List[CertificateAssignment]:
        """List all stored assignments."""
        if not await self.ensure_initialized():
            return []

        assignments = []
        try:
            async for key in self.redis_client.scan_iter(match=f"{ASSIGNMENT_PREFIX}*"):
                host = key[len(ASSIGNMENT_PREFIX):]
                assignment = await self.get_assignment(host)
                if assignment:
                    assignments.append(assignment)
        except RedisError as e:
            log_error("Failed to list assignments", component="redis_storage", error=e)
            return []
        return sorted(assignments, key=lambda a: a.host)

    async def delete_assignment(self, host: str) -> bool:
        """Delete a host's assignment."""
        if not await self.ensure_initialized():
            return False
        try:
            return bool(await self.redis_client.delete(f"{ASSIGNMENT_PREFIX}{host}"))
        except RedisError as e:
            log_error(f"Failed to delete assignment for {host}", component="redis_storage", error=e)
            return False

    # ACME account keys
    async def store_account_key(self, provider: str, email: str, key_pem: str) -> bool:
        """Store ACME account private key."""
        if not await self.ensure_initialized():
            return False
        try:
            key = f"acme:account:{provider}:{email}"
            return bool(await self.redis_client.set(key, key_pem))
        except RedisError as e:
            log_error("Failed to store account key", component="redis_storage", error=e)
            return False

    async def get_account_key(self, provider: str, email: str) -> Optional[str]:
        """Get ACME account private key."""
        if not await self.ensure_initialized():
            return None
        try:
            key = f"acme:account:{provider}:{email}"
            return await self.redis_client.get(key)
        except RedisError as e:
            log_error("Failed to get account key", component="redis_storage", error=e)
            return None
