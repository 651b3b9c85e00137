"""Certificate-specific data models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..proxy.routes import CertificateSource


class AssignmentState(str, Enum):
    """Lifecycle of a host's certificate assignment."""
    PENDING = "pending"    # Acquisition requested, no result yet
    ACTIVE = "active"      # Material acquired and bound
    EXPIRING = "expiring"  # Renewal due and the last attempt failed
    FAILED = "failed"      # Acquisition failed; nothing usable


class CertificateMaterial(BaseModel):
    """A certificate chain and its private key."""
    model_config = ConfigDict(frozen=True)

    fullchain_pem: str = Field(..., repr=False)
    private_key_pem: str = Field(..., repr=False)
    expires_at: datetime
    issued_at: Optional[datetime] = None
    fingerprint: Optional[str] = None

    @field_serializer('expires_at', 'issued_at')
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None


class CertificateAssignment(BaseModel):
    """The single certificate assignment of a TLS host.

    Instances are immutable; the convergence engine swaps in a new copy on
    every state change so readers never observe a half-updated assignment.
    """
    model_config = ConfigDict(frozen=True)

    host: str
    source: CertificateSource
    tls_key: str
    state: AssignmentState = AssignmentState.PENDING
    material: Optional[CertificateMaterial] = None
    last_error: Optional[str] = None
    error_type: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expiry(self) -> Optional[datetime]:
        return self.material.expires_at if self.material else None

    def is_usable(self, now: datetime) -> bool:
        """Whether the material can be served at ``now``."""
        if self.state not in (AssignmentState.ACTIVE, AssignmentState.EXPIRING):
            return False
        return self.material is not None and self.material.expires_at > now

    def summary(self) -> Dict[str, Any]:
        """Introspection view without key material."""
        return {
            "host": self.host,
            "source": self.source.value,
            "state": self.state.value,
            "expires_at": self.expiry.isoformat() if self.expiry else None,
            "fingerprint": self.material.fingerprint if self.material else None,
            "last_error": self.last_error,
            "error_type": self.error_type,
            "updated_at": self.updated_at.isoformat(),
        }

    @field_serializer('updated_at')
    def serialize_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    def to_redis(self) -> str:
        """Convert to JSON for Redis storage."""
        return self.model_dump_json()

    @classmethod
    def from_redis(cls, data: str) -> 'CertificateAssignment':
        """Create from Redis JSON data."""
        return cls.model_validate_json(data)


class ChallengeToken(BaseModel):
    """ACME HTTP-01 challenge published on the validation channel."""
    token: str
    authorization: str
    host: str
    expires_at: datetime
