"""Managed-key lease models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class LeaseStatus(str, Enum):
    """Lifecycle of a key lease."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class LeaseRecord(BaseModel):
    """Lease row joined with its managed provider key."""

    id: str
    status: str
    expires_at: datetime
    provider: str | None = None
    key_active: bool = False


class LeaseValidation(BaseModel):
    """Outcome of validating an agent's lease before start."""

    valid: bool
    lease_id: str
    expires_at: datetime | None = None
    provider: str = Field(default="unknown")
    error: str | None = None
