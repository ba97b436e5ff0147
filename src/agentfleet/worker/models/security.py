"""Tenant tier, security level and sandbox profile models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class UserTier(str, Enum):
    """Tenant subscription tiers, ordered free < pro < enterprise."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SecurityLevel(str, Enum):
    """Requested sandbox strictness, ordered standard < pro < advanced < root."""

    STANDARD = "standard"
    PRO = "pro"
    ADVANCED = "advanced"
    ROOT = "root"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [
    SecurityLevel.STANDARD,
    SecurityLevel.PRO,
    SecurityLevel.ADVANCED,
    SecurityLevel.ROOT,
]


class SandboxProfile(BaseModel):
    """Concrete container sandbox settings for one security level."""

    level: SecurityLevel = Field(description="Effective security level")
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)
    read_only_rootfs: bool = True
    user: str = Field(default="1000:1000", description="uid:gid inside container")
    security_opt: list[str] = Field(default_factory=list)
    tmpfs: dict[str, str] = Field(default_factory=dict)

    @property
    def runs_as_root(self) -> bool:
        return self.user.split(":", 1)[0] == "0"
