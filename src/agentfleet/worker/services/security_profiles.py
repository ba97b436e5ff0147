"""Security level resolution and container sandbox profiles."""

from typing import Any

import structlog

from ..models.security import SandboxProfile, SecurityLevel, UserTier

logger = structlog.get_logger()


# Highest security level each tenant tier may run
TIER_MAX_LEVEL: dict[UserTier, SecurityLevel] = {
    UserTier.FREE: SecurityLevel.STANDARD,
    UserTier.PRO: SecurityLevel.PRO,
    UserTier.ENTERPRISE: SecurityLevel.ROOT,
}

# Legacy names and numeric levels still found in stored metadata
LEVEL_ALIASES: dict[str, SecurityLevel] = {
    "low": SecurityLevel.STANDARD,
    "sandbox": SecurityLevel.STANDARD,
    "sysadmin": SecurityLevel.PRO,
    "elevated": SecurityLevel.PRO,
    "custom": SecurityLevel.ROOT,
    "0": SecurityLevel.STANDARD,
    "1": SecurityLevel.PRO,
    "2": SecurityLevel.ADVANCED,
    "3": SecurityLevel.ROOT,
}

NON_ROOT_USER = "1000:1000"
ROOT_USER = "0:0"

# Capabilities added back per level (everything else keeps Docker defaults)
PRO_CAPABILITIES = ["SYS_ADMIN"]
ADVANCED_CAPABILITIES = ["SYS_ADMIN", "NET_ADMIN"]

STANDARD_SECURITY_OPT = ["no-new-privileges:true"]
STANDARD_TMPFS = {"/tmp": "rw,noexec,nosuid,size=64m"}


def parse_tier(value: Any) -> UserTier:
    """Parse a stored tier, falling back to free for unknown values."""
    try:
        return UserTier(str(value).lower())
    except ValueError:
        return UserTier.FREE


def parse_security_level(value: Any) -> SecurityLevel:
    """Parse a requested security level from agent metadata."""
    if value is None:
        return SecurityLevel.STANDARD
    key = str(value).strip().lower()
    try:
        return SecurityLevel(key)
    except ValueError:
        return LEVEL_ALIASES.get(key, SecurityLevel.STANDARD)


def resolve_security_level(tier: UserTier | str, requested: SecurityLevel | str | None) -> SecurityLevel:
    """
    Cap a requested security level at the tenant tier's maximum.

    The result is ``min(requested, tier maximum)``: levels are only ever
    capped down, never raised.
    """
    user_tier = tier if isinstance(tier, UserTier) else parse_tier(tier)
    level = requested if isinstance(requested, SecurityLevel) else parse_security_level(requested)
    maximum = TIER_MAX_LEVEL[user_tier]
    effective = level if level.rank <= maximum.rank else maximum

    if effective != level:
        logger.info(
            "security_level_capped",
            tier=user_tier.value,
            requested=level.value,
            effective=effective.value,
        )
    return effective


def build_sandbox_profile(level: SecurityLevel) -> SandboxProfile:
    """Map an effective security level to its sandbox profile."""
    if level == SecurityLevel.STANDARD:
        return SandboxProfile(
            level=level,
            cap_drop=["ALL"],
            read_only_rootfs=True,
            user=NON_ROOT_USER,
            security_opt=list(STANDARD_SECURITY_OPT),
            tmpfs=dict(STANDARD_TMPFS),
        )
    if level == SecurityLevel.PRO:
        return SandboxProfile(
            level=level,
            cap_add=list(PRO_CAPABILITIES),
            read_only_rootfs=True,
            user=NON_ROOT_USER,
        )
    if level == SecurityLevel.ADVANCED:
        return SandboxProfile(
            level=level,
            cap_add=list(ADVANCED_CAPABILITIES),
            read_only_rootfs=False,
            user=NON_ROOT_USER,
        )
    return SandboxProfile(
        level=level,
        cap_add=list(ADVANCED_CAPABILITIES),
        read_only_rootfs=False,
        user=ROOT_USER,
    )


def resolve_sandbox_profile(tier: UserTier | str, metadata: dict[str, Any] | None) -> SandboxProfile:
    """Resolve the sandbox profile for an agent from its tier and metadata."""
    requested = (metadata or {}).get("security_level")
    return build_sandbox_profile(resolve_security_level(tier, requested))


def apply_sandbox_profile(host_config: dict[str, Any], profile: SandboxProfile) -> dict[str, Any]:
    """
    Merge sandbox settings into a Docker ``HostConfig``.

    Args:
        host_config: Base HostConfig (not mutated)
        profile: Sandbox profile to apply

    Returns:
        New HostConfig dictionary
    """
    merged = dict(host_config)
    merged["CapAdd"] = list(profile.cap_add)
    merged["CapDrop"] = list(profile.cap_drop)
    merged["ReadonlyRootfs"] = profile.read_only_rootfs
    merged["Privileged"] = False
    if profile.security_opt:
        merged["SecurityOpt"] = list(profile.security_opt)
    if profile.tmpfs:
        merged["Tmpfs"] = dict(profile.tmpfs)
    return merged
