"""
Managed provider key leases.

Agents may run on a platform-owned provider key through a time-bounded lease
referenced from ``metadata.lease_id``. The reconciler validates the lease
before every start; ``LeaseMonitor`` expires stale leases in the background
and shuts down the agents still holding them.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog

from ..database.store import StateStore
from ..models.agent import AgentStatus
from ..models.errors import InvalidLeaseError
from ..models.lease import LeaseStatus, LeaseValidation

logger = structlog.get_logger()

LEASE_EXPIRED_MESSAGE = "Shared API key lease has expired. Agent stopped automatically."


class LeaseValidator:
    """Validates managed-key leases before agent start."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def validate(self, agent_id: str, metadata: dict[str, Any] | None) -> LeaseValidation | None:
        """
        Validate the lease referenced by an agent's metadata.

        Args:
            agent_id: Agent identifier
            metadata: Desired-state metadata

        Returns:
            None when the agent does not use a managed key, else the validation
        """
        metadata = metadata or {}
        lease_id = metadata.get("lease_id")
        if not lease_id:
            return None

        lease = await self._store.get_lease(lease_id)
        if lease is None:
            return LeaseValidation(
                valid=False,
                lease_id=lease_id,
                provider=metadata.get("managed_key_provider") or "unknown",
                error="Lease not found",
            )

        provider = lease.provider or "unknown"

        if lease.status != LeaseStatus.ACTIVE.value:
            return LeaseValidation(
                valid=False,
                lease_id=lease_id,
                expires_at=lease.expires_at,
                provider=provider,
                error=f"Lease is {lease.status}",
            )

        now = datetime.now(UTC)
        if lease.expires_at < now:
            await self._store.mark_lease_expired(lease_id)
            return LeaseValidation(
                valid=False,
                lease_id=lease_id,
                expires_at=lease.expires_at,
                provider=provider,
                error="Lease has expired",
            )

        if not lease.key_active:
            return LeaseValidation(
                valid=False,
                lease_id=lease_id,
                expires_at=lease.expires_at,
                provider=provider,
                error="Managed provider key has been disabled",
            )

        await self._store.touch_lease(lease_id, now)
        logger.debug("lease_validated", agent_id=agent_id, lease_id=lease_id)
        return LeaseValidation(
            valid=True,
            lease_id=lease_id,
            expires_at=lease.expires_at,
            provider=provider,
        )

    async def ensure_valid(self, agent_id: str, metadata: dict[str, Any] | None) -> None:
        """
        Require a usable lease when the agent references one.

        Raises:
            InvalidLeaseError: If the referenced lease cannot be used
        """
        validation = await self.validate(agent_id, metadata)
        if validation is not None and not validation.valid:
            raise InvalidLeaseError(validation.lease_id, validation.error or "invalid lease")

    async def stop_agent_for_invalid_lease(self, agent_id: str, reason: str) -> None:
        """Flag the agent as errored and disable it."""
        await self._store.set_actual_state(
            agent_id,
            AgentStatus.ERROR,
            error_message=f"Managed key: {reason}. Agent stopped automatically.",
        )
        await self._store.set_enabled(agent_id, False)
        logger.warning("agent_disabled_invalid_lease", agent_id=agent_id, reason=reason)


class LeaseMonitor:
    """Periodically expires stale leases and disables their agents."""

    def __init__(self, store: StateStore, interval_seconds: float = 60.0) -> None:
        self._store = store
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        logger.info("lease_monitor_started", interval=self._interval)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("lease_monitor_stopped")

    async def expire_leases(self) -> list[str]:
        """
        Expire stale leases once.

        Returns:
            IDs of leases that were expired
        """
        lease_ids = await self._store.expire_leases(datetime.now(UTC))
        if not lease_ids:
            return []

        logger.info("leases_expired", count=len(lease_ids), lease_ids=lease_ids)

        for lease_id in lease_ids:
            for agent_id in await self._store.find_enabled_agents_with_lease(lease_id):
                logger.info("agent_stopping_lease_expired", agent_id=agent_id, lease_id=lease_id)
                await self._store.set_actual_state(
                    agent_id,
                    AgentStatus.ERROR,
                    error_message=LEASE_EXPIRED_MESSAGE,
                )
                await self._store.set_enabled(agent_id, False)

        return lease_ids

    async def _run(self) -> None:
        while True:
            try:
                await self.expire_leases()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("lease_monitor_failed", error=str(e))
            await asyncio.sleep(self._interval)
