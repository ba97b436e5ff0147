"""Tests for managed-key lease validation and expiry."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from agentfleet.worker.database import StateStore
from agentfleet.worker.database.models import KeyLeaseDB, ManagedProviderKeyDB
from agentfleet.worker.models import AgentStatus, InvalidLeaseError
from agentfleet.worker.services.leases import (
    LEASE_EXPIRED_MESSAGE,
    LeaseMonitor,
    LeaseValidator,
)


@pytest.fixture
def make_lease(store: StateStore):
    async def _make(
        *,
        status: str = "active",
        expires_in: timedelta = timedelta(hours=1),
        key_active: bool = True,
    ) -> str:
        lease_id = str(uuid.uuid4())
        async with store.session() as session:
            key = ManagedProviderKeyDB(id=str(uuid.uuid4()), provider="openrouter", active=key_active)
            session.add(key)
            await session.flush()
            session.add(
                KeyLeaseDB(
                    id=lease_id,
                    managed_key_id=key.id,
                    status=status,
                    expires_at=datetime.now(UTC) + expires_in,
                )
            )
        return lease_id

    return _make


class TestLeaseValidator:
    """Test pre-start lease validation."""

    async def test_no_lease_reference(self, store: StateStore) -> None:
        validator = LeaseValidator(store)

        assert await validator.validate("agent-1", {}) is None
        assert await validator.validate("agent-1", None) is None

    async def test_valid_lease_touched(self, store: StateStore, make_lease) -> None:
        lease_id = await make_lease()

        result = await LeaseValidator(store).validate("agent-1", {"lease_id": lease_id})

        assert result.valid
        assert result.provider == "openrouter"
        async with store.session() as session:
            row = await session.get(KeyLeaseDB, lease_id)
            assert row.last_used_at is not None

    async def test_missing_lease(self, store: StateStore) -> None:
        result = await LeaseValidator(store).validate(
            "agent-1", {"lease_id": "nope", "managed_key_provider": "anthropic"}
        )

        assert not result.valid
        assert result.error == "Lease not found"
        assert result.provider == "anthropic"

    async def test_revoked_lease(self, store: StateStore, make_lease) -> None:
        lease_id = await make_lease(status="revoked")

        result = await LeaseValidator(store).validate("agent-1", {"lease_id": lease_id})

        assert not result.valid
        assert result.error == "Lease is revoked"

    async def test_expired_lease_marked(self, store: StateStore, make_lease) -> None:
        lease_id = await make_lease(expires_in=timedelta(seconds=-30))

        result = await LeaseValidator(store).validate("agent-1", {"lease_id": lease_id})

        assert not result.valid
        assert result.error == "Lease has expired"
        assert (await store.get_lease(lease_id)).status == "expired"

    async def test_disabled_key(self, store: StateStore, make_lease) -> None:
        lease_id = await make_lease(key_active=False)

        result = await LeaseValidator(store).validate("agent-1", {"lease_id": lease_id})

        assert not result.valid
        assert result.error == "Managed provider key has been disabled"

    async def test_ensure_valid_raises(self, store: StateStore, make_lease) -> None:
        lease_id = await make_lease(status="revoked")
        validator = LeaseValidator(store)

        with pytest.raises(InvalidLeaseError) as exc_info:
            await validator.ensure_valid("agent-1", {"lease_id": lease_id})

        assert exc_info.value.lease_id == lease_id
        assert exc_info.value.reason == "Lease is revoked"
        await validator.ensure_valid("agent-1", {})

    async def test_stop_agent_for_invalid_lease(self, store: StateStore, seed_agent) -> None:
        agent_id = await seed_agent(enabled=True)

        await LeaseValidator(store).stop_agent_for_invalid_lease(agent_id, "Lease has expired")

        actual = await store.get_actual_state(agent_id)
        assert actual.status == AgentStatus.ERROR
        assert actual.error_message == "Managed key: Lease has expired. Agent stopped automatically."
        assert (await store.get_desired_state(agent_id)).enabled is False


class TestLeaseMonitor:
    """Test background lease expiry."""

    async def test_expiry_disables_holders(self, store: StateStore, seed_agent, make_lease) -> None:
        stale = await make_lease(expires_in=timedelta(minutes=-1))
        fresh = await make_lease()
        holder = await seed_agent(enabled=True, status="running", metadata={"lease_id": stale})
        bystander = await seed_agent(enabled=True, status="running", metadata={"lease_id": fresh})

        expired = await LeaseMonitor(store).expire_leases()

        assert expired == [stale]
        holder_actual = await store.get_actual_state(holder)
        assert holder_actual.status == AgentStatus.ERROR
        assert holder_actual.error_message == LEASE_EXPIRED_MESSAGE
        assert (await store.get_desired_state(holder)).enabled is False
        assert (await store.get_desired_state(bystander)).enabled is True
        assert (await store.get_actual_state(bystander)).status == AgentStatus.RUNNING

    async def test_nothing_to_expire(self, store: StateStore, make_lease) -> None:
        await make_lease()

        assert await LeaseMonitor(store).expire_leases() == []

    async def test_start_stop(self, store: StateStore) -> None:
        monitor = LeaseMonitor(store, interval_seconds=3600)

        await monitor.start()
        await monitor.stop()

        assert monitor._task is None
