"""
State store facade.

The relational store is the single source of truth shared between the worker
and the API layer. ``StateStore`` wraps the repositories behind the handful of
operations the worker needs and converts ORM rows into worker models.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.agent import (
    ActualState,
    AgentSnapshot,
    AgentStatus,
    ConversationMessage,
    DesiredState,
    can_transition,
)
from ..models.lease import LeaseRecord
from .models import AgentActualStateDB, AgentConversationDB, AgentDB, AgentDesiredStateDB
from .repositories import (
    ActualStateRepository,
    AgentRepository,
    ConversationRepository,
    DesiredStateRepository,
    LeaseRepository,
)

logger = structlog.get_logger()

_UNSET: Any = object()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps coming back from the database."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _desired_from_row(row: AgentDesiredStateDB) -> DesiredState:
    return DesiredState(
        agent_id=row.agent_id,
        enabled=bool(row.enabled),
        config=row.config if row.config is not None else {},
        metadata=row.agent_metadata or {},
        purge_at=as_utc(row.purge_at),
    )


def _actual_from_row(row: AgentActualStateDB) -> ActualState:
    try:
        status = AgentStatus(row.status)
    except ValueError:
        status = AgentStatus.STOPPED
    return ActualState(
        agent_id=row.agent_id,
        status=status,
        endpoint_url=row.endpoint_url,
        error_message=row.error_message,
        last_sync=as_utc(row.last_sync),
        effective_security_tier=row.effective_security_tier,
        version=row.version,
    )


def _snapshot_from_row(row: AgentDB) -> AgentSnapshot:
    owner = row.project.owner if row.project is not None else None
    return AgentSnapshot(
        id=row.id,
        name=row.name,
        framework=row.framework,
        project_id=row.project_id,
        user_tier=(owner.tier if owner is not None and owner.tier else "free"),
        desired=_desired_from_row(row.desired_state) if row.desired_state else None,
        actual=_actual_from_row(row.actual_state) if row.actual_state else None,
    )


def _message_from_row(row: AgentConversationDB) -> ConversationMessage:
    return ConversationMessage(
        id=row.id,
        agent_id=row.agent_id,
        user_id=row.user_id,
        sender=row.sender,
        content=row.content or "",
        created_at=as_utc(row.created_at),
    )


class StateStore:
    """Row-level access to agent state."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def list_agents(self) -> list[AgentSnapshot]:
        """Load every agent joined with its desired and actual state."""
        async with self.session() as session:
            rows = await AgentRepository.get_all(session)
            return [_snapshot_from_row(row) for row in rows]

    async def get_agent(self, agent_id: str) -> AgentSnapshot | None:
        async with self.session() as session:
            row = await AgentRepository.get_by_id(session, agent_id)
            return _snapshot_from_row(row) if row is not None else None

    async def list_agent_ids(self) -> set[str]:
        async with self.session() as session:
            return await AgentRepository.get_ids(session)

    async def get_desired_state(self, agent_id: str) -> DesiredState | None:
        async with self.session() as session:
            row = await DesiredStateRepository.get(session, agent_id)
            return _desired_from_row(row) if row is not None else None

    async def get_actual_state(self, agent_id: str) -> ActualState | None:
        async with self.session() as session:
            row = await ActualStateRepository.get(session, agent_id)
            return _actual_from_row(row) if row is not None else None

    async def set_actual_state(
        self,
        agent_id: str,
        status: AgentStatus,
        *,
        endpoint_url: str | None = _UNSET,
        error_message: str | None = _UNSET,
        effective_security_tier: str | None = _UNSET,
        version: str | None = _UNSET,
    ) -> bool:
        """
        Record an agent status change.

        Invalid lifecycle transitions are logged and rejected without writing.

        Returns:
            True if the row was written
        """
        async with self.session() as session:
            row = await ActualStateRepository.get(session, agent_id)
            current = _actual_from_row(row).status if row is not None else AgentStatus.STOPPED

            if not can_transition(current, status):
                logger.warning(
                    "invalid_status_transition",
                    agent_id=agent_id,
                    current=current.value,
                    requested=status.value,
                )
                return False

            values: dict[str, Any] = {
                "status": status.value,
                "last_sync": datetime.now(UTC),
            }
            optional = {
                "endpoint_url": endpoint_url,
                "error_message": error_message,
                "effective_security_tier": effective_security_tier,
                "version": version,
            }
            values.update({k: v for k, v in optional.items() if v is not _UNSET})

            await ActualStateRepository.upsert(session, agent_id, values)
            logger.debug("actual_state_updated", agent_id=agent_id, status=status.value)
            return True

    async def set_enabled(self, agent_id: str, enabled: bool) -> bool:
        async with self.session() as session:
            return await DesiredStateRepository.set_enabled(session, agent_id, enabled)

    async def delete_agent(self, agent_id: str) -> bool:
        async with self.session() as session:
            return await AgentRepository.delete(session, agent_id)

    async def get_message(self, message_id: str) -> ConversationMessage | None:
        async with self.session() as session:
            row = await ConversationRepository.get(session, message_id)
            return _message_from_row(row) if row is not None else None

    async def insert_agent_message(self, agent_id: str, user_id: str | None, content: str) -> None:
        """Persist an agent-authored conversation reply."""
        async with self.session() as session:
            await ConversationRepository.insert(session, agent_id, user_id, "agent", content)

    async def get_lease(self, lease_id: str) -> LeaseRecord | None:
        async with self.session() as session:
            row = await LeaseRepository.get(session, lease_id)
            if row is None:
                return None
            return LeaseRecord(
                id=row.id,
                status=row.status,
                expires_at=as_utc(row.expires_at),
                provider=row.managed_key.provider if row.managed_key else None,
                key_active=bool(row.managed_key.active) if row.managed_key else False,
            )

    async def expire_leases(self, now: datetime) -> list[str]:
        """Mark every active lease past its expiry as expired."""
        async with self.session() as session:
            lease_ids = await LeaseRepository.get_expired_active(session, now)
            await LeaseRepository.set_status(session, lease_ids, "expired")
            return lease_ids

    async def mark_lease_expired(self, lease_id: str) -> None:
        async with self.session() as session:
            await LeaseRepository.set_status(session, [lease_id], "expired")

    async def touch_lease(self, lease_id: str, now: datetime) -> None:
        async with self.session() as session:
            await LeaseRepository.touch(session, lease_id, now)

    async def find_enabled_agents_with_lease(self, lease_id: str) -> list[str]:
        async with self.session() as session:
            rows = await DesiredStateRepository.get_enabled(session)
            return [
                row.agent_id
                for row in rows
                if (row.agent_metadata or {}).get("lease_id") == lease_id
            ]
