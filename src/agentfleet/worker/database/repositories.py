"""
Database Repositories

Repository pattern for the rows the worker touches.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from .models import (
    AgentActualStateDB,
    AgentConversationDB,
    AgentDB,
    AgentDesiredStateDB,
    KeyLeaseDB,
    ProjectDB,
)

logger = structlog.get_logger()


class AgentRepository:
    """Repository for agent rows and their joined state."""

    @staticmethod
    def _with_state():
        return select(AgentDB).options(
            joinedload(AgentDB.project).joinedload(ProjectDB.owner),
            joinedload(AgentDB.desired_state),
            joinedload(AgentDB.actual_state),
        )

    @staticmethod
    async def get_all(session: AsyncSession) -> list[AgentDB]:
        """Get all agents joined with desired state, actual state and owner."""
        result = await session.execute(
            AgentRepository._with_state().order_by(AgentDB.created_at)
        )
        return list(result.scalars().unique().all())

    @staticmethod
    async def get_by_id(session: AsyncSession, agent_id: str) -> AgentDB | None:
        result = await session.execute(
            AgentRepository._with_state().where(AgentDB.id == agent_id)
        )
        return result.scalars().unique().one_or_none()

    @staticmethod
    async def get_ids(session: AsyncSession) -> set[str]:
        result = await session.execute(select(AgentDB.id))
        return set(result.scalars().all())

    @staticmethod
    async def delete(session: AsyncSession, agent_id: str) -> bool:
        """Delete an agent and every row hanging off it."""
        for model in (AgentConversationDB, AgentActualStateDB, AgentDesiredStateDB):
            await session.execute(delete(model).where(model.agent_id == agent_id))
        result = await session.execute(delete(AgentDB).where(AgentDB.id == agent_id))
        return result.rowcount > 0


class DesiredStateRepository:
    """Repository for desired-state rows."""

    @staticmethod
    async def get(session: AsyncSession, agent_id: str) -> AgentDesiredStateDB | None:
        result = await session.execute(
            select(AgentDesiredStateDB).where(AgentDesiredStateDB.agent_id == agent_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def set_enabled(session: AsyncSession, agent_id: str, enabled: bool) -> bool:
        result = await session.execute(
            update(AgentDesiredStateDB)
            .where(AgentDesiredStateDB.agent_id == agent_id)
            .values(enabled=enabled, updated_at=datetime.now(UTC))
        )
        return result.rowcount > 0

    @staticmethod
    async def get_enabled(session: AsyncSession) -> list[AgentDesiredStateDB]:
        result = await session.execute(
            select(AgentDesiredStateDB).where(AgentDesiredStateDB.enabled.is_(True))
        )
        return list(result.scalars().all())


class ActualStateRepository:
    """Repository for actual-state rows."""

    @staticmethod
    async def get(session: AsyncSession, agent_id: str) -> AgentActualStateDB | None:
        result = await session.execute(
            select(AgentActualStateDB).where(AgentActualStateDB.agent_id == agent_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def upsert(
        session: AsyncSession, agent_id: str, values: dict[str, Any]
    ) -> AgentActualStateDB:
        """Insert or update the actual-state row of an agent."""
        row = await ActualStateRepository.get(session, agent_id)
        if row is None:
            row = AgentActualStateDB(agent_id=agent_id, status="stopped")
            session.add(row)
        for key, value in values.items():
            setattr(row, key, value)
        await session.flush()
        return row


class ConversationRepository:
    """Repository for conversation rows."""

    @staticmethod
    async def insert(
        session: AsyncSession,
        agent_id: str,
        user_id: str | None,
        sender: str,
        content: str,
    ) -> AgentConversationDB:
        row = AgentConversationDB(
            agent_id=agent_id,
            user_id=user_id,
            sender=sender,
            content=content,
            created_at=datetime.now(UTC),
        )
        session.add(row)
        await session.flush()
        return row

    @staticmethod
    async def get(session: AsyncSession, message_id: str) -> AgentConversationDB | None:
        result = await session.execute(
            select(AgentConversationDB).where(AgentConversationDB.id == message_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_for_agent(session: AsyncSession, agent_id: str) -> list[AgentConversationDB]:
        result = await session.execute(
            select(AgentConversationDB)
            .where(AgentConversationDB.agent_id == agent_id)
            .order_by(AgentConversationDB.created_at)
        )
        return list(result.scalars().all())


class LeaseRepository:
    """Repository for managed-key leases."""

    @staticmethod
    async def get(session: AsyncSession, lease_id: str) -> KeyLeaseDB | None:
        result = await session.execute(
            select(KeyLeaseDB)
            .options(joinedload(KeyLeaseDB.managed_key))
            .where(KeyLeaseDB.id == lease_id)
        )
        return result.scalars().unique().one_or_none()

    @staticmethod
    async def get_expired_active(session: AsyncSession, now: datetime) -> list[str]:
        result = await session.execute(
            select(KeyLeaseDB.id).where(
                KeyLeaseDB.status == "active",
                KeyLeaseDB.expires_at < now,
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def set_status(session: AsyncSession, lease_ids: list[str], status: str) -> int:
        if not lease_ids:
            return 0
        result = await session.execute(
            update(KeyLeaseDB).where(KeyLeaseDB.id.in_(lease_ids)).values(status=status)
        )
        return result.rowcount

    @staticmethod
    async def touch(session: AsyncSession, lease_id: str, now: datetime) -> None:
        await session.execute(
            update(KeyLeaseDB).where(KeyLeaseDB.id == lease_id).values(last_used_at=now)
        )
