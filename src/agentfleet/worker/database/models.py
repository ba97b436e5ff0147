"""
Database Models

SQLAlchemy ORM models for the rows the worker reads and writes. The API layer
owns these tables; the worker only reads desired state, writes actual state,
inserts agent replies and deletes purged agents.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .connection import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class ProfileDB(Base):
    """Tenant profile; only the subscription tier matters to the worker."""

    __tablename__ = "profiles"

    id = Column(String(64), primary_key=True, default=_uuid)
    tier = Column(String(32), nullable=False, default="free")


class ProjectDB(Base):
    """Project owning a set of agents."""

    __tablename__ = "projects"

    id = Column(String(64), primary_key=True, default=_uuid)
    user_id = Column(String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=True)
    name = Column(String(255), nullable=False, default="")

    owner = relationship("ProfileDB", lazy="joined")


class AgentDB(Base):
    """Agent identity row."""

    __tablename__ = "agents"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    framework = Column(String(32), nullable=False)
    project_id = Column(String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    project = relationship("ProjectDB", lazy="joined")
    desired_state = relationship(
        "AgentDesiredStateDB", uselist=False, lazy="joined", passive_deletes=True
    )
    actual_state = relationship(
        "AgentActualStateDB", uselist=False, lazy="joined", passive_deletes=True
    )


class AgentDesiredStateDB(Base):
    """Desired state, written by external writers only."""

    __tablename__ = "agent_desired_state"

    agent_id = Column(String(64), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    config = Column(JSON, nullable=True)
    agent_metadata = Column("metadata", JSON, nullable=True)
    purge_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class AgentActualStateDB(Base):
    """Actual state, written by the worker only."""

    __tablename__ = "agent_actual_state"

    agent_id = Column(String(64), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True)
    status = Column(String(32), nullable=False, default="stopped")
    endpoint_url = Column(String(512), nullable=True)
    error_message = Column(Text, nullable=True)
    last_sync = Column(DateTime(timezone=True), nullable=True)
    effective_security_tier = Column(String(32), nullable=True)
    version = Column(String(128), nullable=True)


class AgentConversationDB(Base):
    """Chat and terminal messages between a user and an agent."""

    __tablename__ = "agent_conversations"

    id = Column(String(64), primary_key=True, default=_uuid)
    agent_id = Column(String(64), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=True)
    sender = Column(String(16), nullable=False)
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_conversation_agent_created", "agent_id", "created_at"),)


class ManagedProviderKeyDB(Base):
    """Platform-owned provider credential shared through leases."""

    __tablename__ = "managed_provider_keys"

    id = Column(String(64), primary_key=True, default=_uuid)
    provider = Column(String(64), nullable=False)
    active = Column(Boolean, nullable=False, default=True)


class KeyLeaseDB(Base):
    """Time-bounded grant of a managed key to one agent."""

    __tablename__ = "key_leases"

    id = Column(String(64), primary_key=True, default=_uuid)
    managed_key_id = Column(
        String(64), ForeignKey("managed_provider_keys.id", ondelete="CASCADE"), nullable=True
    )
    status = Column(String(16), nullable=False, default="active")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    managed_key = relationship("ManagedProviderKeyDB", lazy="joined")

    __table_args__ = (Index("idx_key_lease_status_expires", "status", "expires_at"),)
