"""Agent identity, desired state and actual state models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .errors import InvalidTransitionError


class Framework(str, Enum):
    """Supported agent frameworks."""

    ELIZAOS = "elizaos"
    OPENCLAW = "openclaw"
    PICOCLAW = "picoclaw"


class AgentStatus(str, Enum):
    """Observed lifecycle status of an agent runtime."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


# Every status may also move to ERROR and may be re-asserted (self transition).
ALLOWED_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.STOPPED: frozenset({AgentStatus.STARTING, AgentStatus.STOPPING}),
    AgentStatus.STARTING: frozenset(
        {AgentStatus.RUNNING, AgentStatus.STOPPING, AgentStatus.STOPPED}
    ),
    # RUNNING -> STOPPED is drift correction; RUNNING -> STARTING is a forced restart.
    AgentStatus.RUNNING: frozenset(
        {AgentStatus.STOPPING, AgentStatus.STOPPED, AgentStatus.STARTING}
    ),
    # STOPPING -> STARTING recovers an interrupted stop.
    AgentStatus.STOPPING: frozenset({AgentStatus.STOPPED, AgentStatus.STARTING}),
    AgentStatus.ERROR: frozenset(
        {AgentStatus.STARTING, AgentStatus.STOPPING, AgentStatus.STOPPED}
    ),
}


def can_transition(current: AgentStatus, target: AgentStatus) -> bool:
    """Check whether ``current -> target`` is a legal lifecycle transition."""
    if target == current or target == AgentStatus.ERROR:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: AgentStatus, target: AgentStatus) -> None:
    """
    Validate a lifecycle transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Invalid status transition {current.value} -> {target.value}"
        )


class DesiredState(BaseModel):
    """Externally authored target configuration for an agent."""

    agent_id: str
    enabled: bool = False
    config: Any = Field(default_factory=dict, description="Opaque config tree")
    metadata: dict[str, Any] = Field(default_factory=dict)
    purge_at: datetime | None = None


class ActualState(BaseModel):
    """Worker authored, observed runtime condition of an agent."""

    agent_id: str
    status: AgentStatus = AgentStatus.STOPPED
    endpoint_url: str | None = None
    error_message: str | None = None
    last_sync: datetime | None = None
    effective_security_tier: str | None = None
    version: str | None = None


class AgentSnapshot(BaseModel):
    """One agent joined with its desired and actual rows."""

    id: str
    name: str
    framework: str
    project_id: str | None = None
    user_tier: str = "free"
    desired: DesiredState | None = None
    actual: ActualState | None = None

    @property
    def status(self) -> AgentStatus:
        return self.actual.status if self.actual else AgentStatus.STOPPED


class ConversationMessage(BaseModel):
    """Row of ``agent_conversations``."""

    id: str | None = None
    agent_id: str
    user_id: str | None = None
    sender: str = "user"
    content: str = ""
    created_at: datetime | None = None
