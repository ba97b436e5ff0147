"""AgentFleet worker data models."""

from .agent import (
    ActualState,
    AgentSnapshot,
    AgentStatus,
    ConversationMessage,
    DesiredState,
    Framework,
    can_transition,
    ensure_transition,
)
from .errors import (
    BootFailedError,
    ChatRequestError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    ContainerRuntimeTimeoutError,
    DecryptionError,
    InvalidLeaseError,
    InvalidTransitionError,
    RecoverableError,
    UnknownFrameworkError,
    WorkerError,
)
from .lease import LeaseRecord, LeaseStatus, LeaseValidation
from .security import SandboxProfile, SecurityLevel, UserTier

__all__ = [
    "ActualState",
    "AgentSnapshot",
    "AgentStatus",
    "ConversationMessage",
    "DesiredState",
    "Framework",
    "can_transition",
    "ensure_transition",
    "BootFailedError",
    "ChatRequestError",
    "ContainerNotFoundError",
    "ContainerRuntimeError",
    "ContainerRuntimeTimeoutError",
    "DecryptionError",
    "InvalidLeaseError",
    "InvalidTransitionError",
    "RecoverableError",
    "UnknownFrameworkError",
    "WorkerError",
    "LeaseRecord",
    "LeaseStatus",
    "LeaseValidation",
    "SandboxProfile",
    "SecurityLevel",
    "UserTier",
]
