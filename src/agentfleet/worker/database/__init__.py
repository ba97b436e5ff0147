"""Persistence and change notification for the AgentFleet worker."""

from . import models  # noqa: F401  (registers tables on Base.metadata)
from .connection import Base, close_db, create_session_factory, get_session, init_db
from .notifications import (
    DESIRED_STATE_CHANNEL,
    USER_MESSAGE_CHANNEL,
    ChangeFeed,
)
from .store import StateStore

__all__ = [
    "Base",
    "close_db",
    "create_session_factory",
    "get_session",
    "init_db",
    "ChangeFeed",
    "DESIRED_STATE_CHANNEL",
    "USER_MESSAGE_CHANNEL",
    "StateStore",
]
