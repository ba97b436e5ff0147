"""
Change notifications over PostgreSQL LISTEN/NOTIFY.

Triggers on ``agent_desired_state`` and ``agent_conversations`` publish row
references (ids only, NOTIFY payloads are capped below 8000 bytes) on two
channels; ``ChangeFeed`` holds one dedicated asyncpg connection,
listens on both and dispatches each notification to its handler as an
independent task.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg
import structlog

from ..services.retry_handler import BackoffStrategy, RetryHandler

logger = structlog.get_logger()

DESIRED_STATE_CHANNEL = "agent_desired_state_changes"
USER_MESSAGE_CHANNEL = "agent_user_messages"

NotificationHandler = Callable[[dict[str, Any]], Awaitable[None]]

TRIGGER_DDL = f"""
CREATE OR REPLACE FUNCTION notify_agent_desired_state_change() RETURNS trigger AS $$
DECLARE
    changed_id text;
BEGIN
    IF TG_OP = 'DELETE' THEN
        changed_id := OLD.agent_id;
    ELSE
        changed_id := NEW.agent_id;
    END IF;
    PERFORM pg_notify(
        '{DESIRED_STATE_CHANNEL}',
        json_build_object('event', TG_OP, 'agent_id', changed_id)::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS agent_desired_state_notify ON agent_desired_state;
CREATE TRIGGER agent_desired_state_notify
    AFTER INSERT OR UPDATE OR DELETE ON agent_desired_state
    FOR EACH ROW EXECUTE FUNCTION notify_agent_desired_state_change();

CREATE OR REPLACE FUNCTION notify_agent_user_message() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        '{USER_MESSAGE_CHANNEL}',
        json_build_object('id', NEW.id, 'agent_id', NEW.agent_id)::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS agent_user_message_notify ON agent_conversations;
CREATE TRIGGER agent_user_message_notify
    AFTER INSERT ON agent_conversations
    FOR EACH ROW WHEN (NEW.sender = 'user')
    EXECUTE FUNCTION notify_agent_user_message();
"""


class ChangeFeed:
    """Dispatches store change notifications to async handlers."""

    def __init__(
        self,
        dsn: str,
        reconnect_attempts: int = 10,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
    ) -> None:
        """
        Initialize change feed.

        Args:
            dsn: PostgreSQL DSN (plain ``postgresql://`` form)
            reconnect_attempts: Connection attempts after the listener connection drops
            reconnect_delay: Base delay for exponential reconnect backoff
            reconnect_max_delay: Upper bound for a single reconnect delay
        """
        self._dsn = dsn
        self._connection: asyncpg.Connection | None = None
        self._handlers: dict[str, NotificationHandler] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._reconnect = RetryHandler(
            max_attempts=reconnect_attempts,
            base_delay=reconnect_delay,
            max_delay=reconnect_max_delay,
            strategy=BackoffStrategy.EXPONENTIAL,
            jitter=True,
        )

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    def subscribe(self, channel: str, handler: NotificationHandler) -> None:
        """Register the handler for a channel (one handler per channel)."""
        self._handlers[channel] = handler

    async def start(self) -> None:
        self._closing = False
        await self._connect()

    async def stop(self) -> None:
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self._connection is not None:
            connection, self._connection = self._connection, None
            connection.remove_termination_listener(self._on_termination)
            if not connection.is_closed():
                for channel in self._handlers:
                    await connection.remove_listener(channel, self._on_notification)
                await connection.close()
        for task in list(self._tasks):
            task.cancel()
        logger.info("change_feed_stopped")

    async def install_triggers(self) -> None:
        """Create or replace the notification triggers."""
        connection = await asyncpg.connect(self._dsn)
        try:
            await connection.execute(TRIGGER_DDL)
            logger.info("change_feed_triggers_installed")
        finally:
            await connection.close()

    async def _connect(self) -> None:
        connection = await asyncpg.connect(self._dsn)
        try:
            for channel in self._handlers:
                await connection.add_listener(channel, self._on_notification)
                logger.info("change_feed_listening", channel=channel)
        except BaseException:
            await connection.close()
            raise
        connection.add_termination_listener(self._on_termination)
        self._connection = connection

    def _on_termination(self, connection: Any) -> None:
        """asyncpg termination callback; schedules a reconnect unless stopping."""
        if self._closing or connection is not self._connection:
            return
        logger.warning("change_feed_connection_lost")
        self._connection = None
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        try:
            await self._reconnect.retry(
                self._connect,
                retryable_exceptions=(OSError, asyncpg.PostgresError, asyncio.TimeoutError),
                on_retry=self._log_reconnect_attempt,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("change_feed_reconnect_failed", error=str(e) or type(e).__name__)
            return
        logger.info("change_feed_reconnected", channels=list(self._handlers))

    def _log_reconnect_attempt(self, error: BaseException, attempt: int, delay: float) -> None:
        logger.warning(
            "change_feed_reconnect_attempt",
            attempt=attempt,
            delay=round(delay, 2),
            error=str(error) or type(error).__name__,
        )

    def _on_notification(
        self,
        connection: Any,
        pid: int,
        channel: str,
        payload: str,
    ) -> None:
        """asyncpg listener callback; runs on the event loop thread."""
        handler = self._handlers.get(channel)
        if handler is None:
            return
        try:
            data = json.loads(payload) if payload else {}
        except ValueError:
            logger.warning("change_feed_bad_payload", channel=channel, payload=payload[:200])
            return

        task = asyncio.create_task(handler(data))
        self._tasks.add(task)
        task.add_done_callback(lambda t, ch=channel: self._task_done(t, ch))

    def _task_done(self, task: asyncio.Task[None], channel: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("change_feed_handler_failed", channel=channel, error=str(error))
