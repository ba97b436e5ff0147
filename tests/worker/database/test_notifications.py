"""Tests for the change feed dispatch."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock, patch

from agentfleet.worker.database import DESIRED_STATE_CHANNEL, USER_MESSAGE_CHANNEL, ChangeFeed

CONNECT = "agentfleet.worker.database.notifications.asyncpg.connect"


async def drain() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


class TestChangeFeed:
    async def test_dispatches_to_channel_handler(self) -> None:
        desired = AsyncMock()
        messages = AsyncMock()
        feed = ChangeFeed("postgresql://localhost/agentfleet")
        feed.subscribe(DESIRED_STATE_CHANNEL, desired)
        feed.subscribe(USER_MESSAGE_CHANNEL, messages)

        feed._on_notification(None, 1, USER_MESSAGE_CHANNEL, json.dumps({"agent_id": "a", "content": "hi"}))
        await drain()

        messages.assert_awaited_once_with({"agent_id": "a", "content": "hi"})
        desired.assert_not_awaited()

    async def test_bad_payload_dropped(self) -> None:
        handler = AsyncMock()
        feed = ChangeFeed("postgresql://localhost/agentfleet")
        feed.subscribe(DESIRED_STATE_CHANNEL, handler)

        feed._on_notification(None, 1, DESIRED_STATE_CHANNEL, "{not json")
        await drain()

        handler.assert_not_awaited()

    async def test_empty_payload_is_empty_dict(self) -> None:
        handler = AsyncMock()
        feed = ChangeFeed("postgresql://localhost/agentfleet")
        feed.subscribe(DESIRED_STATE_CHANNEL, handler)

        feed._on_notification(None, 1, DESIRED_STATE_CHANNEL, "")
        await drain()

        handler.assert_awaited_once_with({})

    async def test_handler_failure_does_not_propagate(self) -> None:
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        feed = ChangeFeed("postgresql://localhost/agentfleet")
        feed.subscribe(DESIRED_STATE_CHANNEL, handler)

        feed._on_notification(None, 1, DESIRED_STATE_CHANNEL, "{}")
        await drain()

        assert feed._tasks == set()


def make_connection() -> Mock:
    """Mock asyncpg connection (listener registration is async, termination hooks are not)."""
    connection = Mock()
    connection.add_listener = AsyncMock()
    connection.remove_listener = AsyncMock()
    connection.close = AsyncMock()
    connection.execute = AsyncMock()
    connection.is_closed = Mock(return_value=False)
    connection.add_termination_listener = Mock()
    connection.remove_termination_listener = Mock()
    return connection


def subscribed_feed(**kwargs) -> ChangeFeed:
    feed = ChangeFeed("postgresql://localhost/agentfleet", **kwargs)
    feed.subscribe(DESIRED_STATE_CHANNEL, AsyncMock())
    feed.subscribe(USER_MESSAGE_CHANNEL, AsyncMock())
    return feed


class TestChangeFeedConnection:
    """Test listener registration and reconnect."""

    async def test_start_registers_listeners(self) -> None:
        connection = make_connection()
        feed = subscribed_feed()

        with patch(CONNECT, AsyncMock(return_value=connection)):
            await feed.start()
            assert feed.connected
            await feed.stop()

        channels = [call.args[0] for call in connection.add_listener.await_args_list]
        assert channels == [DESIRED_STATE_CHANNEL, USER_MESSAGE_CHANNEL]
        connection.add_termination_listener.assert_called_once()
        connection.remove_termination_listener.assert_called_once()
        assert connection.remove_listener.await_count == 2
        connection.close.assert_awaited_once()
        assert not feed.connected

    async def test_reconnects_after_termination(self) -> None:
        first, second = make_connection(), make_connection()
        feed = subscribed_feed(reconnect_delay=0)
        connect = AsyncMock(side_effect=[first, OSError("connection refused"), second])

        with patch(CONNECT, connect):
            await feed.start()
            on_termination = first.add_termination_listener.call_args.args[0]
            first.is_closed.return_value = True

            on_termination(first)
            await feed._reconnect_task

        assert connect.await_count == 3
        channels = [call.args[0] for call in second.add_listener.await_args_list]
        assert channels == [DESIRED_STATE_CHANNEL, USER_MESSAGE_CHANNEL]
        second.add_termination_listener.assert_called_once()
        assert feed._connection is second

        await feed.stop()
        second.close.assert_awaited_once()

    async def test_reconnect_gives_up_after_budget(self) -> None:
        first = make_connection()
        feed = subscribed_feed(reconnect_attempts=2, reconnect_delay=0)
        connect = AsyncMock(side_effect=[first, OSError("down"), OSError("down")])

        with patch(CONNECT, connect):
            await feed.start()
            first.add_termination_listener.call_args.args[0](first)
            await feed._reconnect_task

        assert connect.await_count == 3
        assert not feed.connected
        await feed.stop()

    async def test_termination_during_stop_ignored(self) -> None:
        connection = make_connection()
        feed = subscribed_feed()

        with patch(CONNECT, AsyncMock(return_value=connection)) as connect:
            await feed.start()
            await feed.stop()
            connection.add_termination_listener.call_args.args[0](connection)

        assert feed._reconnect_task is None
        assert connect.await_count == 1

    async def test_dispatch_after_reconnect(self) -> None:
        first, second = make_connection(), make_connection()
        handler = AsyncMock()
        feed = ChangeFeed("postgresql://localhost/agentfleet", reconnect_delay=0)
        feed.subscribe(USER_MESSAGE_CHANNEL, handler)

        with patch(CONNECT, AsyncMock(side_effect=[first, second])):
            await feed.start()
            first.add_termination_listener.call_args.args[0](first)
            await feed._reconnect_task

        callback = second.add_listener.await_args.args[1]
        callback(second, 1, USER_MESSAGE_CHANNEL, json.dumps({"id": "m-1", "agent_id": "a"}))
        await drain()

        handler.assert_awaited_once_with({"id": "m-1", "agent_id": "a"})
        await feed.stop()

    async def test_install_triggers(self) -> None:
        connection = make_connection()

        with patch(CONNECT, AsyncMock(return_value=connection)):
            await ChangeFeed("postgresql://localhost/agentfleet").install_triggers()

        ddl = connection.execute.await_args.args[0]
        assert "json_build_object('id', NEW.id, 'agent_id', NEW.agent_id)" in ddl
        assert "row_to_json" not in ddl
        connection.close.assert_awaited_once()
