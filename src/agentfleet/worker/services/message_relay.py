"""
Message relay.

Forwards user-authored conversation messages into running agent containers
and writes exactly one agent-authored reply per message. Messages starting
with the terminal prefix run as shell commands inside the container; all
other messages go to the agent's OpenAI-style chat-completions endpoint.
Chat failures are retried and, once the attempt budget is spent, translated
into a short diagnostic that is delivered as the reply.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
import structlog

from ..config import Settings, get_settings
from ..database.store import StateStore
from ..handlers import HandlerRegistry
from ..models.agent import AgentStatus, ConversationMessage
from ..models.errors import ChatRequestError, UnknownFrameworkError
from ..monitoring import metrics
from .config_pipeline import mask_token
from .crypto import ConfigCipher, get_cipher
from .retry_handler import BackoffStrategy, RetryHandler

logger = structlog.get_logger()

AGENT_ID_HEADER = "x-openclaw-agent-id"
NO_REPLY_SENTINEL = "No reply from agent."

TERMINAL_HELP = (
    "Terminal Command Center\n\n"
    "Commands prefixed with `{prefix}` are executed directly inside the agent container.\n\n"
    "Tip: you can run terminal commands from chat mode by starting your message with `{prefix} `.\n\n"
    "Examples:\n"
    "- `{prefix} ls -la`\n"
    "- `{prefix} whoami`\n"
    "- `{prefix} pwd`"
)
TERMINAL_NOT_READY = (
    "Terminal unavailable: the agent is not running. Start the agent and try again."
)
GATEWAY_TIMEOUT_REPLY = (
    "[GATEWAY TIMEOUT]: The agent did not produce a reply. "
    "The model provider may be slow or unavailable; please try again."
)

_UNREACHABLE_MARKERS = (
    "connection refused",
    "all connection attempts failed",
    "connection closed",
    "connection reset",
    "server disconnected",
    "econnrefused",
)
_CAPACITY_MARKERS = ("context window", "context length", "context_length", "maximum context")
_AUTH_MARKERS = ("401", "unauthorized")


def translate_chat_error(error: BaseException) -> str:
    """Map a final chat failure onto a user-facing diagnostic."""
    text = str(error) or type(error).__name__
    lowered = text.lower()

    if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
        return (
            "[AGENT UNREACHABLE]: Could not connect to the agent. "
            f"It may still be starting; try again shortly. ({text})"
        )
    if any(marker in lowered for marker in _CAPACITY_MARKERS):
        return (
            "[CAPACITY EXCEEDED]: The conversation no longer fits the model's context window. "
            f"Start a new conversation or switch to a larger model. ({text})"
        )
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return (
            "[AUTHENTICATION ERROR]: The agent gateway rejected the request. "
            f"Check the gateway token in the agent configuration. ({text})"
        )
    return f"[AGENT ERROR]: {text}"


def message_text(content: Any) -> str | None:
    """Flatten a chat ``message.content`` (string or list of parts) to text."""
    if content is None:
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return str(content)


def running_in_docker() -> bool:
    return os.path.exists("/.dockerenv")


class MessageRelay:
    """Relays user messages to agents and persists their replies."""

    def __init__(
        self,
        store: StateStore,
        handlers: HandlerRegistry,
        settings: Settings | None = None,
        cipher: ConfigCipher | None = None,
        client: httpx.AsyncClient | None = None,
        in_docker: bool | None = None,
    ) -> None:
        """
        Initialize message relay.

        Args:
            store: State store
            handlers: Framework handler registry
            settings: Worker settings (defaults to cached settings)
            cipher: Config cipher used to read gateway tokens
            client: HTTP client for chat calls, created on ``start`` if omitted
            in_docker: Address agents by container name (auto-detected if None)
        """
        self._store = store
        self._handlers = handlers
        self._settings = settings or get_settings()
        self._cipher = cipher or get_cipher()
        self._client = client
        self._owns_client = client is None
        self._in_docker = running_in_docker() if in_docker is None else in_docker
        self._retry = RetryHandler(
            max_attempts=self._settings.chat_max_attempts,
            base_delay=self._settings.chat_retry_delay_seconds,
            strategy=BackoffStrategy.FIXED,
            jitter=False,
        )

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.chat_timeout_seconds,
                headers={"Connection": "close"},
            )
        logger.info("message_relay_started", in_docker=self._in_docker)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def is_terminal_command(self, content: str) -> bool:
        prefix = self._settings.terminal_prefix
        return content == prefix or content.startswith(f"{prefix} ")

    async def handle_user_message(self, payload: dict[str, Any]) -> str | None:
        """
        Process one user-authored conversation row.

        Args:
            payload: Notification payload; either the inserted conversation
                row or just its ``id``, in which case the row is loaded

        Returns:
            The reply text written back, or None when the message was dropped
        """
        message = await self._load_message(payload)
        if message is None:
            return None
        content = message.content.strip()

        logger.info(
            "relay_message_received",
            message_id=message.id,
            agent_id=message.agent_id,
            preview=content[:20],
        )

        if self.is_terminal_command(content):
            reply, kind = await self._handle_terminal(message, content)
        else:
            result = await self._handle_chat(message, content)
            if result is None:
                return None
            reply, kind = result

        await self._store.insert_agent_message(message.agent_id, message.user_id, reply)
        metrics.relay_replies_total.labels(kind=kind).inc()
        logger.info("relay_reply_posted", message_id=message.id, agent_id=message.agent_id, kind=kind)
        return reply

    async def _load_message(self, payload: dict[str, Any]) -> ConversationMessage | None:
        if "content" in payload:
            return ConversationMessage.model_validate(payload)

        message_id = payload.get("id")
        message = await self._store.get_message(str(message_id)) if message_id else None
        if message is None:
            logger.warning("relay_message_not_found", message_id=message_id)
        elif message.sender != "user":
            logger.debug("relay_message_ignored", message_id=message_id, sender=message.sender)
            return None
        return message

    async def _handle_terminal(self,message: ConversationMessage, content: str) -> tuple[str, str]:
        prefix = self._settings.terminal_prefix
        command = content[len(prefix):].strip()

        if not command or command == "help":
            return TERMINAL_HELP.format(prefix=prefix), "help"

        agent = await self._store.get_agent(message.agent_id)
        if agent is None or agent.status != AgentStatus.RUNNING:
            return TERMINAL_NOT_READY, "terminal"

        logger.info("relay_terminal_command", agent_id=message.agent_id, command=command[:80])
        try:
            handler = self._handlers.get(agent.framework)
        except UnknownFrameworkError as e:
            return f"Error: {e}", "error"

        output = await handler.run_command(message.agent_id, command)
        return f"```bash\n$ {command}\n\n{output}\n```", "terminal"

    async def _handle_chat(
        self, message: ConversationMessage, content: str
    ) -> tuple[str, str] | None:
        agent = await self._store.get_agent(message.agent_id)
        endpoint = agent.actual.endpoint_url if agent and agent.actual else None
        if agent is None or not endpoint:
            logger.warning("relay_agent_not_ready", agent_id=message.agent_id)
            return None

        try:
            handler = self._handlers.get(agent.framework)
            config = self._cipher.decrypt_config(agent.desired.config if agent.desired else {})
            token = handler.gateway_token(config)
            base_url = handler.internal_url(agent.id) if self._in_docker else endpoint

            logger.info(
                "relay_chat_request",
                agent_id=agent.id,
                url=base_url,
                token=mask_token(token),
            )

            reply = await self._retry.retry(
                self._chat_once,
                base_url.rstrip("/"),
                agent.id,
                agent.framework,
                token,
                content,
                retryable_exceptions=(httpx.HTTPError, ChatRequestError),
            )
        except Exception as e:
            logger.error("relay_chat_failed", agent_id=message.agent_id, error=str(e) or type(e).__name__)
            return translate_chat_error(e), "error"

        if not reply or reply.strip() in ("", NO_REPLY_SENTINEL):
            logger.error("relay_gateway_timeout", agent_id=agent.id)
            return GATEWAY_TIMEOUT_REPLY, "error"
        return reply, "chat"

    async def _chat_once(
        self,
        base_url: str,
        agent_id: str,
        framework: str,
        token: str | None,
        content: str,
    ) -> str | None:
        if self._client is None:
            raise RuntimeError("Message relay not started")

        headers = {AGENT_ID_HEADER: agent_id}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = await self._client.post(
            f"{base_url}/v1/chat/completions",
            json={"model": framework, "messages": [{"role": "user", "content": content}]},
            headers=headers,
            timeout=self._settings.chat_timeout_seconds,
        )
        if response.status_code >= 400:
            raise ChatRequestError(response.status_code, response.text[:500])

        data = response.json()
        try:
            return message_text(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError):
            return None
