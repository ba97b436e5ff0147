"""
Framework lifecycle handler base.

A handler owns the container of one agent for one framework: fresh start,
hot reload, stop and terminal commands. Frameworks differ only in image,
environment, bind-mount layout, startup/reload commands and the config
artifacts written to the agent's host directory; the lifecycle sequence and
actual-state bookkeeping live here.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from ..config import Settings, get_settings
from ..database.store import StateStore
from ..models.agent import AgentStatus, Framework
from ..models.errors import BootFailedError, ContainerNotFoundError
from ..models.security import SandboxProfile, SecurityLevel
from ..services.config_pipeline import prepare_config
from ..services.container_runtime import ContainerHandle, ContainerRuntime
from ..services.crypto import ConfigCipher, get_cipher
from ..services.security_profiles import apply_sandbox_profile, build_sandbox_profile

logger = structlog.get_logger()


class FrameworkHandler(ABC):
    """Start / hot reload / stop / run-command contract for one framework."""

    framework: Framework
    container_port: int
    host_port_base: int
    home_mount: str
    terminal_workdir: str | None = None
    # Retry a failed boot once in repair mode
    supports_repair: bool = False
    # chown the agent directory to the in-container user before start
    fix_ownership: bool = False

    def __init__(
        self,
        runtime: ContainerRuntime,
        store: StateStore,
        settings: Settings | None = None,
        cipher: ConfigCipher | None = None,
    ) -> None:
        self._runtime = runtime
        self._store = store
        self._settings = settings or get_settings()
        self._cipher = cipher or get_cipher()

    # ------------------------------------------------------------------
    # Framework specifics
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def image(self) -> str:
        """Container image reference."""

    @abstractmethod
    def agent_dir_parts(self, agent_id: str) -> tuple[str, ...]:
        """Path of the agent home, relative to the data root."""

    @abstractmethod
    def transform_config(self, config: Any, metadata: dict[str, Any]) -> Any:
        """Framework specific rewrite of the decrypted, sanitized config."""

    @abstractmethod
    def write_config_artifacts(
        self, agent_dir: Path, agent_id: str, config: Any, metadata: dict[str, Any]
    ) -> None:
        """Write the files the agent runtime reads from its home."""

    @abstractmethod
    def build_environment(self, agent_id: str, config: Any) -> list[str]:
        """Container environment as ``KEY=value`` strings."""

    @abstractmethod
    def build_command(self, agent_id: str, repair: bool = False) -> list[str]:
        """Container startup command."""

    @abstractmethod
    def reload_command(self, agent_id: str) -> list[str]:
        """Command run inside a live container after its config was rewritten."""

    @abstractmethod
    def terminal_command(self, command: str) -> list[str]:
        """Wrap a user shell command for exec."""

    async def after_start(self, agent_id: str) -> dict[str, Any]:
        """Extra actual-state fields recorded once the container runs."""
        return {}

    # ------------------------------------------------------------------
    # Naming and addressing
    # ------------------------------------------------------------------

    def container_name(self, agent_id: str) -> str:
        return f"{self.framework.value}-{agent_id}"

    def host_port(self, agent_id: str) -> int:
        """Deterministic host port for the agent's gateway."""
        digest = hashlib.md5(agent_id.encode("utf-8")).hexdigest()
        return self.host_port_base + int(digest, 16) % 1000

    def endpoint_url(self, agent_id: str) -> str:
        return f"http://{self._settings.public_host}:{self.host_port(agent_id)}"

    def internal_url(self, agent_id: str) -> str:
        """URL of the agent on the shared Docker network."""
        return f"http://{self.container_name(agent_id)}:{self.container_port}"

    def gateway_token(self, config: Any) -> str | None:
        """Gateway bearer token from a decrypted config."""
        if not isinstance(config, dict):
            return None
        auth = (config.get("gateway") or {}).get("auth") or {}
        token = auth.get("token") if isinstance(auth, dict) else None
        return token if isinstance(token, str) and token else None

    def agent_dir(self, agent_id: str) -> Path:
        """Agent home as seen by the worker process."""
        root = Path(self._settings.agents_data_container_path)
        if not root.is_absolute():
            root = Path.cwd() / root
        return root.joinpath(*self.agent_dir_parts(agent_id))

    def agent_host_dir(self, agent_id: str) -> Path:
        """Agent home as seen by the Docker host, used for bind mounts."""
        if not self._settings.agents_data_host_path:
            return self.agent_dir(agent_id)
        root = Path(self._settings.agents_data_host_path)
        if not root.is_absolute():
            root = Path.cwd() / root
        return root.joinpath(*self.agent_dir_parts(agent_id))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare_config(self, config: Any, metadata: dict[str, Any]) -> Any:
        """Decrypt, sanitize and apply framework rewrites."""
        return self.transform_config(prepare_config(config, self._cipher), metadata)

    async def start(
        self,
        agent_id: str,
        config: Any,
        metadata: dict[str, Any] | None = None,
        force_restart: bool = False,
        *,
        security_level: SecurityLevel = SecurityLevel.STANDARD,
    ) -> None:
        """
        Bring the agent's container to the running state.

        A container that is already running is hot reloaded rather than
        recreated, unless ``force_restart`` is set. A stale (non-running)
        container is removed before a fresh start.

        Raises:
            Exception: Any failure, after actual state was set to error
        """
        metadata = metadata or {}
        profile = build_sandbox_profile(security_level)
        container = self._runtime.get_container(self.container_name(agent_id))

        try:
            final_config = self.prepare_config(config, metadata)

            info = await self._inspect_or_none(container)
            running = bool(info and (info.get("State") or {}).get("Running"))

            if running and not force_restart:
                await self.hot_reload(agent_id, final_config, metadata, profile)
                return

            await self._store.set_actual_state(
                agent_id,
                AgentStatus.STARTING,
                effective_security_tier=profile.level.value,
            )

            if info is not None:
                logger.info(
                    "stale_container_removing",
                    agent_id=agent_id,
                    container=container.name,
                    state=(info.get("State") or {}).get("Status"),
                )
                await container.remove()

            agent_dir = self._prepare_agent_dir(agent_id, final_config, metadata)
            await self._runtime.ensure_image(self.image)

            repair = force_restart and self.supports_repair
            container = await self._boot(agent_id, final_config, profile, repair)

            extra = await self.after_start(agent_id)
            await self._store.set_actual_state(
                agent_id,
                AgentStatus.RUNNING,
                endpoint_url=self.endpoint_url(agent_id),
                error_message=None,
                effective_security_tier=profile.level.value,
                **extra,
            )
            logger.info(
                "agent_started",
                agent_id=agent_id,
                framework=self.framework.value,
                container=container.name,
                security_level=profile.level.value,
                agent_dir=str(agent_dir),
            )

        except Exception as e:
            logger.error(
                "agent_start_failed",
                agent_id=agent_id,
                framework=self.framework.value,
                error=str(e),
            )
            await self._store.set_actual_state(agent_id, AgentStatus.ERROR, error_message=str(e))
            raise

    async def hot_reload(
        self,
        agent_id: str,
        final_config: Any,
        metadata: dict[str, Any],
        profile: SandboxProfile,
    ) -> None:
        """Rewrite config artifacts and signal the running container."""
        logger.info("agent_hot_reload", agent_id=agent_id, framework=self.framework.value)
        await self._store.set_actual_state(
            agent_id,
            AgentStatus.STARTING,
            effective_security_tier=profile.level.value,
        )
        self._prepare_agent_dir(agent_id, final_config, metadata)
        output = await self._runtime.exec_run(
            self.container_name(agent_id), self.reload_command(agent_id)
        )
        logger.debug("agent_reload_output", agent_id=agent_id, output=output[-500:])
        await self._store.set_actual_state(
            agent_id,
            AgentStatus.RUNNING,
            endpoint_url=self.endpoint_url(agent_id),
            error_message=None,
            effective_security_tier=profile.level.value,
        )

    async def stop(self, agent_id: str) -> None:
        """
        Stop and remove the agent's container.

        A missing container counts as stopped. Other failures are logged and
        recorded on the actual state; they never raise.
        """
        container = self._runtime.get_container(self.container_name(agent_id))
        await self._store.set_actual_state(agent_id, AgentStatus.STOPPING)

        try:
            await container.stop()
            await container.remove()
        except ContainerNotFoundError:
            logger.info("agent_container_already_absent", agent_id=agent_id)
        except Exception as e:
            logger.warning(
                "agent_stop_failed",
                agent_id=agent_id,
                framework=self.framework.value,
                error=str(e),
            )
            await self._store.set_actual_state(
                agent_id, AgentStatus.ERROR, error_message=f"Stop failed: {e}"
            )
            return

        await self._store.set_actual_state(agent_id, AgentStatus.STOPPED, endpoint_url=None)
        logger.info("agent_stopped", agent_id=agent_id, framework=self.framework.value)

    async def run_command(self, agent_id: str, command: str) -> str:
        """Run a shell command in the agent's container; errors become text."""
        try:
            return await self._runtime.exec_run(
                self.container_name(agent_id),
                self.terminal_command(command),
                workdir=self.terminal_workdir,
            )
        except Exception as e:
            logger.error("terminal_command_failed", agent_id=agent_id, error=str(e))
            return f"Error: {e}"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _inspect_or_none(self, container: ContainerHandle) -> dict[str, Any] | None:
        try:
            return await container.inspect()
        except ContainerNotFoundError:
            return None

    def _prepare_agent_dir(self, agent_id: str, config: Any, metadata: dict[str, Any]) -> Path:
        agent_dir = self.agent_dir(agent_id)
        agent_dir.mkdir(parents=True, exist_ok=True)
        self.write_config_artifacts(agent_dir, agent_id, config, metadata)
        if self.fix_ownership:
            chown_tree(agent_dir, 1000, 1000)
        return agent_dir

    def _container_config(
        self,
        agent_id: str,
        config: Any,
        profile: SandboxProfile,
        repair: bool,
    ) -> dict[str, Any]:
        port_key = f"{self.container_port}/tcp"
        network = self._settings.docker_network_name
        host_config = {
            "Binds": [f"{self.agent_host_dir(agent_id)}:{self.home_mount}:rw"],
            "PortBindings": {port_key: [{"HostPort": str(self.host_port(agent_id))}]},
            "RestartPolicy": {"Name": "unless-stopped"},
            "NetworkMode": network,
        }
        return {
            "Image": self.image,
            "User": profile.user,
            "Env": self.build_environment(agent_id, config),
            "Cmd": self.build_command(agent_id, repair=repair),
            "ExposedPorts": {port_key: {}},
            "Labels": {
                "agentfleet.agent_id": agent_id,
                "agentfleet.framework": self.framework.value,
            },
            "HostConfig": apply_sandbox_profile(host_config, profile),
            "NetworkingConfig": {"EndpointsConfig": {network: {}}},
        }

    async def _boot(
        self,
        agent_id: str,
        config: Any,
        profile: SandboxProfile,
        repair: bool,
    ) -> ContainerHandle:
        """Create and start the container, retrying once in repair mode."""
        name = self.container_name(agent_id)
        while True:
            container = await self._runtime.create_container(
                self._container_config(agent_id, config, profile, repair), name
            )
            await container.start()

            if await self._confirm_running(container):
                return container

            logs = await self._tail_logs(container)
            if not self.supports_repair or repair:
                raise BootFailedError(
                    f"Container {name} failed to stay running after start. {logs}".strip()
                )

            logger.warning("agent_boot_failed_retrying_repair", agent_id=agent_id, logs=logs)
            await container.remove()
            repair = True

    async def _confirm_running(self, container: ContainerHandle) -> bool:
        if self.supports_repair:
            await asyncio.sleep(self._settings.boot_grace_seconds)
        return await container.is_running()

    async def _tail_logs(self, container: ContainerHandle) -> str:
        try:
            return (await container.logs(tail=20)).strip()
        except Exception as e:
            logger.debug("container_logs_unavailable", container=container.name, error=str(e))
            return ""


def write_json(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def chown_tree(path: Path, uid: int, gid: int) -> None:
    """Recursively hand a host directory to the in-container user."""
    try:
        os.chown(path, uid, gid)
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                os.chown(os.path.join(root, name), uid, gid)
    except OSError as e:
        logger.warning("agent_dir_chown_failed", path=str(path), error=str(e))
