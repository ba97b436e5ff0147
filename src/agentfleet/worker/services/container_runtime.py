"""
Container runtime client for the local Docker Engine.

Thin async wrapper over aiodocker. Every engine call is bounded by a timeout;
a call that exceeds it is cancelled, which tears down the underlying HTTP
connection, and surfaces as ``ContainerRuntimeTimeoutError``. Non-2xx engine
responses surface as ``ContainerRuntimeError`` carrying the numeric status and
raw body, with 404 mapped to ``ContainerNotFoundError``.
"""

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import aiodocker
import aiohttp
import structlog
from aiodocker.containers import DockerContainer
from aiodocker.exceptions import DockerError
from aiodocker.execs import Exec

from ..config import Settings, get_settings
from ..models.errors import (
    ContainerNotFoundError,
    ContainerRuntimeError,
    ContainerRuntimeTimeoutError,
)

logger = structlog.get_logger()

T = TypeVar("T")


class ContainerHandle:
    """Operations on one named container."""

    def __init__(self, runtime: "ContainerRuntime", container: DockerContainer, name: str) -> None:
        self._runtime = runtime
        self._container = container
        self.name = name

    async def inspect(self) -> dict[str, Any]:
        return await self._runtime._call(f"inspect {self.name}", self._container.show())

    async def start(self) -> None:
        await self._runtime._call(f"start {self.name}", self._container.start())

    async def stop(self, timeout: int = 10) -> None:
        await self._runtime._call(f"stop {self.name}", self._container.stop(t=timeout))

    async def remove(self) -> None:
        """Force-remove the container together with its anonymous volumes."""
        await self._runtime._call(
            f"remove {self.name}", self._container.delete(force=True, v=True)
        )

    async def logs(self, tail: int = 100) -> str:
        lines = await self._runtime._call(
            f"logs {self.name}",
            self._container.log(stdout=True, stderr=True, tail=tail),
        )
        return "".join(lines)

    async def wait(self) -> dict[str, Any]:
        return await self._runtime._call(f"wait {self.name}", self._container.wait())

    async def is_running(self) -> bool:
        """Check the engine-reported state; a missing container is not running."""
        try:
            info = await self.inspect()
        except ContainerNotFoundError:
            return False
        state = info.get("State") or {}
        return bool(state.get("Running")) or state.get("Status") == "running"


class ContainerRuntime:
    """Async client over the Docker Engine API."""

    def __init__(
        self,
        settings: Settings | None = None,
        docker: aiodocker.Docker | None = None,
    ) -> None:
        """
        Initialize runtime client.

        Args:
            settings: Worker settings (defaults to cached settings)
            docker: Pre-built aiodocker client, mainly for tests
        """
        self._settings = settings or get_settings()
        self._docker = docker
        self._timeout = self._settings.docker_request_timeout_seconds

    async def initialize(self) -> None:
        """Open the engine connection."""
        if self._docker is None:
            try:
                self._docker = aiodocker.Docker(
                    url=self._settings.docker_url,
                    api_version=self._settings.docker_api_version,
                )
            except Exception as e:
                logger.error("container_runtime_init_failed", error=str(e))
                raise
        logger.info(
            "container_runtime_initialized",
            url=self._settings.docker_url,
            api_version=self._settings.docker_api_version,
        )

    async def close(self) -> None:
        if self._docker:
            await self._docker.close()
            self._docker = None
            logger.info("container_runtime_closed")

    @property
    def docker(self) -> aiodocker.Docker:
        if self._docker is None:
            raise RuntimeError("Container runtime not initialized")
        return self._docker

    async def list_containers(self) -> list[dict[str, Any]]:
        """List all containers (running or not) as engine summary dicts."""
        containers = await self._call(
            "list containers", self.docker.containers.list(all=True)
        )
        return [
            {
                "Id": c.id,
                "Names": c["Names"],
                "State": c["State"],
            }
            for c in containers
        ]

    async def running_container_names(self) -> set[str]:
        """Names (without leading slash) of containers currently running."""
        names = set()
        for summary in await self.list_containers():
            if str(summary.get("State") or "").lower() != "running":
                continue
            for name in summary.get("Names") or []:
                names.add(name.lstrip("/"))
        return names

    def get_container(self, name: str) -> ContainerHandle:
        """Get a handle for a container by name or id (no engine call)."""
        return ContainerHandle(self, self.docker.containers.container(name), name)

    async def create_container(self, config: dict[str, Any], name: str) -> ContainerHandle:
        container = await self._call(
            f"create {name}",
            self.docker.containers.create(config=config, name=name),
        )
        logger.info("container_created", name=name, image=config.get("Image"))
        return ContainerHandle(self, container, name)

    async def inspect_image(self, image: str) -> dict[str, Any]:
        return await self._call(f"inspect image {image}", self.docker.images.inspect(image))

    async def pull_image(self, image: str) -> None:
        """Pull an image, draining the whole progress stream before returning."""
        progress = await self._call(
            f"pull {image}",
            self.docker.images.pull(image, stream=False),
            timeout=self._settings.docker_pull_timeout_seconds,
        )
        for entry in progress or []:
            if isinstance(entry, dict) and entry.get("error"):
                raise ContainerRuntimeError(500, str(entry["error"]), f"pull {image}")
        logger.info("image_pulled", image=image)

    async def ensure_image(self, image: str) -> None:
        """Pull the image when it is not present locally."""
        try:
            await self.inspect_image(image)
        except ContainerNotFoundError:
            logger.info("image_missing_pulling", image=image)
            await self.pull_image(image)

    async def create_exec(
        self,
        container_name: str,
        cmd: list[str],
        *,
        tty: bool = True,
        workdir: str | None = None,
        user: str = "",
    ) -> Exec:
        container = self.docker.containers.container(container_name)
        return await self._call(
            f"exec create {container_name}",
            container.exec(
                cmd,
                stdout=True,
                stderr=True,
                tty=tty,
                user=user,
                workdir=workdir,
            ),
        )

    async def start_exec(self, exec_: Exec) -> str:
        """Run an exec session to completion and return its combined output."""
        return await self._call(
            f"exec start {exec_.id}",
            self._read_exec_output(exec_),
            timeout=self._settings.docker_exec_timeout_seconds,
        )

    async def exec_run(
        self,
        container_name: str,
        cmd: list[str],
        *,
        workdir: str | None = None,
    ) -> str:
        """Create and start an exec session in one step."""
        exec_ = await self.create_exec(container_name, cmd, workdir=workdir)
        logger.debug("exec_started", container=container_name, exec_id=exec_.id)
        return await self.start_exec(exec_)

    async def _read_exec_output(self, exec_: Exec) -> str:
        chunks: list[bytes] = []
        async with exec_.start(detach=False) as stream:
            while True:
                message = await stream.read_out()
                if message is None:
                    break
                chunks.append(message.data)
        return b"".join(chunks).decode("utf-8", errors="replace")

    async def _call(
        self,
        operation: str,
        awaitable: Awaitable[T],
        timeout: float | None = None,
    ) -> T:
        """Await an engine call with a time bound and typed errors."""
        limit = timeout if timeout is not None else self._timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("docker_api_timeout", operation=operation, timeout=limit)
            raise ContainerRuntimeTimeoutError(operation, limit) from None
        except DockerError as e:
            body = str(e.message)
            if e.status == 404:
                raise ContainerNotFoundError(body, operation) from e
            raise ContainerRuntimeError(e.status, body, operation) from e
        except (aiohttp.ClientError, OSError) as e:
            logger.error("docker_api_network_error", operation=operation, error=str(e))
            raise ContainerRuntimeError(None, str(e), operation) from e
