"""ElizaOS character agents."""

import copy
import re
from pathlib import Path
from typing import Any

import structlog

from ..models.agent import Framework
from ..services.config_pipeline import rename_key
from .base import FrameworkHandler, write_json

logger = structlog.get_logger()

HOME = "/agent-home"
BUN_PATH = 'export PATH="/root/.bun/bin:$PATH"'

_NON_PRINTABLE = re.compile(r"[^\x20-\x7e]")


class ElizaOSHandler(FrameworkHandler):
    """
    ElizaOS loads a character file per agent.

    Legacy characters use ``lore`` and a top-level ``modelProvider``; both are
    rewritten to the current ``knowledge`` key and provider plugin list. The
    character is reloaded in place with ``elizaos agent set``.
    """

    framework = Framework.ELIZAOS
    container_port = 3000
    host_port_base = 21000
    home_mount = HOME
    terminal_workdir = HOME
    fix_ownership = True

    @property
    def image(self) -> str:
        return self._settings.elizaos_image

    def agent_dir_parts(self, agent_id: str) -> tuple[str, ...]:
        return (agent_id, "home")

    def character_path(self, agent_id: str) -> str:
        return f"{HOME}/{agent_id}.json"

    def transform_config(self, config: Any, metadata: dict[str, Any]) -> Any:
        character = rename_key(copy.deepcopy(config), "lore", "knowledge")
        if not isinstance(character, dict):
            return character

        provider = character.pop("modelProvider", None)
        if provider:
            plugins = list(character.get("plugins") or [])
            plugin = f"@elizaos/plugin-{str(provider).lower()}"
            if plugin not in plugins:
                plugins.append(plugin)
            character["plugins"] = plugins
        return character

    def write_config_artifacts(
        self, agent_dir: Path, agent_id: str, config: Any, metadata: dict[str, Any]
    ) -> None:
        write_json(agent_dir / f"{agent_id}.json", config)

    def build_environment(self, agent_id: str, config: Any) -> list[str]:
        env = [f"HOME={HOME}", f"AGENT_ID={agent_id}", "SERVER_PORT=3000"]
        secrets = (config.get("settings") or {}).get("secrets") if isinstance(config, dict) else None
        if isinstance(secrets, dict):
            env.extend(f"{k}={v}" for k, v in secrets.items() if isinstance(v, str))
        return env

    def build_command(self, agent_id: str, repair: bool = False) -> list[str]:
        return [
            "/bin/bash",
            "-c",
            f'{BUN_PATH}; exec elizaos start --character "{self.character_path(agent_id)}"',
        ]

    def reload_command(self, agent_id: str) -> list[str]:
        return [
            "/bin/bash",
            "-c",
            f'{BUN_PATH}; elizaos agent set --path "{self.character_path(agent_id)}"',
        ]

    def terminal_command(self, command: str) -> list[str]:
        return ["/bin/bash", "-c", f"{BUN_PATH}; {command}"]

    async def after_start(self, agent_id: str) -> dict[str, Any]:
        return {"version": await self.detect_version(agent_id)}

    async def detect_version(self, agent_id: str) -> str:
        """Report the runtime version, ``unknown`` when it cannot be read."""
        try:
            output = await self._runtime.exec_run(
                self.container_name(agent_id),
                ["/bin/bash", "-c", f"{BUN_PATH}; elizaos --version"],
            )
        except Exception as e:
            logger.debug("elizaos_version_unavailable", agent_id=agent_id, error=str(e))
            return "unknown"
        version = _NON_PRINTABLE.sub("", output).strip()
        return version or "unknown"
