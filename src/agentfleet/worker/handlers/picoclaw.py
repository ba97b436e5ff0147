"""PicoClaw agents."""

import json
from pathlib import Path
from typing import Any

from ..models.agent import Framework
from .base import FrameworkHandler, write_json

HOME = "/home/picoclaw/.picoclaw"
WORKSPACE = f"{HOME}/workspace"
DEFAULT_MODEL = "openrouter/auto"


class PicoClawHandler(FrameworkHandler):
    """PicoClaw reads ``config.json`` plus an ``IDENTITY.md`` persona file."""

    framework = Framework.PICOCLAW
    container_port = 18790
    host_port_base = 20000
    home_mount = HOME
    terminal_workdir = HOME

    @property
    def image(self) -> str:
        return self._settings.picoclaw_image

    def agent_dir_parts(self, agent_id: str) -> tuple[str, ...]:
        return (agent_id, "home", ".picoclaw")

    def transform_config(self, config: Any, metadata: dict[str, Any]) -> Any:
        config = config if isinstance(config, dict) else {}
        return {
            "agents": {
                "defaults": {
                    "workspace": WORKSPACE,
                    "model": config.get("model") or DEFAULT_MODEL,
                    **config,
                }
            },
            "providers": config.get("providers") or {},
            "tools": config.get("tools") or {},
        }

    def write_config_artifacts(
        self, agent_dir: Path, agent_id: str, config: Any, metadata: dict[str, Any]
    ) -> None:
        (agent_dir / "workspace").mkdir(parents=True, exist_ok=True)
        write_json(agent_dir / "config.json", config)

        character = metadata.get("character")
        if character:
            identity = character if isinstance(character, str) else json.dumps(character, indent=2)
            (agent_dir / "IDENTITY.md").write_text(identity, encoding="utf-8")

    def build_environment(self, agent_id: str, config: Any) -> list[str]:
        return [
            "HOME=/home/picoclaw",
            f"PICOCLAW_HOME={HOME}",
            f"AGENT_ID={agent_id}",
        ]

    def build_command(self, agent_id: str, repair: bool = False) -> list[str]:
        return ["picoclaw", "gateway"]

    def reload_command(self, agent_id: str) -> list[str]:
        return ["sh", "-c", "kill -HUP 1"]

    def terminal_command(self, command: str) -> list[str]:
        return ["sh", "-c", command]
