"""OpenClaw gateway agents."""

import copy
from pathlib import Path
from typing import Any

from ..models.agent import Framework
from .base import FrameworkHandler, write_json

HOME = "/home/node/.openclaw"
CONFIG_FILE = "openclaw.json"
GATEWAY_COMMAND = "node dist/index.js gateway --bind lan"


class OpenClawHandler(FrameworkHandler):
    """
    OpenClaw runs one gateway process per container.

    The gateway re-reads ``openclaw.json`` on SIGUSR1, so a config change on a
    live container is a file rewrite plus a signal. A container that does not
    survive boot is recreated once with ``doctor --fix`` run before the
    gateway.
    """

    framework = Framework.OPENCLAW
    container_port = 18789
    host_port_base = 19000
    home_mount = HOME
    supports_repair = True

    @property
    def image(self) -> str:
        return self._settings.openclaw_image

    def agent_dir_parts(self, agent_id: str) -> tuple[str, ...]:
        return (agent_id, ".openclaw")

    def transform_config(self, config: Any, metadata: dict[str, Any]) -> Any:
        result = copy.deepcopy(config) if isinstance(config, dict) else {}
        gateway = result.setdefault("gateway", {})
        gateway["mode"] = "local"
        gateway["bind"] = "lan"
        endpoints = gateway.setdefault("http", {}).setdefault("endpoints", {})
        endpoints.setdefault("chatCompletions", {"enabled": True})
        return result

    def write_config_artifacts(
        self, agent_dir: Path, agent_id: str, config: Any, metadata: dict[str, Any]
    ) -> None:
        write_json(agent_dir / CONFIG_FILE, config)

    def build_environment(self, agent_id: str, config: Any) -> list[str]:
        env = [
            "HOME=/home/node",
            f"OPENCLAW_AGENT_ID={agent_id}",
            f"OPENCLAW_WORKSPACE_DIR={HOME}",
            f"OPENCLAW_CONFIG_PATH={HOME}/{CONFIG_FILE}",
        ]
        token = self.gateway_token(config)
        if token:
            env.append(f"OPENCLAW_GATEWAY_TOKEN={token}")
        return env

    def build_command(self, agent_id: str, repair: bool = False) -> list[str]:
        if repair:
            return [
                "sh",
                "-c",
                f"node dist/index.js doctor --fix --non-interactive; exec {GATEWAY_COMMAND}",
            ]
        return GATEWAY_COMMAND.split()

    def reload_command(self, agent_id: str) -> list[str]:
        return ["sh", "-c", "kill -USR1 1"]

    def terminal_command(self, command: str) -> list[str]:
        return ["sh", "-c", command]
