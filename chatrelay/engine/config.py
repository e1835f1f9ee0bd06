"""Configuration loaded from environment variables and an optional YAML file.

All settings have sensible defaults. Override via CHATRELAY_* env vars
or a YAML file:

    server:
      host: 127.0.0.1
      port: 3000
      static_dir: ./public

    assistant:
      command: claude
      workspace_file_limit: 50

    permissions:
      server_name: claude-code-chat-permissions
      broker_command: [node, /opt/broker/mcp-permissions.js]
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "chatrelay.yaml"


@dataclass
class RelayConfig:
    """Relay server and provider configuration."""

    # Assistant CLI, shell-split so wrappers like "npx claude" work.
    assistant_command: str = "claude"

    host: str = "127.0.0.1"
    port: int = 3000
    static_dir: str | None = None

    # Project-scoped hidden directory holding all persisted state.
    store_dir_name: str = ".claude-code-chat"

    # MCP permission broker wiring. When broker_command is set the
    # provider (re)writes mcp-servers.json at start-up.
    permission_server_name: str = "claude-code-chat-permissions"
    permission_broker_command: list[str] = field(default_factory=list)

    workspace_file_limit: int = 50
    log_level: str = "INFO"

    @property
    def assistant_argv(self) -> list[str]:
        return shlex.split(self.assistant_command)

    @property
    def permission_tool(self) -> str:
        return f"mcp__{self.permission_server_name}__approval_prompt"

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from CHATRELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CHATRELAY_")
        }
        if relay_vars:
            logger.debug("CHATRELAY_* env vars: %s", sorted(relay_vars))

        broker = os.getenv("CHATRELAY_PERMISSION_BROKER", "")
        config = cls(
            assistant_command=os.getenv(
                "CHATRELAY_ASSISTANT_COMMAND", cls.assistant_command
            ),
            host=os.getenv("CHATRELAY_HOST", cls.host),
            port=int(os.getenv(
                "CHATRELAY_PORT", os.getenv("PORT", str(cls.port))
            )),
            static_dir=os.getenv("CHATRELAY_STATIC_DIR") or None,
            store_dir_name=os.getenv(
                "CHATRELAY_STORE_DIR", cls.store_dir_name
            ),
            permission_server_name=os.getenv(
                "CHATRELAY_PERMISSION_SERVER", cls.permission_server_name
            ),
            permission_broker_command=shlex.split(broker) if broker else [],
            workspace_file_limit=int(os.getenv(
                "CHATRELAY_WORKSPACE_FILE_LIMIT", str(cls.workspace_file_limit)
            )),
            log_level=os.getenv("CHATRELAY_LOG_LEVEL", cls.log_level).upper(),
        )
        logger.info(
            "RelayConfig.from_env: command=%s host=%s port=%s store=%s",
            config.assistant_command, config.host, config.port,
            config.store_dir_name,
        )
        return config


# YAML section/key -> RelayConfig field
_YAML_KEYS: dict[str, dict[str, str]] = {
    "server": {
        "host": "host",
        "port": "port",
        "static_dir": "static_dir",
        "log_level": "log_level",
    },
    "assistant": {
        "command": "assistant_command",
        "workspace_file_limit": "workspace_file_limit",
    },
    "permissions": {
        "server_name": "permission_server_name",
        "broker_command": "permission_broker_command",
    },
    "storage": {
        "dir_name": "store_dir_name",
    },
}


def _coerce(name: str, value: Any) -> Any:
    types = {f.name: f.type for f in fields(RelayConfig)}
    declared = str(types.get(name, ""))
    if declared == "int":
        return int(value)
    if declared.startswith("list"):
        if isinstance(value, str):
            return shlex.split(value)
        return [str(v) for v in value or []]
    if value is None:
        return None
    return str(value)


def load_config(
    path: str | Path,
    base: RelayConfig | None = None,
) -> RelayConfig:
    """Overlay a YAML config file on ``base`` (env config by default).

    Unknown sections and keys are logged and ignored.
    """
    path = Path(path)
    base = base or RelayConfig.from_env()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        logger.warning("load_config: %s is not a mapping; ignoring", path)
        return base

    overrides: dict[str, Any] = {}
    for section, values in raw.items():
        mapping = _YAML_KEYS.get(section)
        if mapping is None or not isinstance(values, dict):
            logger.warning("load_config: ignoring section %r in %s", section, path)
            continue
        for key, value in values.items():
            field_name = mapping.get(key)
            if field_name is None:
                logger.warning(
                    "load_config: ignoring key %s.%s in %s", section, key, path,
                )
                continue
            overrides[field_name] = _coerce(field_name, value)

    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return replace(base, **overrides)


def discover_config(project_root: Path, store_dir_name: str) -> Path | None:
    """Return ``<project>/<store>/chatrelay.yaml`` when it exists."""
    candidate = project_root / store_dir_name / CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None
