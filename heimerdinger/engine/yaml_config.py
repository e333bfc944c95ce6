"""YAML configuration loader.

Loads a single YAML file into a BridgeConfig. Every key is optional;
missing sections keep the dataclass defaults.

Example YAML:
    server:
      host: 0.0.0.0
      port: 3150

    claude:
      command: claude
      permission_mode: acceptEdits
      retry_permission_mode: bypassPermissions
      projects_dir: ~/.claude/projects
      project_dir: /home/me/src/app

    state:
      file: ~/.heimerdinger/sessions-state.json
      update_interval_seconds: 1.0
      retry_ttl_seconds: 3600
      retry_max_pending: 100

    logging:
      level: info
      file: ~/.heimerdinger/logs/app.log
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import CONFIG_DIR, BridgeConfig
from .errors import ConfigError
from .models import PermissionMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.yaml"


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return value


def _path(value: Any) -> Path:
    return Path(str(value)).expanduser()


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load and parse a YAML config file on top of ``base``."""
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    config = base if base is not None else BridgeConfig()
    server = _section(raw, "server")
    claude = _section(raw, "claude")
    state = _section(raw, "state")
    log_cfg = _section(raw, "logging")

    try:
        if "host" in server:
            config.host = str(server["host"])
        if "port" in server:
            config.port = int(server["port"])

        if "command" in claude:
            config.claude_command = str(claude["command"])
        if "permission_mode" in claude:
            config.permission_mode = PermissionMode.parse(claude["permission_mode"])
        if "retry_permission_mode" in claude:
            config.retry_permission_mode = PermissionMode.parse(
                claude["retry_permission_mode"]
            )
        if "projects_dir" in claude:
            config.claude_projects_dir = _path(claude["projects_dir"])
        if "config_file" in claude:
            config.claude_config_file = _path(claude["config_file"])
        if claude.get("project_dir"):
            config.project_dir = str(_path(claude["project_dir"]))

        if "file" in state:
            config.state_file = _path(state["file"])
        if "update_interval_seconds" in state:
            config.update_interval_seconds = float(state["update_interval_seconds"])
        if "retry_ttl_seconds" in state:
            config.retry_ttl_seconds = float(state["retry_ttl_seconds"])
        if "retry_max_pending" in state:
            config.retry_max_pending = int(state["retry_max_pending"])

        if "level" in log_cfg:
            config.log_level = str(log_cfg["level"]).upper()
        if "file" in log_cfg:
            config.log_file = _path(log_cfg["file"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value in {path}: {exc}") from exc

    config.validate()
    return config


def load_config(path: str | Path | None = None) -> BridgeConfig:
    """Defaults, then the YAML file (explicit or auto-discovered), then env."""
    config = BridgeConfig()
    if path is not None:
        config = load_yaml_config(path, config)
    elif DEFAULT_CONFIG_PATH.exists():
        logger.info("Auto-discovered config: %s", DEFAULT_CONFIG_PATH)
        config = load_yaml_config(DEFAULT_CONFIG_PATH, config)
    else:
        logger.info(
            "No config file found (tried %s); using defaults",
            DEFAULT_CONFIG_PATH,
        )
    return BridgeConfig.from_env(config)
