"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via HMDG_* env vars,
or via a YAML file (see yaml_config.py) which env vars then override.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import ConfigError
from .models import PermissionMode

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".heimerdinger"
CLAUDE_DIR = Path.home() / ".claude"


@dataclass
class BridgeConfig:
    """Bridge configuration."""

    # Claude CLI
    claude_command: str = "claude"
    # Mode for ordinary prompts; edits are auto-accepted by default.
    permission_mode: PermissionMode = PermissionMode.ACCEPT_EDITS
    # Mode used when the user authorizes a retry after denials.
    retry_permission_mode: PermissionMode = PermissionMode.BYPASS
    claude_projects_dir: Path = field(default_factory=lambda: CLAUDE_DIR / "projects")
    claude_config_file: Path = field(
        default_factory=lambda: Path.home() / ".claude.json"
    )

    # Default project used when a channel has not picked one.
    project_dir: str | None = None

    # Persisted channel/project session state
    state_file: Path = field(
        default_factory=lambda: CONFIG_DIR / "sessions-state.json"
    )

    # Chat update throttling (seconds between edits of one message)
    update_interval_seconds: float = 1.0

    # Pending "retry with permissions" offers
    retry_ttl_seconds: float = 3600.0
    retry_max_pending: int = 100

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3150

    # Logging
    log_level: str = "INFO"
    log_file: Path = field(
        default_factory=lambda: CONFIG_DIR / "logs" / "app.log"
    )

    @classmethod
    def from_env(cls, base: BridgeConfig | None = None) -> BridgeConfig:
        """Apply HMDG_* environment overrides on top of ``base``."""
        config = base if base is not None else cls()
        hmdg_vars = {
            k: v for k, v in os.environ.items() if k.startswith("HMDG_")
        }
        if hmdg_vars:
            logger.info(
                "BridgeConfig.from_env: HMDG_* env overrides: %s",
                ", ".join(sorted(hmdg_vars)),
            )
        else:
            logger.debug("BridgeConfig.from_env: no HMDG_* env vars set")

        try:
            config = replace(
                config,
                claude_command=os.getenv(
                    "HMDG_CLAUDE_COMMAND", config.claude_command
                ),
                permission_mode=PermissionMode.parse(os.getenv(
                    "HMDG_PERMISSION_MODE", config.permission_mode
                )),
                retry_permission_mode=PermissionMode.parse(os.getenv(
                    "HMDG_RETRY_PERMISSION_MODE", config.retry_permission_mode
                )),
                claude_projects_dir=Path(os.getenv(
                    "HMDG_CLAUDE_PROJECTS_DIR", str(config.claude_projects_dir)
                )),
                project_dir=os.getenv("HMDG_PROJECT_DIR") or config.project_dir,
                state_file=Path(os.getenv(
                    "HMDG_STATE_FILE", str(config.state_file)
                )),
                update_interval_seconds=float(os.getenv(
                    "HMDG_UPDATE_INTERVAL", str(config.update_interval_seconds)
                )),
                retry_ttl_seconds=float(os.getenv(
                    "HMDG_RETRY_TTL", str(config.retry_ttl_seconds)
                )),
                retry_max_pending=int(os.getenv(
                    "HMDG_RETRY_MAX_PENDING", str(config.retry_max_pending)
                )),
                host=os.getenv("HMDG_HOST", config.host),
                port=int(os.getenv("HMDG_PORT", str(config.port))),
                log_level=os.getenv("HMDG_LOG_LEVEL", config.log_level).upper(),
                log_file=Path(os.getenv("HMDG_LOG_FILE", str(config.log_file))),
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid HMDG_* environment value: {exc}") from exc

        config.validate()
        logger.info(
            "BridgeConfig: claude=%s mode=%s project_dir=%s state=%s",
            config.claude_command, config.permission_mode.value,
            config.project_dir or "<none>", config.state_file,
        )
        return config

    def validate(self) -> None:
        """Reject values the engine cannot run with."""
        if self.update_interval_seconds < 0:
            raise ConfigError("update_interval_seconds must be >= 0")
        if self.retry_max_pending < 1:
            raise ConfigError("retry_max_pending must be >= 1")
        if not self.claude_command:
            raise ConfigError("claude_command must not be empty")
