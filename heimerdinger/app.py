"""Heimerdinger CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from heimerdinger.engine.config import BridgeConfig
from heimerdinger.engine.errors import ConfigError


def _log_claude_version(command: str) -> None:
    """Log the Claude CLI version, or that it could not be found."""
    logger = logging.getLogger(__name__)
    cli_version = "unknown"
    try:
        out = subprocess.check_output(
            [command, "--version"], text=True, stderr=subprocess.STDOUT, timeout=15,
        ).strip()
        match = re.search(r"(\d+\.\d+\.\d+)", out)
        cli_version = match.group(1) if match else out
    except (OSError, subprocess.SubprocessError):
        logger.debug("Could not resolve claude CLI version", exc_info=True)
    logger.info("Runtime versions: claude-cli=%s", cli_version)
    if cli_version == "unknown":
        logger.warning(
            "Claude CLI %r did not answer --version; runs will fail until it is installed",
            command,
        )


def configure_logging(config: BridgeConfig) -> Path:
    """Root logger: rotating file plus stderr, one shared format."""
    log_file = Path(config.log_file).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def build_config(args) -> BridgeConfig:
    """Config file and environment first, then command-line flags."""
    from heimerdinger.engine.yaml_config import load_config

    config = load_config(args.config)
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.project_dir:
        overrides["project_dir"] = str(Path(args.project_dir).expanduser().resolve())
    if args.state_file:
        overrides["state_file"] = Path(args.state_file).expanduser()
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    config = replace(config, **overrides)
    config.validate()
    return config


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="heimerdinger",
        description="Heimerdinger: drive Claude Code sessions from chat",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/.heimerdinger/config.yaml if present)",
    )
    parser.add_argument(
        "--host",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port, default: 3150)",
    )
    parser.add_argument(
        "--project-dir", metavar="PATH",
        help="Default project for channels that have not picked one",
    )
    parser.add_argument(
        "--state-file", metavar="PATH",
        help="Where channel/session state is persisted",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    try:
        config = build_config(args)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"heimerdinger: {exc}", file=sys.stderr)
        sys.exit(2)

    log_file = configure_logging(config)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting Heimerdinger cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), config.host, config.port, args.config or "<auto>", log_file,
    )
    _log_claude_version(config.claude_command)

    from heimerdinger.server import BridgeServer

    server = BridgeServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
