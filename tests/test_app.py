from __future__ import annotations

import argparse
import logging
from logging.handlers import RotatingFileHandler

import pytest

from heimerdinger.app import build_config, configure_logging
from heimerdinger.engine.config import BridgeConfig
from heimerdinger.engine.errors import ConfigError


def _args(**overrides) -> argparse.Namespace:
    values = {
        "config": None,
        "host": None,
        "port": None,
        "project_dir": None,
        "state_file": None,
        "verbose": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


@pytest.fixture
def no_config_file(monkeypatch, tmp_path):
    monkeypatch.setattr(
        "heimerdinger.engine.yaml_config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml",
    )
    for key in ("HMDG_PORT", "HMDG_HOST", "HMDG_PROJECT_DIR", "HMDG_LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)


def test_cli_flags_override_config(no_config_file, tmp_path):
    project = tmp_path / "proj"
    project.mkdir()
    config = build_config(_args(
        host="0.0.0.0",
        port=0,
        project_dir=str(project),
        state_file=str(tmp_path / "state.json"),
        verbose=True,
    ))
    assert config.host == "0.0.0.0"
    assert config.port == 0
    assert config.project_dir == str(project.resolve())
    assert config.state_file == tmp_path / "state.json"
    assert config.log_level == "DEBUG"


def test_yaml_config_is_loaded(no_config_file, tmp_path):
    path = tmp_path / "c.yaml"
    path.write_text("server:\n  port: 8123\n", encoding="utf-8")
    assert build_config(_args(config=str(path))).port == 8123


def test_invalid_yaml_value(no_config_file, tmp_path):
    path = tmp_path / "c.yaml"
    path.write_text("state:\n  retry_max_pending: 0\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        build_config(_args(config=str(path)))


def test_configure_logging_installs_rotating_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = configure_logging(BridgeConfig(
            log_file=tmp_path / "logs" / "app.log", log_level="WARNING",
        ))
        assert log_file.parent.is_dir()
        assert root.level == logging.WARNING
        rotating = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 2_000_000
        assert rotating[0].backupCount == 5
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
