"""Tests for crash-safe state file replacement."""
from __future__ import annotations

import json

import pytest

from heimerdinger.engine.durable import replace_file, sync_directory, write_json


def test_replace_file_overwrites_without_leftovers(tmp_path):
    target = tmp_path / "out.json"
    replace_file(target, "one")
    replace_file(target, "two")
    assert target.read_text(encoding="utf-8") == "two"
    assert [p.name for p in tmp_path.iterdir()] == ["out.json"]


def test_replace_file_creates_parent_directories(tmp_path):
    target = tmp_path / "a" / "b" / "state.json"
    replace_file(target, "{}")
    assert target.read_text(encoding="utf-8") == "{}"


def test_replace_file_failure_keeps_old_content(tmp_path, monkeypatch):
    target = tmp_path / "state.json"
    replace_file(target, "old")

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("heimerdinger.engine.durable.os.replace", fail_replace)
    with pytest.raises(OSError):
        replace_file(target, "new")

    assert target.read_text(encoding="utf-8") == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_replace_file_under_a_regular_file_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    with pytest.raises(OSError):
        replace_file(blocker / "state.json", "{}")


def test_write_json_is_indented_unicode_with_newline(tmp_path):
    target = tmp_path / "state.json"
    write_json(target, {"channels": {"c1": {"pendingPrompt": "héllo"}}})

    text = target.read_text(encoding="utf-8")
    assert text.endswith("}\n")
    assert "héllo" in text
    assert '\n  "channels"' in text
    assert json.loads(text) == {"channels": {"c1": {"pendingPrompt": "héllo"}}}


def test_write_json_rejects_unserializable_document(tmp_path):
    target = tmp_path / "state.json"
    with pytest.raises(TypeError):
        write_json(target, {"bad": object()})
    assert not target.exists()


def test_sync_directory_ignores_missing_directory(tmp_path):
    sync_directory(tmp_path / "missing")
