"""Tests for reading Claude's project and session history."""
from __future__ import annotations

import json
import os

import pytest

from heimerdinger.engine.history import ClaudeHistory, encode_project_path


@pytest.fixture
def workspace(tmp_path):
    """A real project tree plus a Claude projects dir that references it."""
    src = tmp_path / "src"
    (src / "my-app").mkdir(parents=True)
    (src / "tools").mkdir()
    projects_dir = tmp_path / "claude" / "projects"
    projects_dir.mkdir(parents=True)
    return src, projects_dir


def _project_dir(projects_dir, project_path):
    path = projects_dir / encode_project_path(str(project_path))[0]
    path.mkdir()
    return path


def test_encode_project_path_candidates():
    candidates = encode_project_path("/home/me/my_app")
    assert candidates[0] == "-home-me-my_app"
    assert "-home-me-my-app" in candidates
    assert "home-me-my_app" in candidates


def test_sessions_from_index_sorted_newest_first(workspace):
    src, projects_dir = workspace
    project = src / "my-app"
    pdir = _project_dir(projects_dir, project)
    (pdir / "sessions-index.json").write_text(json.dumps({"entries": [
        {"sessionId": "old", "modified": "2024-01-01T00:00:00Z", "summary": "Old"},
        {"sessionId": "new", "modified": "2024-06-01T00:00:00Z", "firstPrompt": "Hello",
         "messageCount": 4, "gitBranch": "main"},
        {"summary": "no id"},
    ]}), encoding="utf-8")

    sessions = ClaudeHistory(projects_dir).list_sessions(str(project))

    assert [s.session_id for s in sessions] == ["new", "old"]
    assert sessions[0].label == "Hello"
    assert sessions[0].git_branch == "main"
    assert sessions[1].label == "Old"


def test_sessions_fall_back_to_transcripts(workspace):
    src, projects_dir = workspace
    project = src / "my-app"
    pdir = _project_dir(projects_dir, project)
    older = pdir / "aaa111.jsonl"
    newer = pdir / "bbb222.jsonl"
    older.write_text("{}\n", encoding="utf-8")
    newer.write_text("{}\n", encoding="utf-8")
    os.utime(older, (1_000, 1_000))
    os.utime(newer, (2_000, 2_000))

    history = ClaudeHistory(projects_dir)

    assert [s.session_id for s in history.list_sessions(str(project))] == ["bbb222", "aaa111"]
    assert history.find_session(str(project), "aaa").session_id == "aaa111"
    assert history.find_session(str(project), "zzz") is None
    assert history.find_session(str(project), "  ") is None


def test_unknown_project_has_no_sessions(workspace):
    _src, projects_dir = workspace
    assert ClaudeHistory(projects_dir).list_sessions("/nowhere/at/all") == []


def test_corrupt_index_yields_empty_list(workspace):
    src, projects_dir = workspace
    pdir = _project_dir(projects_dir, src / "tools")
    (pdir / "sessions-index.json").write_text("{oops", encoding="utf-8")
    assert ClaudeHistory(projects_dir).list_sessions(str(src / "tools")) == []


def test_decode_handles_dashes_in_directory_names(workspace):
    src, _projects_dir = workspace
    encoded = encode_project_path(str(src / "my-app"))[0]
    assert ClaudeHistory.decode_project_path(encoded) == str(src / "my-app")
    assert ClaudeHistory.decode_project_path("-definitely-not-here-xyz") is None


def test_list_and_find_projects(workspace, tmp_path):
    src, projects_dir = workspace
    _project_dir(projects_dir, src / "my-app")
    _project_dir(projects_dir, src / "tools")
    (projects_dir / "-gone-project").mkdir()
    config_file = tmp_path / "claude.json"
    config_file.write_text(json.dumps({"projects": {
        str(src / "tools"): {"allowedTools": ["Bash"], "mcpServers": {"x": {}}},
    }}), encoding="utf-8")

    history = ClaudeHistory(projects_dir, config_file)
    projects = history.list_projects()

    assert sorted(p.name for p in projects) == ["my-app", "tools"]
    tools = history.find_project("TOOLS")
    assert tools.path == str(src / "tools")
    assert tools.allowed_tools == ["Bash"]
    assert history.find_project(str(src / "my-app")).name == "my-app"
    assert history.find_project("missing") is None


def test_malformed_project_config_entries_are_ignored(workspace, tmp_path):
    src, projects_dir = workspace
    _project_dir(projects_dir, src / "my-app")
    _project_dir(projects_dir, src / "tools")
    config_file = tmp_path / "claude.json"
    config_file.write_text(json.dumps({"projects": {
        str(src / "tools"): "oops",
        str(src / "my-app"): {"allowedTools": "Bash", "mcpServers": []},
    }}), encoding="utf-8")

    projects = {p.name: p for p in ClaudeHistory(projects_dir, config_file).list_projects()}

    assert sorted(projects) == ["my-app", "tools"]
    for project in projects.values():
        assert project.allowed_tools == []
        assert project.mcp_servers == {}


def test_missing_projects_dir(tmp_path):
    assert ClaudeHistory(tmp_path / "nope").list_projects() == []
