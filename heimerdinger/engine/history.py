"""Read-only view of the Claude CLI's own project and session history.

Storage layout (owned by the Claude CLI, never written here):
    ~/.claude/projects/{encoded_project_path}/sessions-index.json
    ~/.claude/projects/{encoded_project_path}/{session_id}.jsonl
    ~/.claude.json   (per-project allowedTools / mcpServers)

A project path is encoded by replacing path separators (and other
non-alphanumeric characters) with '-'. Decoding is ambiguous because
directory names may contain '-', so candidates are probed on disk.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import ClaudeProject, HistorySession

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9-]")
INDEX_FILENAME = "sessions-index.json"


def encode_project_path(project_path: str) -> list[str]:
    """Candidate directory names for a project, most likely first."""
    slashes = project_path.replace("/", "-")
    strict = _NON_ALNUM_RE.sub("-", project_path)
    candidates: list[str] = []
    for name in (slashes, strict, slashes.lstrip("-"), strict.lstrip("-")):
        if name and name not in candidates:
            candidates.append(name)
    return candidates


def _as_list(value: Any) -> list[str]:
    return [str(v) for v in value] if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _parse_timestamp(value: Any) -> float:
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in JS-written indexes.
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0
    return 0.0


class ClaudeHistory:
    """Lists projects and sessions recorded by the Claude CLI."""

    def __init__(
        self,
        projects_dir: Path | str,
        config_file: Path | str | None = None,
    ) -> None:
        self._projects_dir = Path(projects_dir)
        self._config_file = Path(config_file) if config_file else None

    @property
    def projects_dir(self) -> Path:
        return self._projects_dir

    def _project_dir(self, project_path: str) -> Path | None:
        for name in encode_project_path(project_path):
            candidate = self._projects_dir / name
            if candidate.is_dir():
                return candidate
        return None

    # ── Sessions ──

    def list_sessions(self, project_path: str) -> list[HistorySession]:
        """Sessions for a project, newest first. Errors yield []."""
        project_dir = self._project_dir(project_path)
        if project_dir is None:
            return []
        try:
            index_path = project_dir / INDEX_FILENAME
            if index_path.exists():
                sessions = self._read_index(index_path)
            else:
                sessions = self._scan_transcripts(project_dir)
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as exc:
            logger.debug("Cannot read session history for %s: %s", project_path, exc)
            return []
        sessions.sort(key=lambda s: s.modified, reverse=True)
        return sessions

    @staticmethod
    def _read_index(index_path: Path) -> list[HistorySession]:
        data = json.loads(index_path.read_text(encoding="utf-8"))
        entries = data.get("entries") if isinstance(data, dict) else None
        sessions: list[HistorySession] = []
        for entry in entries or []:
            if not isinstance(entry, dict) or not entry.get("sessionId"):
                continue
            sessions.append(HistorySession(
                session_id=str(entry["sessionId"]),
                modified=_parse_timestamp(entry.get("modified")),
                summary=str(entry.get("summary") or ""),
                first_prompt=str(entry.get("firstPrompt") or ""),
                message_count=int(entry.get("messageCount") or 0),
                git_branch=str(entry.get("gitBranch") or ""),
            ))
        return sessions

    @staticmethod
    def _scan_transcripts(project_dir: Path) -> list[HistorySession]:
        return [
            HistorySession(session_id=p.stem, modified=p.stat().st_mtime)
            for p in project_dir.glob("*.jsonl")
            if p.is_file()
        ]

    def find_session(self, project_path: str, prefix: str) -> HistorySession | None:
        """Newest session whose id starts with ``prefix``."""
        prefix = prefix.strip()
        if not prefix:
            return None
        for session in self.list_sessions(project_path):
            if session.session_id.startswith(prefix):
                return session
        return None

    # ── Projects ──

    def list_projects(self) -> list[ClaudeProject]:
        """Known projects whose directories still exist.

        Sorted by depth (deeper paths first), then alphabetically.
        """
        if not self._projects_dir.is_dir():
            logger.warning(
                "Claude projects directory does not exist: %s", self._projects_dir
            )
            return []
        try:
            names = sorted(p.name for p in self._projects_dir.iterdir() if p.is_dir())
        except OSError as exc:
            logger.error("Error listing Claude projects: %s", exc)
            return []

        project_config = self._load_project_config()
        projects: list[ClaudeProject] = []
        for encoded in names:
            decoded = self.decode_project_path(encoded)
            if decoded is None:
                logger.debug("Skipping project (path not found): %s", encoded)
                continue
            cfg = project_config.get(decoded)
            if not isinstance(cfg, dict):
                cfg = {}
            projects.append(ClaudeProject(
                path=decoded,
                name=Path(decoded).name or decoded,
                allowed_tools=_as_list(cfg.get("allowedTools")),
                mcp_servers=_as_dict(cfg.get("mcpServers")),
            ))

        projects.sort(key=lambda p: (-len(p.path.split("/")), p.path))
        logger.debug("Returning %d valid projects", len(projects))
        return projects

    def find_project(self, name_or_path: str) -> ClaudeProject | None:
        wanted = name_or_path.strip()
        for project in self.list_projects():
            if project.name.lower() == wanted.lower() or project.path == wanted:
                return project
        return None

    def _load_project_config(self) -> dict[str, dict[str, Any]]:
        if self._config_file is None or not self._config_file.exists():
            return {}
        try:
            data = json.loads(self._config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.debug("Ignoring unreadable %s", self._config_file)
            return {}
        projects = data.get("projects") if isinstance(data, dict) else None
        return projects if isinstance(projects, dict) else {}

    @classmethod
    def decode_project_path(cls, encoded: str) -> str | None:
        """Map a directory name back to an existing absolute path."""
        parts = encoded.lstrip("-").split("-")
        if not parts or parts == [""]:
            return None
        return cls._probe("", parts, 0)

    @classmethod
    def _probe(cls, current: str, parts: list[str], index: int) -> str | None:
        if index >= len(parts):
            return current if Path(current).exists() else None
        for end in range(index, len(parts)):
            segment = "-".join(parts[index:end + 1])
            candidate = f"{current}/{segment}"
            if end == len(parts) - 1:
                if Path(candidate).exists():
                    return candidate
            elif Path(candidate).is_dir():
                found = cls._probe(candidate, parts, end + 1)
                if found:
                    return found
        return None
