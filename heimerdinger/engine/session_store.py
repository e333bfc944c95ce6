"""Durable channel and project session state.

Storage layout (single JSON document, rewritten on every mutation):
    {
      "channels": {"<channel_id>": {"projectPath": ..., "sessionId": ...,
                                    "pendingPrompt": ...}},
      "projectSessions": {"<project_path>": "<session_id>"}
    }

The file is read once at construction. ``save()`` raises on failure;
``persist()`` is the best-effort wrapper the engine uses, which logs
and keeps running on the in-memory state.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

from .durable import write_json
from .errors import StateStorageError
from .models import ChannelState

logger = logging.getLogger(__name__)


class SessionStore:
    """Channel -> ChannelState and project -> last session id."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._channels: dict[str, ChannelState] = {}
        self._project_sessions: dict[str, str] = {}
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Replace in-memory state with the file contents."""
        self._channels.clear()
        self._project_sessions.clear()
        if not self._path.exists():
            logger.debug("No state file at %s; starting empty", self._path)
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load sessions state %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed sessions state in %s", self._path)
            return

        channels = data.get("channels") or {}
        if isinstance(channels, dict):
            for channel_id, raw in channels.items():
                if isinstance(raw, dict):
                    self._channels[str(channel_id)] = ChannelState.from_dict(raw)

        projects = data.get("projectSessions") or {}
        if isinstance(projects, dict):
            for project, session_id in projects.items():
                if isinstance(session_id, str) and session_id:
                    self._project_sessions[str(project)] = session_id

        logger.info(
            "Loaded %d channel states, %d project sessions",
            len(self._channels), len(self._project_sessions),
        )
        for channel_id, state in self._channels.items():
            logger.debug(
                "Loaded channel state channel=%s project=%s",
                channel_id, state.project_path,
            )

    def to_dict(self) -> dict:
        return {
            "channels": {
                cid: state.to_dict() for cid, state in self._channels.items()
            },
            "projectSessions": dict(self._project_sessions),
        }

    def save(self) -> None:
        """Rewrite the whole state file. Raises StateStorageError."""
        try:
            write_json(self._path, self.to_dict())
        except (OSError, TypeError, ValueError) as exc:
            raise StateStorageError(str(self._path), str(exc)) from exc

    def persist(self) -> bool:
        """Best-effort ``save()``: log failures and report success."""
        try:
            self.save()
        except StateStorageError as exc:
            logger.warning("Failed to save sessions state: %s", exc)
            return False
        return True

    # ── Channels ──

    def channel(self, channel_id: str) -> ChannelState:
        """Return the channel's state, creating it on first use."""
        state = self._channels.get(channel_id)
        if state is None:
            state = ChannelState()
            self._channels[channel_id] = state
        return state

    def get_channel(self, channel_id: str) -> ChannelState | None:
        return self._channels.get(channel_id)

    def channel_ids(self) -> list[str]:
        return list(self._channels)

    # ── Project sessions ──

    def project_session(self, project_path: str) -> str | None:
        return self._project_sessions.get(project_path)

    def set_project_session(self, project_path: str, session_id: str) -> None:
        self._project_sessions[project_path] = session_id

    def clear_project_session(self, project_path: str) -> None:
        self._project_sessions.pop(project_path, None)
