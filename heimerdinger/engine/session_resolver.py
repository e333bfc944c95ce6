"""Pick which Claude session a prompt should resume."""
from __future__ import annotations

import logging

from .history import ClaudeHistory
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionResolver:
    """Resolve a project's session id.

    Priority, first match wins:
    1. an explicit id (the channel's own live session),
    2. the persisted project -> session mapping,
    3. the newest session in the CLI's history, written back to the
       mapping so later lookups take the fast path,
    4. None, meaning start a fresh session.
    """

    def __init__(self, store: SessionStore, history: ClaudeHistory) -> None:
        self._store = store
        self._history = history

    def resolve(
        self,
        project_path: str,
        explicit_session_id: str | None = None,
    ) -> str | None:
        if explicit_session_id:
            return explicit_session_id

        saved = self._store.project_session(project_path)
        if saved:
            logger.info("Found saved session for project: %s...", saved[:8])
            return saved

        sessions = self._history.list_sessions(project_path)
        if sessions:
            latest = sessions[0].session_id
            logger.info("Resuming latest Claude session: %s...", latest[:8])
            self._store.set_project_session(project_path, latest)
            self._store.persist()
            return latest

        return None
