"""Core data models for the conversation-session engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PermissionMode(str, Enum):
    """Maps to the Claude CLI ``--permission-mode`` values."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: str | PermissionMode) -> PermissionMode:
        """Accept either the CLI spelling or the enum name."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for mode in cls:
            if text == mode.value or text.upper() == mode.name:
                return mode
        raise ValueError(f"Unknown permission mode: {value!r}")


class ChannelPhase(str, Enum):
    """Observable per-channel state of the execution lifecycle."""
    IDLE = "idle"
    AWAITING_PROJECT = "awaiting_project"
    RUNNING = "running"


# Tools whose tool_use blocks describe a file modification.
FILE_EDIT_TOOLS: frozenset[str] = frozenset({
    "Edit", "Write", "MultiEdit", "NotebookEdit",
})


@dataclass
class ChannelState:
    """Binding of one chat channel to a project and session."""
    project_path: str | None = None
    session_id: str | None = None
    # Queued while waiting for a project choice.
    pending_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.project_path:
            data["projectPath"] = self.project_path
        if self.session_id:
            data["sessionId"] = self.session_id
        if self.pending_prompt:
            data["pendingPrompt"] = self.pending_prompt
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelState:
        return cls(
            project_path=data.get("projectPath") or None,
            session_id=data.get("sessionId") or None,
            pending_prompt=data.get("pendingPrompt") or None,
        )


@dataclass(frozen=True)
class MessageRef:
    """Identifies one posted chat message (the throttle's sink key)."""
    channel_id: str
    message_id: str


@dataclass
class PermissionDenial:
    """A tool action the CLI refused under the current permission mode."""
    tool_name: str
    tool_use_id: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionDenial:
        tool_input = data.get("tool_input")
        return cls(
            tool_name=str(data.get("tool_name") or "unknown"),
            tool_use_id=str(data.get("tool_use_id") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
        )


@dataclass
class FileChange:
    """A file-editing tool invocation recorded during a run."""
    path: str
    tool: str
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingRetry:
    """Snapshot needed to re-run a prompt with elevated permissions."""
    prompt: str
    project_path: str
    channel_id: str
    session_id: str | None = None
    denials: list[PermissionDenial] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)


def _noop_abort() -> None:
    return None


@dataclass
class ActiveExecution:
    """Registry entry for the in-flight run of one channel.

    Registered before the subprocess exists (and before the progress
    message is posted) so a stop request always has something to
    cancel; ``message`` is filled in once posted and ``abort`` is
    swapped for the real handle once the run starts.
    """
    message: MessageRef | None = None
    abort: Callable[[], None] = _noop_abort
    aborted: bool = False
    permission_mode: PermissionMode = PermissionMode.ACCEPT_EDITS
    started_at: float = field(default_factory=time.time)

    def cancel(self) -> None:
        """Mark aborted and terminate. Safe to call repeatedly."""
        self.aborted = True
        self.abort()


@dataclass
class ClaudeProject:
    """A working directory the Claude CLI has been used in."""
    path: str
    name: str
    allowed_tools: list[str] = field(default_factory=list)
    mcp_servers: dict[str, Any] = field(default_factory=dict)


@dataclass
class HistorySession:
    """One entry of a project's Claude session history."""
    session_id: str
    modified: float
    summary: str = ""
    first_prompt: str = ""
    message_count: int = 0
    git_branch: str = ""

    @property
    def label(self) -> str:
        """Short human description for chat listings."""
        if self.summary:
            return self.summary
        if self.first_prompt:
            return self.first_prompt[:50]
        return "(no summary)"
