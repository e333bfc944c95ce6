"""Plain-text rendering of run progress, results and file changes.

Platform markdown dialects are left to the adapters; everything here
produces plain text that any chat transport can show as-is.
"""
from __future__ import annotations

import difflib
import json
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from .chunks import StreamChunk
from .models import ClaudeProject, FileChange, HistorySession, PermissionDenial

logger = logging.getLogger(__name__)

PROCESSING_TEXT = "Processing..."
ELEVATED_PROCESSING_TEXT = "Processing with elevated permissions..."
IN_PROGRESS_SUFFIX = "\n\n(Claude is still working...)"
STOPPED_TEXT = "Stopped."
TRUNCATION_NOTICE = "\n\n(Message truncated)"
# Room kept for the truncation notice when cutting to a byte limit.
_NOTICE_RESERVE_BYTES = 100

DIFF_FALLBACK_CHARS = 2900
DENIAL_INPUT_CHARS = 80
RETRY_CARD_MAX_DENIALS = 5


def with_progress(text: str) -> str:
    return text + IN_PROGRESS_SUFFIX


def format_cost(cost_usd: float) -> str:
    return f"Cost: ${cost_usd:.4f}"


def summarize_denials(denials: list[PermissionDenial]) -> str:
    lines = ["Some operations were blocked:"]
    for denial in denials:
        tool_input = json.dumps(denial.tool_input, ensure_ascii=False)
        lines.append(f"- {denial.tool_name}: {tool_input[:DENIAL_INPUT_CHARS]}...")
    return "\n".join(lines)


def render_final(output: str, result: StreamChunk | None) -> str:
    """Final message body: output, blocked operations, cost."""
    parts = [output] if output else []
    if result is not None:
        if result.permission_denials:
            parts.append(summarize_denials(result.permission_denials))
        if result.cost_usd:
            parts.append(format_cost(result.cost_usd))
    return "\n\n".join(parts) or "Done."


def render_error(exc: BaseException) -> str:
    return f"Error: {str(exc) or type(exc).__name__}"


def truncate_bytes(text: str, max_bytes: int) -> str:
    """Cut ``text`` to at most ``max_bytes`` of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max(0, max_bytes)].decode("utf-8", errors="ignore")


def fit_message(text: str, max_bytes: int | None) -> str:
    """Truncate to an adapter's message limit, appending a notice."""
    if not max_bytes:
        return text
    size = len(text.encode("utf-8"))
    if size <= max_bytes:
        return text
    logger.warning("Truncating message: %d bytes (limit: %d)", size, max_bytes)
    budget = max_bytes - max(len(TRUNCATION_NOTICE.encode("utf-8")), _NOTICE_RESERVE_BYTES)
    return truncate_bytes(text, budget) + TRUNCATION_NOTICE


def retry_prompt_text(denials: list[PermissionDenial]) -> str:
    shown = [f"- {d.tool_name}" for d in denials[:RETRY_CARD_MAX_DENIALS]]
    extra = len(denials) - RETRY_CARD_MAX_DENIALS
    if extra > 0:
        shown.append(f"- ...and {extra} more")
    return (
        "Permission required\n\nThe following operations were blocked:\n"
        + "\n".join(shown)
    )


def retry_fallback_text(retry_id: str) -> str:
    return f"Some operations were blocked. Re-run with `/retry {retry_id}` to authorize."


def format_project_list(projects: list[ClaudeProject], limit: int = 10) -> str:
    return "\n".join(f"- {p.name} ({p.path})" for p in projects[:limit])


def format_session_list(sessions: list[HistorySession], limit: int = 5) -> str:
    lines = []
    for session in sessions[:limit]:
        line = f"- {session.session_id[:8]}: {session.label}"
        if session.git_branch:
            line += f" [{session.git_branch}]"
        lines.append(line)
    return "\n".join(lines)


# ── File-change diffs ──


@dataclass
class FileDiff:
    """Diff text for one file touched during a run."""
    path: str
    content: str
    is_new_file: bool = False

    @property
    def filename(self) -> str:
        return f"{PurePosixPath(self.path).name or 'changes'}.diff"

    @property
    def title(self) -> str:
        name = PurePosixPath(self.path).name or self.path
        return f"New: {name}" if self.is_new_file else f"Modified: {name}"

    def as_message(self, limit: int = DIFF_FALLBACK_CHARS) -> str:
        """Fenced text used when the adapter cannot upload snippets."""
        body = self.content
        if len(body) > limit:
            body = body[:limit] + "\n... (truncated)"
        return f"{self.path}\n```diff\n{body}\n```"


def _edit_diff(path: str, old: str, new: str) -> list[str]:
    return list(difflib.unified_diff(
        old.splitlines(), new.splitlines(),
        fromfile=path, tofile=path,
        lineterm="",
    ))


def _added_lines(content: str) -> list[str]:
    return [f"+{line}" for line in content.splitlines()]


def build_file_diffs(changes: list[FileChange]) -> list[FileDiff]:
    """Group changes per file (first-seen order) and render each as a diff."""
    grouped: dict[str, list[FileChange]] = {}
    for change in changes:
        grouped.setdefault(change.path, []).append(change)

    diffs: list[FileDiff] = []
    for path, file_changes in grouped.items():
        lines: list[str] = []
        is_new = False
        for change in file_changes:
            data = change.tool_input
            if change.tool == "Write":
                # A write replaces the whole file; earlier edits are moot.
                is_new = True
                lines = _added_lines(str(data.get("content") or ""))
            elif change.tool == "Edit":
                lines.extend(_edit_diff(
                    path,
                    str(data.get("old_string") or ""),
                    str(data.get("new_string") or ""),
                ))
            elif change.tool == "MultiEdit":
                for edit in data.get("edits") or []:
                    if isinstance(edit, dict):
                        lines.extend(_edit_diff(
                            path,
                            str(edit.get("old_string") or ""),
                            str(edit.get("new_string") or ""),
                        ))
            elif change.tool == "NotebookEdit":
                lines.extend(_added_lines(str(data.get("new_source") or "")))
        if lines:
            diffs.append(FileDiff(path=path, content="\n".join(lines), is_new_file=is_new))
    return diffs
