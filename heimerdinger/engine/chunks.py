"""Stream-JSON chunk model and incremental line parser.

The Claude CLI run with ``--output-format stream-json`` writes one
JSON object per line. Each object is parsed into a typed StreamChunk
for safe consumption by the controller.
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .models import FILE_EDIT_TOOLS, FileChange, PermissionDenial

logger = logging.getLogger(__name__)


@dataclass
class ContentBlock:
    """One block of an assistant/user message."""
    type: str
    text: str = ""
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str = ""


@dataclass
class StreamChunk:
    """A single parsed line of the CLI's streaming protocol."""
    type: str
    subtype: str = ""
    message_id: str | None = None
    blocks: list[ContentBlock] = field(default_factory=list)
    session_id: str | None = None
    result: str | None = None
    cost_usd: float | None = None
    permission_denials: list[PermissionDenial] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_result(self) -> bool:
        return self.type == "result"

    @property
    def is_assistant(self) -> bool:
        return self.type == "assistant"


def _parse_block(data: Any) -> ContentBlock | None:
    if not isinstance(data, dict) or "type" not in data:
        return None
    tool_input = data.get("input")
    content = data.get("text")
    if content is None and data.get("type") == "tool_result":
        content = data.get("content")
    return ContentBlock(
        type=str(data["type"]),
        text=content if isinstance(content, str) else "",
        id=str(data.get("id") or ""),
        name=str(data.get("name") or ""),
        input=tool_input if isinstance(tool_input, dict) else {},
        tool_use_id=str(data.get("tool_use_id") or ""),
    )


def parse_chunk(data: dict[str, Any]) -> StreamChunk:
    """Convert a decoded stream-json object to a StreamChunk."""
    message = data.get("message")
    if not isinstance(message, dict):
        message = {}

    blocks: list[ContentBlock] = []
    content = message.get("content")
    if isinstance(content, list):
        for raw_block in content:
            block = _parse_block(raw_block)
            if block is not None:
                blocks.append(block)

    cost = data.get("total_cost_usd")
    if not isinstance(cost, (int, float)) or not cost:
        cost = data.get("cost_usd")
    if not isinstance(cost, (int, float)) or isinstance(cost, bool):
        cost = None

    denials_raw = data.get("permission_denials")
    denials = [
        PermissionDenial.from_dict(d)
        for d in (denials_raw if isinstance(denials_raw, list) else [])
        if isinstance(d, dict)
    ]

    result = data.get("result")
    return StreamChunk(
        type=str(data.get("type") or ""),
        subtype=str(data.get("subtype") or ""),
        message_id=data.get("uuid") or message.get("id") or None,
        blocks=blocks,
        session_id=data.get("session_id") or None,
        result=result if isinstance(result, str) else None,
        cost_usd=float(cost) if cost is not None else None,
        permission_denials=denials,
        raw=data,
    )


def parse_line(line: str) -> StreamChunk | None:
    """Parse one protocol line. Blank or malformed lines yield None."""
    text = line.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed stream line: %.120s", text)
        return None
    if not isinstance(data, dict):
        logger.debug("Dropping non-object stream line: %.120s", text)
        return None
    return parse_chunk(data)


class StreamLineParser:
    """Buffers raw stdout bytes and yields chunks for complete lines.

    Partial lines (and partial UTF-8 sequences) are held until the
    next ``feed()``; ``flush()`` parses whatever remains at EOF.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[StreamChunk]:
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        chunks: list[StreamChunk] = []
        for line in lines:
            chunk = parse_line(line)
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def flush(self) -> list[StreamChunk]:
        remaining = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        chunk = parse_line(remaining)
        return [chunk] if chunk is not None else []


class RunOutput:
    """Accumulates the user-visible result of one run.

    Text blocks from assistant chunks are appended to ``text``;
    file-editing tool_use blocks are recorded as FileChange entries
    instead. Chunks already seen by message id are ignored.
    """

    def __init__(self, prefix: str = "") -> None:
        self.text = prefix
        self.file_changes: list[FileChange] = []
        self.finished = False
        self.last_result: StreamChunk | None = None
        self._seen_ids: set[str] = set()

    def apply(self, chunk: StreamChunk) -> bool:
        """Fold a chunk in. Returns True when the visible text changed."""
        if chunk.message_id:
            if chunk.message_id in self._seen_ids:
                return False
            self._seen_ids.add(chunk.message_id)

        if chunk.permission_denials:
            logger.info(
                "Chunk carries %d permission denial(s)",
                len(chunk.permission_denials),
            )

        if chunk.is_result:
            self.finished = True
            self.last_result = chunk
            return False
        if not chunk.is_assistant:
            return False

        changed = False
        for block in chunk.blocks:
            if block.type == "text" and block.text:
                self.text += block.text
                changed = True
            elif block.type == "tool_use" and block.name in FILE_EDIT_TOOLS:
                path = block.input.get("file_path") or block.input.get("notebook_path")
                if path:
                    self.file_changes.append(FileChange(
                        path=str(path), tool=block.name, tool_input=block.input,
                    ))
                    logger.info("Tracked %s on %s", block.name, path)
        # Assistant chunks always trigger a render, even tool-only ones.
        return changed or bool(chunk.blocks)
