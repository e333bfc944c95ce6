"""Shared fixtures: a scriptable fake Claude CLI and an in-memory executor."""
from __future__ import annotations

import asyncio
import json
import stat
import sys
from collections import deque
from pathlib import Path
from typing import Any

import pytest

from heimerdinger.engine.chunks import StreamChunk, parse_chunk


# ── Fake CLI on disk ──

_PREAMBLE = """\
import json
import os
import sys
import time

with open(CALLS_FILE, "a", encoding="utf-8") as _f:
    _f.write(json.dumps({"argv": sys.argv[1:], "cwd": os.getcwd()}) + "\\n")


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()

"""


class FakeClaude:
    """Writes executable Python scripts that impersonate the Claude CLI."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.calls_file = root / "calls.jsonl"
        self._count = 0

    def script(self, body: str) -> str:
        self._count += 1
        path = self.root / f"fake_claude_{self._count}"
        path.write_text(
            f"#!{sys.executable}\n"
            f"CALLS_FILE = {str(self.calls_file)!r}\n"
            + _PREAMBLE
            + body,
            encoding="utf-8",
        )
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    def calls(self) -> list[dict[str, Any]]:
        if not self.calls_file.exists():
            return []
        return [
            json.loads(line)
            for line in self.calls_file.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]


@pytest.fixture
def fake_claude(tmp_path: Path) -> FakeClaude:
    root = tmp_path / "bin"
    root.mkdir()
    return FakeClaude(root)


# ── Chunk builders ──


def assistant(text: str = "", *, uuid: str | None = None, tools: list[dict] | None = None) -> StreamChunk:
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for tool in tools or []:
        content.append({"type": "tool_use", "id": tool.get("id", "tu"), **tool})
    data: dict[str, Any] = {"type": "assistant", "message": {"content": content}}
    if uuid:
        data["uuid"] = uuid
    return parse_chunk(data)


def result(
    session_id: str | None = "s1",
    *,
    cost: float | None = 0.0123,
    denials: list[dict] | None = None,
) -> StreamChunk:
    data: dict[str, Any] = {"type": "result", "subtype": "success", "result": "ok"}
    if session_id:
        data["session_id"] = session_id
    if cost is not None:
        data["total_cost_usd"] = cost
    if denials:
        data["permission_denials"] = denials
    return parse_chunk(data)


@pytest.fixture
def chunks():
    """Access to the chunk builders from tests."""
    class _Builders:
        pass

    builders = _Builders()
    builders.assistant = assistant
    builders.result = result
    return builders


# ── In-memory executor ──


class FakeExecution:
    """Feeds scripted chunks to on_chunk; optionally holds until aborted."""

    def __init__(self, script: list[StreamChunk], on_chunk, *, hold: bool, error: Exception | None):
        self.aborted = False
        self.abort_calls = 0
        self._script = script
        self._on_chunk = on_chunk
        self._error = error
        self._release = asyncio.Event()
        if not hold:
            self._release.set()
        self._task = asyncio.ensure_future(self._run())

    def abort(self) -> None:
        self.abort_calls += 1
        self.aborted = True
        self._release.set()

    async def wait(self) -> StreamChunk | None:
        return await self._task

    async def _run(self) -> StreamChunk | None:
        last = None
        for chunk in self._script:
            if self.aborted:
                return None
            if chunk.is_result:
                last = chunk
            if self._on_chunk is not None:
                await self._on_chunk(chunk)
        await self._release.wait()
        if self.aborted:
            return None
        if self._error is not None:
            raise self._error
        return last


class FakeExecutor:
    """Stand-in for ClaudeExecutor that records every execute() call."""

    def __init__(
        self,
        *scripts: list[StreamChunk],
        hold: bool = False,
        error: Exception | None = None,
    ) -> None:
        self._scripts = deque(scripts)
        self._last = scripts[-1] if scripts else []
        self.hold = hold
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.executions: list[FakeExecution] = []

    def execute(self, project_dir, prompt, *, session_id=None, permission_mode=None, on_chunk=None):
        self.calls.append({
            "project_dir": project_dir,
            "prompt": prompt,
            "session_id": session_id,
            "permission_mode": permission_mode,
        })
        script = self._scripts.popleft() if self._scripts else self._last
        execution = FakeExecution(script, on_chunk, hold=self.hold, error=self.error)
        self.executions.append(execution)
        return execution


@pytest.fixture
def fake_executor_cls():
    return FakeExecutor
