"""Claude CLI execution: one subprocess per run, streamed as chunks.

``ClaudeExecutor.execute()`` spawns ``claude -p --output-format
stream-json`` in the project directory and returns an ``Execution``
handle right away. The run itself is an asyncio task that reads
stdout, parses complete lines into StreamChunks and hands each one to
``on_chunk`` (awaited, in order) before parsing the next.

``Execution.abort()`` is a stable, idempotent entry point that works
before the process exists: the terminate behaviour is swapped in when
the process handle is attached, and invoked immediately if an abort
was already requested.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shutil
import signal
import sys
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

from .chunks import StreamChunk, StreamLineParser
from .errors import ExecutionFailedError
from .models import PermissionMode

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], "Awaitable[None] | None"]

_READ_SIZE = 64 * 1024
_STDERR_TAIL_LINES = 20
# Grace period between SIGTERM and SIGKILL after an abort.
KILL_GRACE_SECONDS = 5.0


def resolve_command(command: str) -> str:
    """Locate the Claude binary: PATH, then common install dirs."""
    found = shutil.which(command)
    if found:
        logger.debug("Found claude binary at: %s", found)
        return found
    home = Path.home()
    for candidate in (
        Path("/usr/local/bin") / command,
        Path("/usr/bin") / command,
        home / ".local" / "bin" / command,
        home / ".claude" / "local" / command,
    ):
        if candidate.is_file() and os.access(candidate, os.X_OK):
            logger.debug("Found claude binary at: %s", candidate)
            return str(candidate)
    logger.warning("Could not find %s binary, relying on PATH", command)
    return command


class Execution:
    """Handle for one running (or about to run) CLI subprocess."""

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        on_chunk: ChunkCallback | None = None,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ) -> None:
        self._argv = argv
        self._cwd = cwd
        self._on_chunk = on_chunk
        self._kill_grace = kill_grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._aborted = False
        self._terminate: Callable[[], None] = lambda: None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self.last_result: StreamChunk | None = None
        self._task: asyncio.Task[StreamChunk | None] = asyncio.ensure_future(
            self._run()
        )

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def done(self) -> bool:
        return self._task.done()

    def abort(self) -> None:
        """Terminate the run. Later calls are no-ops."""
        if self._aborted:
            return
        self._aborted = True
        logger.info("Aborting Claude process (pid=%s)", self.pid)
        self._terminate()

    async def wait(self) -> StreamChunk | None:
        """Settle the run.

        Returns the last result chunk, or None when aborted (or when a
        clean exit produced no JSON at all). Raises ExecutionFailedError
        on a non-zero exit without a result chunk.
        """
        return await self._task

    # ── Internals ──

    def _attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._terminate = self._terminate_process
        if self._aborted:
            self._terminate_process()

    def _terminate_process(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        self._send_signal(signal.SIGTERM)
        if self._kill_grace > 0:
            loop = asyncio.get_running_loop()
            self._kill_handle = loop.call_later(
                self._kill_grace, self._send_signal, getattr(signal, "SIGKILL", signal.SIGTERM),
            )

    def _send_signal(self, sig: int) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                # The CLI runs in its own session; signal its tool children too.
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.send_signal(sig)

    async def _deliver(self, chunk: StreamChunk) -> None:
        if chunk.is_result:
            self.last_result = chunk
        if self._on_chunk is None:
            return
        try:
            outcome = self._on_chunk(chunk)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("on_chunk callback failed for %s chunk", chunk.type)

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            if self._aborted:
                continue
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.warning("Claude stderr: %s", text)

    async def _run(self) -> StreamChunk | None:
        if self._aborted:
            logger.info("Run aborted before spawn; not starting Claude")
            return None

        logger.debug("Spawning %s in %s", " ".join(self._argv[:-1]), self._cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            logger.error("Claude process error: %s", exc)
            if self._aborted:
                return None
            raise ExecutionFailedError(
                None, reason=f"Failed to start Claude CLI: {exc}",
            ) from exc

        self._attach(process)
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(self._drain_stderr(process.stderr))
        parser = StreamLineParser()

        try:
            while True:
                data = await process.stdout.read(_READ_SIZE)
                if not data:
                    break
                if self._aborted:
                    # Keep draining so the process can exit; output is ignored.
                    continue
                for chunk in parser.feed(data):
                    await self._deliver(chunk)
                    if self._aborted:
                        break
            if not self._aborted:
                for chunk in parser.flush():
                    await self._deliver(chunk)
            returncode = await process.wait()
            await stderr_task
        except asyncio.CancelledError:
            self.abort()
            stderr_task.cancel()
            raise
        finally:
            if self._kill_handle is not None:
                self._kill_handle.cancel()

        logger.debug("Claude process exited rc=%s aborted=%s", returncode, self._aborted)
        if self._aborted:
            return None
        if returncode == 0 or self.last_result is not None:
            return self.last_result
        raise ExecutionFailedError(returncode, "\n".join(self._stderr_tail))


class ClaudeExecutor:
    """Builds CLI invocations and starts Executions."""

    def __init__(
        self,
        command: str = "claude",
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ) -> None:
        self._command = resolve_command(command)
        self._kill_grace = kill_grace_seconds

    @property
    def command(self) -> str:
        return self._command

    def build_args(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        permission_mode: PermissionMode | None = None,
    ) -> list[str]:
        # stream-json requires --verbose together with -p.
        args = [self._command, "-p", "--output-format", "stream-json", "--verbose"]
        if permission_mode is not None:
            args.extend(["--permission-mode", PermissionMode(permission_mode).value])
        if session_id:
            args.extend(["--resume", session_id])
        # Prompt must be last.
        args.append(prompt)
        return args

    def execute(
        self,
        project_dir: str,
        prompt: str,
        *,
        session_id: str | None = None,
        permission_mode: PermissionMode | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> Execution:
        """Start one run. Must be called from a running event loop."""
        if session_id:
            logger.info("Resuming session: %s...", session_id[:8])
        else:
            logger.info("Starting new session")
        argv = self.build_args(
            prompt, session_id=session_id, permission_mode=permission_mode,
        )
        return Execution(
            argv, project_dir, on_chunk, kill_grace_seconds=self._kill_grace,
        )

    async def stream(
        self,
        project_dir: str,
        prompt: str,
        *,
        session_id: str | None = None,
        permission_mode: PermissionMode | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Iterate a run's chunks in order.

        Finite and non-restartable. Closing the iterator early aborts
        the subprocess; a failed exit raises after the last chunk.
        """
        queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()
        execution = self.execute(
            project_dir, prompt,
            session_id=session_id,
            permission_mode=permission_mode,
            on_chunk=queue.put_nowait,
        )
        waiter = asyncio.ensure_future(execution.wait())
        waiter.add_done_callback(lambda _f: queue.put_nowait(None))
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk
            await waiter
        finally:
            if not waiter.done():
                execution.abort()
                await asyncio.gather(waiter, return_exceptions=True)
