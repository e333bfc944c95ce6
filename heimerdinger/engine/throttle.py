"""Per-message rate limiting for streamed chat updates.

Chat platforms allow only a few edits per message per second, while
the CLI can emit many chunks per second. ``ThrottledUpdater`` applies
at most one update per message per interval: the first push applies
at once, pushes inside the interval overwrite a single pending slot,
and a timer applies the latest pending content at the interval
boundary. Intermediate contents are dropped, never reordered.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .models import MessageRef

logger = logging.getLogger(__name__)

UpdateSink = Callable[[MessageRef, str], Awaitable[None]]


@dataclass
class _KeyState:
    last_applied: float
    pending: str | None = None
    timer: asyncio.Task[None] | None = None


class ThrottledUpdater:
    """Coalesces content pushes per MessageRef into a bounded update rate."""

    def __init__(
        self,
        sink: UpdateSink,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._interval = interval
        self._clock = clock
        self._keys: dict[MessageRef, _KeyState] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, ref: object) -> bool:
        return ref in self._keys

    async def push(self, ref: MessageRef, content: str) -> None:
        """Request that ``ref`` show ``content``."""
        state = self._keys.get(ref)
        if state is None:
            # Quiet key: apply now and start the interval.
            state = _KeyState(last_applied=self._clock())
            self._keys[ref] = state
            state.timer = asyncio.ensure_future(self._tick(ref, state))
            await self._apply(ref, content)
            return
        state.pending = content

    def discard(self, ref: MessageRef) -> None:
        """Forget ``ref``: drop pending content and cancel its timer."""
        state = self._keys.pop(ref, None)
        if state is not None and state.timer is not None:
            state.timer.cancel()

    def close(self) -> None:
        for ref in list(self._keys):
            self.discard(ref)

    async def _tick(self, ref: MessageRef, state: _KeyState) -> None:
        while True:
            delay = state.last_applied + self._interval - self._clock()
            if delay > 0:
                await asyncio.sleep(delay)
            if self._keys.get(ref) is not state:
                return
            content, state.pending = state.pending, None
            if content is None:
                # Nothing pending after a full interval: release the key.
                del self._keys[ref]
                return
            state.last_applied = self._clock()
            await self._apply(ref, content)

    async def _apply(self, ref: MessageRef, content: str) -> None:
        try:
            await self._sink(ref, content)
        except Exception as exc:
            # Best-effort: a failed edit never affects the run.
            logger.debug(
                "Throttled update failed for %s/%s: %s",
                ref.channel_id, ref.message_id, exc,
            )
