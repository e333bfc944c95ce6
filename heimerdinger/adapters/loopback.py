"""In-process chat adapter.

Keeps every outbound message in memory (with its latest text) and
fans each outbound event out to subscriber queues. The HTTP server
exposes it as a chat API plus an SSE stream; tests use it directly.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .base import ChatAdapter, InteractiveAction

if TYPE_CHECKING:
    from heimerdinger.engine.models import ClaudeProject

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    """One message as the chat user would currently see it."""
    message_id: str
    channel: str
    kind: str
    text: str
    thread_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float | None = None
    edits: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "channel": self.channel,
            "kind": self.kind,
            "text": self.text,
            "thread_id": self.thread_id,
            "data": self.data,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "edits": self.edits,
        }


class LoopbackAdapter(ChatAdapter):
    """Records outbound traffic and publishes it to subscribers."""

    def __init__(
        self,
        max_message_bytes: int | None = 40_000,
        queue_size: int = 1000,
    ) -> None:
        self.max_message_bytes = max_message_bytes
        self._queue_size = queue_size
        self._ids = itertools.count(1)
        self._messages: dict[str, OutboundMessage] = {}
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()

    @property
    def name(self) -> str:
        return "loopback"

    @property
    def supports_project_cards(self) -> bool:
        return True

    @property
    def supports_snippets(self) -> bool:
        return True

    @property
    def supports_interactive(self) -> bool:
        return True

    # ── Inspection ──

    def messages(self, channel: str | None = None) -> list[OutboundMessage]:
        """Outbound messages in send order, optionally for one channel."""
        return [
            m for m in self._messages.values()
            if channel is None or m.channel == channel
        ]

    def get(self, message_id: str) -> OutboundMessage | None:
        return self._messages.get(message_id)

    def channels(self) -> list[str]:
        return sorted({m.channel for m in self._messages.values()})

    # ── Subscribers ──

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.debug("Loopback subscriber added (%d total)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, event_type: str, message: OutboundMessage) -> None:
        event = {"type": event_type, "message": message.to_dict()}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Loopback subscriber queue full, dropping %s for %s",
                    event_type, message.message_id,
                )

    def _record(
        self,
        channel: str,
        kind: str,
        text: str,
        thread_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> OutboundMessage:
        message = OutboundMessage(
            message_id=f"m{next(self._ids)}",
            channel=channel,
            kind=kind,
            text=text,
            thread_id=thread_id,
            data=data or {},
        )
        self._messages[message.message_id] = message
        self._publish("message.sent", message)
        return message

    # ── ChatAdapter ──

    async def send_message(
        self,
        channel: str,
        text: str,
        thread_id: str | None = None,
    ) -> str:
        return self._record(channel, "text", text, thread_id).message_id

    async def update_message(self, channel: str, message_id: str, text: str) -> None:
        message = self._messages.get(message_id)
        if message is None or message.channel != channel:
            raise KeyError(f"Unknown message {message_id} in channel {channel}")
        message.text = text
        message.updated_at = time.time()
        message.edits += 1
        self._publish("message.updated", message)

    async def send_project_selection_card(
        self,
        channel: str,
        projects: list[ClaudeProject],
        prompt: str | None = None,
    ) -> str:
        lines = ["Select a project:"]
        lines.extend(f"- {p.name} ({p.path})" for p in projects)
        data = {
            "projects": [{"name": p.name, "path": p.path} for p in projects],
            "prompt": prompt,
            "actions": [
                InteractiveAction("select_project", p.name, p.path).to_dict()
                for p in projects
            ],
        }
        return self._record(channel, "project_card", "\n".join(lines), data=data).message_id

    async def upload_snippet(
        self,
        channel: str,
        content: str,
        *,
        filename: str,
        title: str,
        thread_id: str | None = None,
    ) -> None:
        self._record(
            channel, "snippet", content, thread_id,
            data={"filename": filename, "title": title},
        )

    async def send_interactive_message(
        self,
        channel: str,
        text: str,
        actions: list[InteractiveAction],
        thread_id: str | None = None,
    ) -> str:
        data = {"actions": [a.to_dict() for a in actions]}
        return self._record(channel, "interactive", text, thread_id, data).message_id
