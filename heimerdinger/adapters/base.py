"""Abstract chat-platform adapter.

Each adapter wraps one chat transport (Slack, Feishu, the in-process
loopback, ...). The controller only ever talks to this interface and
treats every call as a fallible side effect.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from heimerdinger.engine.models import ClaudeProject


@dataclass
class MessageContext:
    """Where an inbound message came from and where replies go."""
    channel_id: str
    user_id: str = ""
    thread_id: str | None = None


@dataclass
class IncomingMessage:
    """A text message received from a chat platform."""
    text: str
    context: MessageContext
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class InteractiveAction:
    """A button on an interactive message; clicking sends (action_id, value)."""
    action_id: str
    label: str
    value: str = ""
    style: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "action_id": self.action_id,
            "label": self.label,
            "value": self.value,
        }
        if self.style:
            data["style"] = self.style
        return data


class ChatAdapter(abc.ABC):
    """Chat transport interface.

    The two required operations are posting a message (returning its
    id) and editing one. Cards, snippet uploads and interactive
    buttons are optional; the ``supports_*`` flags tell the controller
    whether to call them or fall back to plain text.
    """

    # UTF-8 byte limit for one message; None means unlimited.
    max_message_bytes: int | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short adapter name (e.g. 'slack', 'loopback')."""

    @abc.abstractmethod
    async def send_message(
        self,
        channel: str,
        text: str,
        thread_id: str | None = None,
    ) -> str:
        """Post a message and return its platform message id."""

    @abc.abstractmethod
    async def update_message(self, channel: str, message_id: str, text: str) -> None:
        """Replace the text of a previously sent message."""

    @property
    def supports_project_cards(self) -> bool:
        return False

    @property
    def supports_snippets(self) -> bool:
        return False

    @property
    def supports_interactive(self) -> bool:
        return False

    async def send_project_selection_card(
        self,
        channel: str,
        projects: list[ClaudeProject],
        prompt: str | None = None,
    ) -> str:
        raise NotImplementedError(f"{self.name} cannot send project cards")

    async def upload_snippet(
        self,
        channel: str,
        content: str,
        *,
        filename: str,
        title: str,
        thread_id: str | None = None,
    ) -> None:
        raise NotImplementedError(f"{self.name} cannot upload snippets")

    async def send_interactive_message(
        self,
        channel: str,
        text: str,
        actions: list[InteractiveAction],
        thread_id: str | None = None,
    ) -> str:
        raise NotImplementedError(f"{self.name} cannot send interactive messages")

    async def start(self) -> None:
        """Connect to the platform. Default: nothing to do."""

    async def stop(self) -> None:
        """Disconnect from the platform. Default: nothing to do."""
