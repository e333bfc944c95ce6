"""Chat-platform adapters."""

from heimerdinger.adapters.base import (
    ChatAdapter,
    IncomingMessage,
    InteractiveAction,
    MessageContext,
)
from heimerdinger.adapters.loopback import LoopbackAdapter, OutboundMessage

__all__ = [
    "ChatAdapter",
    "IncomingMessage",
    "InteractiveAction",
    "LoopbackAdapter",
    "MessageContext",
    "OutboundMessage",
]
