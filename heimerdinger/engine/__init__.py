"""Conversation-session engine bridging chat channels to the Claude Code CLI."""
from .models import (
    ActiveExecution,
    ChannelPhase,
    ChannelState,
    ClaudeProject,
    FileChange,
    HistorySession,
    MessageRef,
    PendingRetry,
    PermissionDenial,
    PermissionMode,
)
from .chunks import RunOutput, StreamChunk, StreamLineParser, parse_line
from .config import BridgeConfig
from .errors import (
    BridgeError,
    ConfigError,
    ExecutionFailedError,
    RetryExpiredError,
    StateStorageError,
)
from .executor import ClaudeExecutor, Execution
from .history import ClaudeHistory
from .retry import RetryWorkflow
from .session_resolver import SessionResolver
from .session_store import SessionStore
from .throttle import ThrottledUpdater
from .controller import ConversationController

__all__ = [
    "ActiveExecution",
    "BridgeConfig",
    "BridgeError",
    "ChannelPhase",
    "ChannelState",
    "ClaudeExecutor",
    "ClaudeHistory",
    "ClaudeProject",
    "ConfigError",
    "ConversationController",
    "Execution",
    "ExecutionFailedError",
    "FileChange",
    "HistorySession",
    "MessageRef",
    "PendingRetry",
    "PermissionDenial",
    "PermissionMode",
    "RetryExpiredError",
    "RetryWorkflow",
    "RunOutput",
    "SessionResolver",
    "SessionStore",
    "StateStorageError",
    "StreamChunk",
    "StreamLineParser",
    "ThrottledUpdater",
    "parse_line",
]
