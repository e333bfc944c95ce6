"""Exception hierarchy for the conversation-session engine.

Specific exceptions for each failure mode. Controller entry points
catch these and degrade to a chat reply; nothing here is allowed to
take down the host process.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ExecutionFailedError(BridgeError):
    """The Claude CLI exited non-zero without a terminal result chunk."""
    def __init__(self, exit_code: int | None, stderr: str = "", reason: str | None = None):
        self.exit_code = exit_code
        self.stderr = stderr
        if reason is None:
            reason = f"Claude process exited with code {exit_code}"
        self.reason = reason
        super().__init__(reason)


class StateStorageError(BridgeError):
    """Persisted state could not be written (or read back)."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot persist state to {path}: {reason}")


class RetryExpiredError(BridgeError):
    """A retry id is unknown, already consumed, or past its lifetime."""
    def __init__(self, retry_id: str):
        self.retry_id = retry_id
        super().__init__(f"Retry request expired or not found: {retry_id}")


class ConfigError(BridgeError):
    """Configuration file or environment value is invalid."""
