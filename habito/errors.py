from __future__ import annotations
from typing import Any, Optional


class HabitoError(Exception):
    """Base class for all sync/derivation errors."""


class RemoteConnectionError(HabitoError, ConnectionError):
    """Remote store unreachable or timed out during initial load."""


class RemoteWriteError(HabitoError):
    """A mutation was rejected by the remote store while online."""

    def __init__(self, message: str, action: Optional[Any] = None):
        super().__init__(message)
        self.action = action


class ValidationError(HabitoError, ValueError):
    """Input rejected before any state change."""


class QueueReplayError(HabitoError):
    """A queued action failed to apply remotely; flushing halts until the next trigger."""

    def __init__(self, message: str, action: Any, remaining: int):
        super().__init__(message)
        self.action = action
        self.remaining = remaining
