"""Application-level exception types for runstream."""

from __future__ import annotations


class RunstreamError(Exception):
    """Base exception for runstream."""


class ConfigurationError(RunstreamError):
    """Raised when settings fail validation."""


class TransportError(RunstreamError):
    """Raised when the channel is not open or a send fails."""


class NotConnectedError(TransportError):
    """Raised when a submit is attempted without an open channel."""

    def __init__(self, reason: str = "connection not ready") -> None:
        super().__init__(reason)
        self.reason = reason


class ProtocolError(RunstreamError):
    """Raised when a frame cannot be decoded into a known message."""

    def __init__(self, message: str, frame: str | bytes | None = None) -> None:
        super().__init__(message)
        self.frame = frame


class SessionError(RunstreamError):
    """Base exception for run session rejections."""


class AlreadyRunningError(SessionError):
    """Raised when a submit arrives while a run is still in flight."""

    def __init__(self, run_id: int) -> None:
        super().__init__(f"run {run_id} is still in progress, wait for it to finish")
        self.run_id = run_id


class ExecutionError(RunstreamError):
    """Raised by the backend when a run cannot be prepared or started."""
