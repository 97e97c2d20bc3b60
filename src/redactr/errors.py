"""Exception taxonomy shared by the detection pipeline and the convergence loop."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RedactrError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(RedactrError, ValueError):
    """Caller input was rejected before any state was touched."""


class ExecutionError(RedactrError):
    """A single local detector failed; its siblings are unaffected."""

    def __init__(self, detection_type: str, message: str) -> None:
        super().__init__(message)
        self.detection_type = detection_type


class CancellationError(RedactrError):
    """Work stopped because the caller cancelled it."""


class RemoteErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    NETWORK = "network"
    PARSE = "parse"
    UNKNOWN = "unknown"


class RemoteError(RedactrError):
    """Failure of a call to the remote evaluator/planner endpoint."""

    def __init__(
        self,
        kind: RemoteErrorKind,
        message: str,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = RemoteErrorKind(kind)
        self.message = message
        self.retryable = retryable
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"RemoteError(kind={self.kind.value!r}, message={self.message!r})"

    @staticmethod
    def from_status(status_code: int, message: str) -> "RemoteError":
        """Classify a non-2xx HTTP status."""
        if status_code in (401, 403):
            kind = RemoteErrorKind.AUTH
        elif status_code == 429:
            kind = RemoteErrorKind.RATE_LIMIT
        elif status_code >= 500:
            kind = RemoteErrorKind.SERVER
        else:
            kind = RemoteErrorKind.UNKNOWN
        retryable = kind in (RemoteErrorKind.RATE_LIMIT, RemoteErrorKind.SERVER)
        return RemoteError(kind, message, retryable=retryable, status_code=status_code)


__all__ = [
    "RedactrError",
    "ValidationError",
    "ExecutionError",
    "CancellationError",
    "RemoteErrorKind",
    "RemoteError",
]
