"""Exception hierarchy for the Notable backend.

Every error carries a machine-readable code so the HTTP layer can map it
onto a status without inspecting messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_INVALID = 1002
    NOTE_ALREADY_EXISTS = 1003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    BACKEND_CLOSED = 4003

    # Process errors (6xxx)
    BIND_FAILED = 6001


class NotableError(Exception):
    """Base exception for all Notable errors."""

    code = ErrorCode.NOTE_INVALID

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialise for an HTTP error body."""
        result: dict[str, Any] = {
            "error": self.message,
            "code": self.code.name,
        }
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(NotableError):
    """The requested uid is not present in the backend."""

    code = ErrorCode.NOTE_NOT_FOUND

    def __init__(self, uid: str) -> None:
        super().__init__(f"Note not found: {uid}", {"uid": uid})
        self.uid = uid


class InvalidNoteError(NotableError):
    """Empty content or a malformed uid."""

    code = ErrorCode.NOTE_INVALID


class NoteExistsError(InvalidNoteError):
    """A caller-supplied uid is live or was used before."""

    code = ErrorCode.NOTE_ALREADY_EXISTS

    def __init__(self, uid: str) -> None:
        super().__init__(f"Note uid already used: {uid}", {"uid": uid})
        self.uid = uid


class StorageError(NotableError):
    """I/O failure inside a storage engine."""

    code = ErrorCode.STORAGE_WRITE_FAILED


class StorageReadError(StorageError):
    code = ErrorCode.STORAGE_READ_FAILED


class StorageWriteError(StorageError):
    code = ErrorCode.STORAGE_WRITE_FAILED


class BackendClosedError(NotableError):
    """An operation was attempted after the backend was closed."""

    code = ErrorCode.BACKEND_CLOSED

    def __init__(self, engine: str) -> None:
        super().__init__(f"{engine} backend is closed", {"engine": engine})


class BindError(NotableError):
    """The listener could not acquire the configured address."""

    code = ErrorCode.BIND_FAILED

    def __init__(self, host: str, port: int, reason: str) -> None:
        super().__init__(
            f"Unable to listen on {host}:{port}: {reason}",
            {"host": host, "port": port},
        )
