"""Note service: input validation in front of the storage backend.

The service holds no state of its own. Every call crosses into the backend,
so there is nothing to invalidate when notes change.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from notable.errors import InvalidNoteError, NotFoundError
from notable.metrics import NOTE_OPERATIONS
from notable.models import Note, SearchHit
from notable.storage.base import Backend

logger = logging.getLogger(__name__)

UID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def normalize_content(content: str) -> str:
    """Validate note content and unify line endings."""
    if not isinstance(content, str) or not content.strip():
        raise InvalidNoteError("Note content must not be empty")
    return content.replace("\r\n", "\n").replace("\r", "\n")


def validate_uid(uid: str) -> str:
    if not isinstance(uid, str) or not UID_PATTERN.match(uid):
        raise InvalidNoteError(f"Malformed note uid: {uid!r}", {"uid": uid})
    return uid


@contextmanager
def _track(operation: str) -> Iterator[None]:
    """Count an operation by outcome."""
    try:
        yield
    except NotFoundError:
        NOTE_OPERATIONS.labels(operation=operation, status="not_found").inc()
        raise
    except InvalidNoteError:
        NOTE_OPERATIONS.labels(operation=operation, status="invalid").inc()
        raise
    except Exception:
        NOTE_OPERATIONS.labels(operation=operation, status="error").inc()
        raise
    NOTE_OPERATIONS.labels(operation=operation, status="ok").inc()


class NoteService:
    """CRUD and search over whichever backend was configured."""

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    def create(self, content: str, uid: Optional[str] = None) -> Note:
        with _track("create"):
            content = normalize_content(content)
            if uid is not None:
                validate_uid(uid)
            uid = self.backend.create(content, uid=uid)
        logger.info("Created note %s (%d chars)", uid, len(content))
        return Note(uid=uid, content=content)

    def read(self, uid: str) -> Note:
        with _track("read"):
            validate_uid(uid)
            content = self.backend.read(uid)
        return Note(uid=uid, content=content)

    def update(self, uid: str, content: str) -> Note:
        with _track("update"):
            validate_uid(uid)
            content = normalize_content(content)
            self.backend.update(uid, content)
        logger.info("Updated note %s (%d chars)", uid, len(content))
        return Note(uid=uid, content=content)

    def delete(self, uid: str) -> None:
        with _track("delete"):
            validate_uid(uid)
            self.backend.delete(uid)
        logger.info("Deleted note %s", uid)

    def search(self, query: str = "") -> list[SearchHit]:
        with _track("search"):
            hits = list(self.backend.search(query or ""))
        logger.info("Search query=%r found=%d", query, len(hits))
        return hits

    def stats(self) -> dict[str, Any]:
        return {"engine": self.backend.name, "total_notes": self.backend.count()}
