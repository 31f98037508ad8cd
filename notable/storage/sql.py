"""Relational engine: notes in a single-file SQLite database via SQLAlchemy.

Matching runs through a ``casefold`` SQL function registered on every
connection so case folding agrees with the key-value engine.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from notable.errors import (
    BackendClosedError,
    NoteExistsError,
    NotFoundError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from notable.models import SearchHit, utcnow
from notable.storage.base import SearchResults, make_snippet, new_uid, tokenize

logger = logging.getLogger(__name__)

_CREATE_TABLE_STMTS = [
    """CREATE TABLE IF NOT EXISTS notes (
        uid TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        revision INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS tombstones (
        uid TEXT PRIMARY KEY
    )""",
    """CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_notes_revision ON notes(revision)",
    "INSERT OR IGNORE INTO meta (key, value) VALUES ('revision', 0)",
]


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _register_functions(dbapi_connection, connection_record) -> None:
    """Install Python-side helpers on each new SQLite connection."""
    dbapi_connection.create_function("casefold", 1, _casefold, deterministic=True)


class SQLBackend:
    """Backend implementation over SQLite."""

    name = "sql"

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._closed = False
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(f"sqlite:///{self._path}")
        event.listen(self._engine, "connect", _register_functions)
        try:
            with self._engine.begin() as conn:
                for stmt in _CREATE_TABLE_STMTS:
                    conn.execute(text(stmt))
        except SQLAlchemyError as exc:
            self._engine.dispose()
            raise StorageError(f"Unable to open SQLite store at {self._path}: {exc}") from exc
        logger.info("Opened SQLite store at %s", self._path)

    def __repr__(self) -> str:
        return f"SQLBackend({self._path})"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self, write: bool = False) -> Iterator[Connection]:
        if self._closed:
            raise BackendClosedError(self.name)
        try:
            if write:
                with self._engine.begin() as conn:
                    yield conn
            else:
                with self._engine.connect() as conn:
                    yield conn
        except SQLAlchemyError as exc:
            if write:
                raise StorageWriteError(f"SQLite write failed: {exc}") from exc
            raise StorageReadError(f"SQLite read failed: {exc}") from exc

    @staticmethod
    def _next_revision(conn: Connection) -> int:
        # First statement of every write, so the transaction takes the write lock up front
        conn.execute(text("UPDATE meta SET value = value + 1 WHERE key = 'revision'"))
        return conn.execute(text("SELECT value FROM meta WHERE key = 'revision'")).scalar_one()

    @staticmethod
    def _is_used(conn: Connection, uid: str) -> bool:
        row = conn.execute(
            text(
                "SELECT 1 FROM notes WHERE uid = :uid "
                "UNION ALL SELECT 1 FROM tombstones WHERE uid = :uid"
            ),
            {"uid": uid},
        ).first()
        return row is not None

    # ------------------------------------------------------------------
    # Backend operations
    # ------------------------------------------------------------------

    def create(self, content: str, uid: Optional[str] = None) -> str:
        with self._connect(write=True) as conn:
            revision = self._next_revision(conn)
            if uid is None:
                uid = new_uid()
                while self._is_used(conn, uid):
                    uid = new_uid()
            elif self._is_used(conn, uid):
                raise NoteExistsError(uid)
            conn.execute(
                text(
                    "INSERT INTO notes (uid, content, revision, updated_at) "
                    "VALUES (:uid, :content, :revision, :updated_at)"
                ),
                {"uid": uid, "content": content, "revision": revision, "updated_at": utcnow()},
            )
        logger.debug("Created note %s", uid)
        return uid

    def read(self, uid: str) -> str:
        with self._connect() as conn:
            content = conn.execute(
                text("SELECT content FROM notes WHERE uid = :uid"), {"uid": uid}
            ).scalar_one_or_none()
        if content is None:
            raise NotFoundError(uid)
        return content

    def update(self, uid: str, content: str) -> None:
        with self._connect(write=True) as conn:
            revision = self._next_revision(conn)
            result = conn.execute(
                text(
                    "UPDATE notes SET content = :content, revision = :revision, "
                    "updated_at = :updated_at WHERE uid = :uid"
                ),
                {"uid": uid, "content": content, "revision": revision, "updated_at": utcnow()},
            )
            if result.rowcount == 0:
                raise NotFoundError(uid)
        logger.debug("Updated note %s", uid)

    def delete(self, uid: str) -> None:
        with self._connect(write=True) as conn:
            result = conn.execute(text("DELETE FROM notes WHERE uid = :uid"), {"uid": uid})
            if result.rowcount == 0:
                raise NotFoundError(uid)
            conn.execute(text("INSERT OR IGNORE INTO tombstones (uid) VALUES (:uid)"), {"uid": uid})
        logger.debug("Deleted note %s", uid)

    def search(self, query: str) -> SearchResults:
        if self._closed:
            raise BackendClosedError(self.name)
        tokens = tokenize(query)
        clauses = [f"instr(casefold(content), :t{i}) > 0" for i in range(len(tokens))]
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        stmt = text(
            "SELECT uid, content, updated_at FROM notes "
            f"{where}ORDER BY revision DESC, uid ASC"
        )
        params = {f"t{i}": token for i, token in enumerate(tokens)}

        def produce() -> Iterator[SearchHit]:
            with self._connect() as conn:
                for row in conn.execute(stmt, params):
                    yield SearchHit(
                        uid=row.uid,
                        snippet=make_snippet(row.content),
                        updated_at=row.updated_at,
                    )

        return SearchResults(produce)

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute(text("SELECT COUNT(*) FROM notes")).scalar_one()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.dispose()
        logger.info("Closed SQLite store at %s", self._path)
