"""Embedded key-value engine backed by a single-file LMDB environment.

Layout (named sub-databases):
  notes        uid -> StoredNote JSON
  by_revision  inverted revision + uid -> uid, so cursor order is search order
  tombstones   uid -> b"" for every deleted uid
  meta         b"revision" -> last assigned revision
"""

from __future__ import annotations

import logging
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import lmdb
from pydantic import ValidationError

from notable.errors import (
    BackendClosedError,
    NoteExistsError,
    NotFoundError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from notable.models import SearchHit, StoredNote
from notable.storage.base import SearchResults, make_snippet, matches, new_uid, tokenize

logger = logging.getLogger(__name__)

DEFAULT_MAP_SIZE = 1 << 30  # 1 GiB, sparse on disk
_REVISION_KEY = b"revision"
_MAX_REVISION = (1 << 64) - 1


def _revision_key(revision: int, uid: bytes) -> bytes:
    """Index key sorting newest revision first, then uid ascending."""
    return struct.pack(">Q", _MAX_REVISION - revision) + uid


class KVBackend:
    """Backend implementation over LMDB."""

    name = "kv"

    def __init__(self, path: Path, map_size: int = DEFAULT_MAP_SIZE) -> None:
        self._path = Path(path)
        self._closed = False
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._env = lmdb.open(
                str(self._path),
                map_size=map_size,
                subdir=False,
                max_dbs=4,
            )
            self._notes = self._env.open_db(b"notes")
            self._by_revision = self._env.open_db(b"by_revision")
            self._tombstones = self._env.open_db(b"tombstones")
            self._meta = self._env.open_db(b"meta")
        except lmdb.Error as exc:
            raise StorageError(f"Unable to open LMDB store at {self._path}: {exc}") from exc
        logger.info("Opened LMDB store at %s", self._path)

    def __repr__(self) -> str:
        return f"KVBackend({self._path})"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _txn(self, write: bool = False) -> Iterator[lmdb.Transaction]:
        if self._closed:
            raise BackendClosedError(self.name)
        try:
            with self._env.begin(write=write) as txn:
                yield txn
        except lmdb.Error as exc:
            if write:
                raise StorageWriteError(f"LMDB write failed: {exc}") from exc
            raise StorageReadError(f"LMDB read failed: {exc}") from exc

    def _next_revision(self, txn: lmdb.Transaction) -> int:
        raw = txn.get(_REVISION_KEY, db=self._meta)
        revision = (struct.unpack(">Q", raw)[0] if raw else 0) + 1
        txn.put(_REVISION_KEY, struct.pack(">Q", revision), db=self._meta)
        return revision

    @staticmethod
    def _decode(raw: Optional[bytes], key: bytes) -> StoredNote:
        uid = key.decode("utf-8", errors="replace")
        if raw is None:
            raise StorageReadError(f"Index entry without record for note {uid}", {"uid": uid})
        try:
            return StoredNote.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageReadError(
                f"Corrupt record for note {uid}: {exc.error_count()} validation error(s)",
                {"uid": uid},
            ) from exc

    def _load(self, txn: lmdb.Transaction, key: bytes, uid: str) -> StoredNote:
        raw = txn.get(key, db=self._notes)
        if raw is None:
            raise NotFoundError(uid)
        return self._decode(raw, key)

    def _store(self, txn: lmdb.Transaction, key: bytes, content: str) -> None:
        record = StoredNote(content=content, revision=self._next_revision(txn))
        txn.put(key, record.model_dump_json().encode("utf-8"), db=self._notes)
        txn.put(_revision_key(record.revision, key), key, db=self._by_revision)

    def _is_used(self, txn: lmdb.Transaction, key: bytes) -> bool:
        return (
            txn.get(key, db=self._notes) is not None
            or txn.get(key, db=self._tombstones) is not None
        )

    # ------------------------------------------------------------------
    # Backend operations
    # ------------------------------------------------------------------

    def create(self, content: str, uid: Optional[str] = None) -> str:
        with self._txn(write=True) as txn:
            if uid is None:
                uid = new_uid()
                while self._is_used(txn, uid.encode("utf-8")):
                    uid = new_uid()
            elif self._is_used(txn, uid.encode("utf-8")):
                raise NoteExistsError(uid)
            self._store(txn, uid.encode("utf-8"), content)
        logger.debug("Created note %s", uid)
        return uid

    def read(self, uid: str) -> str:
        with self._txn() as txn:
            return self._load(txn, uid.encode("utf-8"), uid).content

    def update(self, uid: str, content: str) -> None:
        key = uid.encode("utf-8")
        with self._txn(write=True) as txn:
            old = self._load(txn, key, uid)
            txn.delete(_revision_key(old.revision, key), db=self._by_revision)
            self._store(txn, key, content)
        logger.debug("Updated note %s", uid)

    def delete(self, uid: str) -> None:
        key = uid.encode("utf-8")
        with self._txn(write=True) as txn:
            old = self._load(txn, key, uid)
            txn.delete(_revision_key(old.revision, key), db=self._by_revision)
            txn.delete(key, db=self._notes)
            txn.put(key, b"", db=self._tombstones)
        logger.debug("Deleted note %s", uid)

    def search(self, query: str) -> SearchResults:
        if self._closed:
            raise BackendClosedError(self.name)
        tokens = tokenize(query)

        def produce() -> Iterator[SearchHit]:
            with self._txn() as txn:
                for _, key in txn.cursor(db=self._by_revision):
                    record = self._decode(txn.get(key, db=self._notes), key)
                    if matches(record.content, tokens):
                        yield SearchHit(
                            uid=key.decode("utf-8"),
                            snippet=make_snippet(record.content),
                            updated_at=record.updated_at,
                        )

        return SearchResults(produce)

    def count(self) -> int:
        with self._txn() as txn:
            return txn.stat(self._notes)["entries"]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._env.close()
        logger.info("Closed LMDB store at %s", self._path)
