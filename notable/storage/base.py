"""Storage backend contract shared by every engine.

Both engines implement :class:`Backend` and use the helpers below for
matching, snippets and uid allocation so that search results and CRUD
outcomes are identical whichever engine is configured.
"""

from __future__ import annotations

from typing import Callable, Iterator, Optional, Protocol, runtime_checkable
from uuid import uuid4

from notable.models import SearchHit

SNIPPET_LENGTH = 120


@runtime_checkable
class Backend(Protocol):
    """Capability set every storage engine provides."""

    name: str

    def create(self, content: str, uid: Optional[str] = None) -> str: ...

    def read(self, uid: str) -> str: ...

    def update(self, uid: str, content: str) -> None: ...

    def delete(self, uid: str) -> None: ...

    def search(self, query: str) -> "SearchResults": ...

    def count(self) -> int: ...

    def close(self) -> None: ...


class SearchResults:
    """Lazy, restartable sequence of search hits.

    Every iteration re-runs the underlying query, so iterating twice over an
    unchanged dataset yields the same hits in the same order.
    """

    def __init__(self, producer: Callable[[], Iterator[SearchHit]]) -> None:
        self._producer = producer

    def __iter__(self) -> Iterator[SearchHit]:
        return self._producer()

    def uids(self) -> list[str]:
        """Materialise just the uids, in order."""
        return [hit.uid for hit in self]


def new_uid() -> str:
    return str(uuid4())


def tokenize(query: str) -> list[str]:
    """Split a free-text query into casefolded tokens."""
    return [t.casefold() for t in query.split()]


def matches(content: str, tokens: list[str]) -> bool:
    """True when every token occurs in the content, ignoring case."""
    folded = content.casefold()
    return all(t in folded for t in tokens)


def make_snippet(content: str) -> str:
    """First non-blank line of the content, trimmed for listings."""
    for line in content.splitlines():
        line = line.strip()
        if line:
            if len(line) > SNIPPET_LENGTH:
                return line[: SNIPPET_LENGTH - 1] + "…"
            return line
    return ""
