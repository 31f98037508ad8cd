"""In-place restart of the running process.

The coordinator accepts at most one pending request. Handling it closes the
listener, launches a replacement with the same interpreter and arguments and
exits straight away. New connections are refused until the replacement has
bound the port, and nothing rolls back if the replacement fails to start.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from typing import Callable, Optional, Sequence

from notable.metrics import RESTART_REQUESTS

logger = logging.getLogger(__name__)

RESPONSE_GRACE = 0.2  # seconds for the accepting response to reach the caller


def replacement_argv() -> list[str]:
    """Interpreter plus the original argument vector, e.g. ``python -m notable --port 9000``."""
    return [sys.executable, *sys.orig_argv[1:]]


def _spawn(argv: Sequence[str]) -> subprocess.Popen:
    return subprocess.Popen(list(argv))


def _terminate(status: int) -> None:
    logging.shutdown()
    os._exit(status)


class RestartCoordinator:
    """Single-slot restart channel plus the restart procedure itself."""

    def __init__(
        self,
        argv: Optional[Sequence[str]] = None,
        spawn: Callable[[Sequence[str]], subprocess.Popen] = _spawn,
        exit: Callable[[int], None] = _terminate,
        grace: float = RESPONSE_GRACE,
    ) -> None:
        self._requests: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._argv = list(argv) if argv is not None else None
        self._spawn = spawn
        self._exit = exit
        self._grace = grace
        self._close_listener: Optional[Callable[[], None]] = None

    @property
    def argv(self) -> list[str]:
        return self._argv if self._argv is not None else replacement_argv()

    @property
    def pending(self) -> bool:
        """Whether a restart request is waiting to be handled."""
        return self._requests.full()

    def attach(self, close_listener: Callable[[], None]) -> None:
        """Register how to stop accepting connections."""
        self._close_listener = close_listener

    def request(self, reason: str) -> bool:
        """Enqueue a restart. Returns False if one is already pending."""
        try:
            self._requests.put_nowait(reason)
        except asyncio.QueueFull:
            RESTART_REQUESTS.labels(outcome="pending").inc()
            logger.warning("Restart already pending, ignoring msg=%s", reason)
            return False
        RESTART_REQUESTS.labels(outcome="accepted").inc()
        return True

    async def watch(self) -> None:
        """Wait for a restart request and carry it out."""
        reason = await self._requests.get()
        logger.warning("Restart requested msg=%s", reason)
        await asyncio.sleep(self._grace)
        self.perform()

    def perform(self) -> None:
        if self._close_listener is not None:
            self._close_listener()
            logger.info("Listener closed")
        proc = self._spawn(self.argv)
        logger.info("Replacement started pid=%d", proc.pid)
        self._exit(0)
