"""Single-instance guard run before storage is opened or the port bound.

A running instance is detected by querying its ``/pid`` endpoint. Two
processes starting at the same moment can both see nothing and race for
the port; the loser then fails with a bind error.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

import httpx

from notable.config import Settings

logger = logging.getLogger(__name__)


class GuardDecision(str, Enum):
    """Terminal states of the startup check."""

    START_FRESH = "start_fresh"
    NO_OP_EXIT = "no_op_exit"
    SIGNAL_EXISTING_FOR_RESTART = "signal_existing_for_restart"


def running_pid(settings: Settings, client: Optional[httpx.Client] = None) -> Optional[int]:
    """Return the pid of the instance serving on the configured address, if any."""
    owns_client = client is None
    client = client or httpx.Client(timeout=settings.check_timeout)
    try:
        resp = client.get(f"{settings.base_url}/pid")
        resp.raise_for_status()
        return int(resp.json()["pid"])
    except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
        logger.debug("No instance answered on %s: %s", settings.base_url, e)
        return None
    finally:
        if owns_client:
            client.close()


def decide(settings: Settings, client: Optional[httpx.Client] = None) -> GuardDecision:
    """Check the bind address and pick how this process should proceed."""
    pid = running_pid(settings, client)
    if pid is None:
        return GuardDecision.START_FRESH
    if settings.restart:
        logger.info("Instance pid=%d is running, requesting restart", pid)
        return GuardDecision.SIGNAL_EXISTING_FOR_RESTART
    logger.info("Instance pid=%d is already serving %s", pid, settings.base_url)
    return GuardDecision.NO_OP_EXIT


def signal_restart(
    settings: Settings, reason: str, client: Optional[httpx.Client] = None
) -> bool:
    """Ask the running instance to restart itself.

    Returns False when the instance already has a restart pending. A
    connection dropped mid-response counts as accepted, since the instance
    goes away as part of restarting.
    """
    owns_client = client is None
    client = client or httpx.Client(timeout=settings.check_timeout)
    try:
        try:
            resp = client.put(f"{settings.base_url}/api/restart", json={"reason": reason})
        except httpx.RemoteProtocolError as e:
            logger.info("Instance on %s went away while answering: %s", settings.base_url, e)
            return True
        if resp.status_code == httpx.codes.CONFLICT:
            logger.warning("Restart already pending on %s", settings.base_url)
            return False
        resp.raise_for_status()
        return True
    finally:
        if owns_client:
            client.close()
