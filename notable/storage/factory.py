"""Engine selection, made once at startup."""

from __future__ import annotations

import logging

from notable.config import Settings
from notable.storage.base import Backend
from notable.storage.kv import KVBackend
from notable.storage.sql import SQLBackend

logger = logging.getLogger(__name__)


def open_backend(settings: Settings) -> Backend:
    """Open the configured engine at ``settings.db_path``."""
    if settings.engine == "sql":
        backend: Backend = SQLBackend(settings.db_path)
    else:
        backend = KVBackend(settings.db_path, map_size=settings.map_size)
    logger.info("Using backend %r", backend)
    return backend
