"""FastAPI application and process entry point for the Notable backend.

Endpoints:
  GET    /pid                 — Process id, used to detect a running instance
  GET    /api/notes/list      — Search notes (?query=), most recently modified first
  POST   /api/note/create     — Create a note, returns its uid
  GET    /api/note/{uid}      — Read a note
  PUT    /api/note/{uid}      — Replace a note's content
  DELETE /api/note/{uid}      — Delete a note
  PUT    /api/restart         — Restart the process in place
  GET    /api/version         — Version information
  GET    /health              — Backend engine and note count
  GET    /metrics             — Prometheus metrics
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import sys
import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Optional, Sequence

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware

from notable.config import Settings, load_settings
from notable.errors import (
    BackendClosedError,
    BindError,
    InvalidNoteError,
    NotableError,
    NoteExistsError,
    NotFoundError,
    StorageError,
)
from notable.metrics import HTTP_DURATION, HTTP_REQUESTS
from notable.models import Note, SearchHit
from notable.restart import RestartCoordinator
from notable.service import NoteService
from notable.singleton import GuardDecision, decide, signal_restart
from notable.storage.factory import open_backend

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

# Endpoints excluded from HTTP metrics
_METRICS_EXCLUDE = {"/metrics", "/openapi.json", "/docs", "/redoc"}

# Checked in order, so subclasses come before their bases
_ERROR_STATUS: list[tuple[type[NotableError], int]] = [
    (NotFoundError, 404),
    (NoteExistsError, 409),
    (InvalidNoteError, 400),
    (BackendClosedError, 503),
    (StorageError, 500),
]


def package_version() -> str:
    try:
        return version("notable")
    except PackageNotFoundError:
        return "0.0.0+unknown"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record HTTP request count and duration for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        """Wrap each request with timing and counting."""
        if request.url.path in _METRICS_EXCLUDE:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        # Label by route template so uids don't explode cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        HTTP_REQUESTS.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        HTTP_DURATION.labels(endpoint=endpoint).observe(elapsed)
        response.headers["Cache-Control"] = "no-cache"
        return response


# --- Request / Response models ---


class CreateNoteRequest(BaseModel):
    """Create endpoint request body."""

    content: str
    uid: Optional[str] = None


class UpdateNoteRequest(BaseModel):
    content: str


class CreateNoteResponse(BaseModel):
    uid: str


class RestartRequest(BaseModel):
    """Restart endpoint request body; the reason ends up in the logs."""

    reason: str = "restart requested over http"


def create_app(service: NoteService, coordinator: RestartCoordinator) -> FastAPI:
    """Build the HTTP layer around a note service and restart coordinator."""
    booted = datetime.now(UTC)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the restart watcher alongside request handling."""
        watcher = asyncio.create_task(coordinator.watch())
        yield
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass

    app = FastAPI(title="Notable", version=package_version(), lifespan=lifespan)
    app.add_middleware(MetricsMiddleware)

    @app.exception_handler(NotableError)
    async def notable_error_handler(request: Request, exc: NotableError) -> JSONResponse:
        status = next((s for cls, s in _ERROR_STATUS if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    # --- Endpoints ---

    @app.get("/pid")
    async def pid() -> dict[str, Any]:
        """Identify this process to instances checking for a running server."""
        return {"pid": os.getpid(), "booted": booted.isoformat()}

    @app.get("/api/notes/list", response_model=list[SearchHit])
    def search_notes(query: str = "") -> list[SearchHit]:
        """Search notes, most recently modified first."""
        return service.search(query)

    @app.post("/api/note/create", response_model=CreateNoteResponse, status_code=201)
    def create_note(request: CreateNoteRequest) -> CreateNoteResponse:
        note = service.create(request.content, uid=request.uid)
        return CreateNoteResponse(uid=note.uid)

    @app.get("/api/note/{uid}", response_model=Note)
    def read_note(uid: str) -> Note:
        return service.read(uid)

    @app.put("/api/note/{uid}", response_model=Note)
    def update_note(uid: str, request: UpdateNoteRequest) -> Note:
        return service.update(uid, request.content)

    @app.delete("/api/note/{uid}", status_code=204)
    def delete_note(uid: str) -> Response:
        service.delete(uid)
        return Response(status_code=204)

    @app.put("/api/restart", status_code=202)
    async def restart(request: RestartRequest) -> JSONResponse:
        """Queue an in-place restart of this process.

        The request is enqueued once the 202 has been sent, otherwise the
        watcher would exit the process before the caller got an answer.
        """
        if coordinator.pending:
            return JSONResponse(
                status_code=409,
                content={"error": "Restart already pending", "code": "RESTART_PENDING"},
            )

        async def enqueue() -> None:
            coordinator.request(request.reason)

        return JSONResponse(
            status_code=202,
            content={"status": "restarting"},
            background=BackgroundTask(enqueue),
        )

    @app.get("/api/version")
    async def api_version() -> dict[str, str]:
        return {
            "version": package_version(),
            "python": sys.version.split()[0],
            "platform": sys.platform,
        }

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Report the backend in use and how long this process has been up."""
        uptime = (datetime.now(UTC) - booted).total_seconds()
        return {
            "status": "healthy",
            "pid": os.getpid(),
            "uptime_seconds": round(uptime, 1),
            **service.stats(),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind the listening socket or fail with BindError.

    The address family follows the host. A name resolving to both families,
    such as ``localhost``, binds IPv4. The IPv6 wildcard also accepts IPv4
    where the platform allows it.
    """
    try:
        infos = socket.getaddrinfo(
            host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        families = [info[0] for info in infos]
        family = socket.AF_INET if socket.AF_INET in families else families[0]
        dualstack = (
            family == socket.AF_INET6 and host in ("", "::") and socket.has_dualstack_ipv6()
        )
        return socket.create_server((host, port), family=family, dualstack_ipv6=dualstack)
    except OSError as e:
        raise BindError(host, port, e.strerror or str(e)) from e


def serve(settings: Settings, service: NoteService, coordinator: RestartCoordinator) -> None:
    """Bind the listener and serve until shutdown or restart."""
    sock = bind_listener(settings.bind, settings.port)
    logger.info("Listening on %s:%d pid=%d", settings.bind, settings.port, os.getpid())

    app = create_app(service, coordinator)
    server = uvicorn.Server(uvicorn.Config(app, log_config=None))

    def close_listener() -> None:
        for listener in server.servers:
            listener.close()
        sock.close()

    coordinator.attach(close_listener)
    server.run(sockets=[sock])


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Start the service, or hand off to an instance that is already running."""
    settings = load_settings(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    decision = decide(settings)
    if decision is GuardDecision.NO_OP_EXIT:
        return 0
    if decision is GuardDecision.SIGNAL_EXISTING_FOR_RESTART:
        try:
            signal_restart(settings, reason=f"restart flag from pid={os.getpid()}")
        except httpx.HTTPError as e:
            logger.error("Failed to signal running instance: %s", e)
            return 1
        return 0

    try:
        backend = open_backend(settings)
    except StorageError as e:
        logger.error("%s", e)
        return 1

    try:
        serve(settings, NoteService(backend), RestartCoordinator())
    except BindError as e:
        logger.error("%s", e)
        return 1
    finally:
        backend.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
