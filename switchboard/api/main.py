"""FastAPI application for the switchboard HTTP API."""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from switchboard import __version__
from switchboard.api.websocket import WebSocketRegistry
from switchboard.config import DEFAULT_HOST, DEFAULT_PORT
from switchboard.errors import SwitchboardError

logger = logging.getLogger(__name__)

WS_KEEPALIVE_INTERVAL = 30  # seconds between WebSocket pings

HOST_ENV = "SWITCHBOARD_HOST"
PORT_ENV = "SWITCHBOARD_PORT"

ERROR_STATUS = {
    "bad_input": status.HTTP_400_BAD_REQUEST,
    "not_authorized": status.HTTP_401_UNAUTHORIZED,
    "not_found": status.HTTP_404_NOT_FOUND,
    "target_not_found": status.HTTP_409_CONFLICT,
    "negotiation_failed": status.HTTP_502_BAD_GATEWAY,
    "negotiation_timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "unexpected": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _build_allowed_origins(host: str, port: int) -> list[str]:
    """Build the CORS / WebSocket allowed origins list.

    >>> _build_allowed_origins("127.0.0.1", 8420)
    ['http://127.0.0.1:8420', 'http://localhost:8420']
    >>> _build_allowed_origins("0.0.0.0", 8420)
    ['*']
    """
    if host == "0.0.0.0":
        return ["*"]
    return [f"http://127.0.0.1:{port}", f"http://localhost:{port}"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    from switchboard.switch import AppSession, SwitchOrchestrator
    from switchboard.web.database import Database

    try:
        app.state.db = Database()
        logger.info("Database initialized at %s", app.state.db.db_path)
    except Exception as e:
        logger.warning("Database init failed: %s", e)
        app.state.db = None

    app.state.ws_registry = WebSocketRegistry()
    app.state.background_tasks = set()

    host = os.environ.get(HOST_ENV, DEFAULT_HOST)
    port = int(os.environ.get(PORT_ENV, str(DEFAULT_PORT)))
    app.state.allowed_origins = _build_allowed_origins(host, port)
    if host == "0.0.0.0":
        logger.warning("API exposed to network; it can rewrite your Cursor login")

    unsubscribe = None
    if app.state.db is not None:
        app.state.session = AppSession(app.state.db)
        unsubscribe = app.state.session.subscribe(app.state.ws_registry.publish_progress)
        app.state.orchestrator = SwitchOrchestrator(app.state.session)

    yield

    # Shutdown: cancel a switch still running in the background
    for task in list(app.state.background_tasks):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    if unsubscribe is not None:
        unsubscribe()

    db = getattr(app.state, "db", None)
    if db is not None:
        try:
            db.close()
        except Exception:
            pass


app = FastAPI(
    title="switchboard",
    description="Local API for managing and switching Cursor IDE accounts.",
    version=__version__,
    lifespan=lifespan,
)

# At middleware init time we read env vars directly (lifespan hasn't run yet)
_cors_origins = _build_allowed_origins(
    os.environ.get(HOST_ENV, DEFAULT_HOST),
    int(os.environ.get(PORT_ENV, str(DEFAULT_PORT))),
)
# allow_credentials must be False when origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials="*" not in _cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Exception handlers ---


@app.exception_handler(SwitchboardError)
async def switchboard_error_handler(request: Request, exc: SwitchboardError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content={"error": exc.to_dict()},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": {"message": str(exc), "code": "bad_input"}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": "An internal error occurred", "code": "unexpected"}},
    )


# --- WebSocket event bus ---


@app.websocket("/api/ws")
async def websocket_endpoint(ws: WebSocket):
    """Switch progress and registry change events.

    ``/api/ws?topics=switch_progress,accounts_changed``; default ``*``.
    """
    allowed = getattr(app.state, "allowed_origins", ["*"])
    if "*" not in allowed:
        origin = ws.headers.get("origin", "")
        if origin and origin not in allowed:
            await ws.close(code=4003, reason="Origin not allowed")
            return

    raw_topics = ws.query_params.get("topics", "*")
    topics = [t.strip() for t in raw_topics.split(",") if t.strip()] or ["*"]

    registry: WebSocketRegistry = app.state.ws_registry
    await registry.connect(ws, topics)

    try:
        await ws.accept()
        logger.debug("WebSocket client connected (topics=%s, total=%d)", topics, registry.client_count)

        async def _keepalive():
            while True:
                await asyncio.sleep(WS_KEEPALIVE_INTERVAL)
                try:
                    await ws.send_text(json.dumps({"type": "ping"}))
                except Exception:
                    break

        keepalive_task = asyncio.create_task(_keepalive())
        try:
            while True:
                # Consumed only to detect disconnects
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            keepalive_task.cancel()
            try:
                await keepalive_task
            except asyncio.CancelledError:
                pass
    finally:
        registry.disconnect(ws)
        logger.debug("WebSocket client disconnected (total=%d)", registry.client_count)


# --- Include route modules ---

from switchboard.api.routes import accounts, system  # noqa: E402

app.include_router(system.router, prefix="/api", tags=["system"])
app.include_router(accounts.router, prefix="/api", tags=["accounts"])
