"""FastAPI dependencies returning the daemon components created at startup.

Components live on ``app.state`` (set by ``create_app``) so tests can build an
app around their own doubles without touching module globals.
"""

from fastapi import HTTPException, Request, WebSocket, status

from skema_daemon.annotation_store import AnnotationStore
from skema_daemon.config import DaemonConfig
from skema_daemon.dispatch import Dispatcher, ModeRouter


def _state(conn):
    return conn.app.state


def get_config(request: Request) -> DaemonConfig:
    return _state(request).config


def get_store(request: Request) -> AnnotationStore:
    store = getattr(_state(request), "store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Annotation store is not available.",
        )
    return store


def get_router(request: Request) -> ModeRouter:
    return _state(request).mode_router


def get_dispatcher(request: Request) -> Dispatcher:
    return _state(request).dispatcher


def get_ws_router(websocket: WebSocket) -> ModeRouter:
    return _state(websocket).mode_router


def get_ws_dispatcher(websocket: WebSocket) -> Dispatcher:
    return _state(websocket).dispatcher
