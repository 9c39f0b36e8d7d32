import logging
from typing import Optional

import redis.asyncio as redis_asyncio
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from skema_daemon.agents.invoker import AgentInvoker
from skema_daemon.agents.vision import VisionAnalyzer
from skema_daemon.annotation_store import AnnotationStore, RedisAnnotationBackend
from skema_daemon.api_models import ErrorResponse
from skema_daemon.config import DaemonConfig, load_config
from skema_daemon.dispatch import Dispatcher, ModeRouter
from skema_daemon.exceptions import (
    AnnotationNotFound,
    InvalidTransition,
    RevertConflict,
    SnapshotError,
    StoreCorruptionError,
)
from skema_daemon.metrics import metrics_endpoint
from skema_daemon.snapshots import SnapshotManager

log = logging.getLogger("skema_daemon")


def _error(status_code: int, code: str, message: str, details: Optional[str] = None) -> JSONResponse:
    err = ErrorResponse(error_code=code, error_message=message, technical_details=details)
    return JSONResponse(status_code=status_code, content=err.model_dump())


def create_app(
    config: Optional[DaemonConfig] = None,
    *,
    store: Optional[AnnotationStore] = None,
    invoker: Optional[AgentInvoker] = None,
    snapshots: Optional[SnapshotManager] = None,
) -> FastAPI:
    """Build the daemon app. Components may be injected (tests); otherwise built from *config*."""
    config = config or load_config()

    if store is None:
        backend = None
        if config.redis_url:
            backend = RedisAnnotationBackend(redis_asyncio.from_url(config.redis_url))
        store = AnnotationStore(backend)
    if invoker is None:
        vision = VisionAnalyzer.from_env(config.vision_model)
        invoker = AgentInvoker(config, vision=vision)
    snapshots = snapshots or SnapshotManager(config.cwd, store_dir=config.snapshot_dir)
    dispatcher = Dispatcher(config, store, invoker, snapshots)

    app = FastAPI(
        title="Skema Daemon",
        description="Local daemon coordinating browser annotations with code-editing agents.",
        version="1.0.0",
    )
    app.state.config = config
    app.state.store = store
    app.state.snapshots = snapshots
    app.state.dispatcher = dispatcher
    app.state.mode_router = ModeRouter(config, store, dispatcher)

    # --- Middleware ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Annotation-Id"],
    )

    # --- Routers ---
    from skema_daemon.routers import control, generate, live_ws, status

    app.include_router(live_ws.router)
    app.include_router(generate.router, prefix="/api/v1")
    app.include_router(control.router, prefix="/api/v1")
    app.include_router(status.router, prefix="/api/v1")
    app.add_route("/metrics", metrics_endpoint, methods=["GET"])

    @app.get("/", tags=["Root"])
    async def read_root():
        return {"message": "Skema daemon is running", "mode": config.mode, "provider": config.provider}

    # --- Exception handlers ---
    @app.exception_handler(AnnotationNotFound)
    async def not_found_handler(request: Request, exc: AnnotationNotFound):
        return _error(404, "ANNOTATION_NOT_FOUND", str(exc))

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidTransition):
        return _error(409, "INVALID_TRANSITION", str(exc), details=f"current={exc.current} event={exc.event}")

    @app.exception_handler(RevertConflict)
    async def revert_conflict_handler(request: Request, exc: RevertConflict):
        return _error(
            409, "REVERT_CONFLICT", str(exc),
            details=f"paths={','.join(exc.paths)} blocking={','.join(exc.blocking)}",
        )

    @app.exception_handler(SnapshotError)
    async def snapshot_error_handler(request: Request, exc: SnapshotError):
        log.error("Snapshot error: %s", exc)
        return _error(500, "SNAPSHOT_ERROR", "Snapshot operation failed", details=exc.detail)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(exc.status_code, "HTTP_ERROR", str(exc.detail))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        log.exception("Unhandled exception: %s", exc)
        return _error(500, "INTERNAL_ERROR", "Internal server error")

    # --- Startup / shutdown ---
    @app.on_event("startup")
    async def _startup():
        try:
            count = await store.load()
        except StoreCorruptionError as exc:
            log.critical("Annotation store is corrupt, refusing to start: %s", exc)
            raise
        dispatcher.start()
        log.info(
            "Skema daemon ready (mode=%s, provider=%s, cwd=%s, restored=%d)",
            config.mode, invoker.provider.name, config.cwd, count,
        )

    @app.on_event("shutdown")
    async def _shutdown():
        await dispatcher.stop()
        if invoker.vision is not None:
            try:
                await invoker.vision.close()
            except Exception as exc:
                log.warning("Failed to close vision client on shutdown: %s", exc)

    return app
