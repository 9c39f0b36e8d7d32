from typing import Optional

from fastapi import APIRouter, Depends, Request

from skema_daemon.annotation_store import AnnotationStore
from skema_daemon.api_models import StatusResponse
from skema_daemon.config import DaemonConfig
from skema_daemon.core_models import AnnotationStatus
from skema_daemon.dependencies import get_config, get_dispatcher, get_store
from skema_daemon.dispatch import Dispatcher
from skema_daemon.export import build_export, export_dict

router = APIRouter(tags=["Daemon"])


@router.get("/status", response_model=StatusResponse)
async def daemon_status(
    request: Request,
    config: DaemonConfig = Depends(get_config),
    store: AnnotationStore = Depends(get_store),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return StatusResponse(
        mode=request.app.state.mode_router.mode,
        provider=dispatcher.invoker.provider.name,
        cwd=config.cwd,
        counts=store.counts(),
        running=dispatcher.current_annotation_id,
        queued=dispatcher.queued,
        agent_available=dispatcher.invoker.provider.is_available(),
    )


@router.get("/export", summary="Export annotations as a versioned document")
async def export_annotations(
    status: Optional[AnnotationStatus] = None,
    pathname: Optional[str] = None,
    store: AnnotationStore = Depends(get_store),
):
    return export_dict(build_export(store.list(), status=status, pathname=pathname))
