import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from skema_daemon.annotation_store import AnnotationStore
from skema_daemon.api_models import DismissRequest, ResolveRequest, WatchResponse
from skema_daemon.config import DaemonConfig
from skema_daemon.core_models import AnnotationStatus
from skema_daemon.dependencies import get_config, get_store

router = APIRouter(prefix="/annotations", tags=["Control Protocol"])

log = logging.getLogger(__name__)


@router.get("/pending", summary="Annotations waiting for an agent")
async def get_pending(store: AnnotationStore = Depends(get_store)):
    pending = store.pending()
    return {
        "count": len(pending),
        "cursor": store.cursor,
        "annotations": [r.wire_dict() for r in pending],
    }


@router.get("", summary="All annotations, optionally filtered by status")
async def get_all_annotations(
    status: Optional[AnnotationStatus] = None,
    store: AnnotationStore = Depends(get_store),
):
    records = store.list(status)
    return {"count": len(records), "annotations": [r.wire_dict() for r in records]}


@router.get("/watch", response_model=WatchResponse, response_model_exclude_none=True)
async def watch_annotations(
    timeout: Optional[float] = Query(None, description="Seconds to wait; clamped to the daemon's ceiling."),
    after: Optional[int] = Query(None, description="Cursor from a previous response or from /pending."),
    store: AnnotationStore = Depends(get_store),
    config: DaemonConfig = Depends(get_config),
):
    """Long-poll until an annotation enters ``pending``.

    Without ``after`` only annotations that become pending after the request
    arrives are returned. Pass the ``cursor`` from ``/pending`` (or a previous
    watch) to avoid missing work submitted in between.
    """
    wait_s = config.clamp_watch_timeout(timeout)
    hit = await store.watch(wait_s, after=after)
    if hit is None:
        return WatchResponse(status="no_new_work", cursor=after if after is not None else store.cursor)
    record, cursor = hit
    return WatchResponse(status="annotation", annotation=record.wire_dict(), cursor=cursor)


@router.get("/{annotation_id}")
async def get_annotation(annotation_id: str, store: AnnotationStore = Depends(get_store)):
    return store.get(annotation_id).wire_dict()


@router.post("/{annotation_id}/acknowledge")
async def acknowledge_annotation(annotation_id: str, store: AnnotationStore = Depends(get_store)):
    record = await store.acknowledge(annotation_id)
    log.info(f"control: acknowledged {annotation_id}")
    return record.wire_dict()


@router.post("/{annotation_id}/resolve")
async def resolve_annotation(
    annotation_id: str,
    body: Optional[ResolveRequest] = None,
    store: AnnotationStore = Depends(get_store),
):
    body = body or ResolveRequest()
    record = await store.resolve(annotation_id, body.summary, resolved_by=body.resolved_by)
    log.info(f"control: resolved {annotation_id}")
    return record.wire_dict()


@router.post("/{annotation_id}/dismiss")
async def dismiss_annotation(
    annotation_id: str,
    body: DismissRequest,
    store: AnnotationStore = Depends(get_store),
):
    record = await store.dismiss(annotation_id, body.reason, resolved_by=body.resolved_by)
    log.info(f"control: dismissed {annotation_id}")
    return record.wire_dict()
