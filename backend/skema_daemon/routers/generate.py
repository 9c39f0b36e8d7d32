import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from skema_daemon.api_models import RevertRequest, SubmitRequest
from skema_daemon.dependencies import get_dispatcher, get_router
from skema_daemon.dispatch import Dispatcher, ModeRouter, Queued, RevertCommand
from skema_daemon.exceptions import RevertConflict

router = APIRouter(tags=["Generate"])

log = logging.getLogger(__name__)


def _sse(message: Dict[str, Any]) -> str:
    return f"data: {json.dumps(message)}\n\n"


@router.post("/generate", summary="Submit an annotation and stream the agent run as Server-Sent Events")
async def generate(
    body: SubmitRequest,
    mode_router: ModeRouter = Depends(get_router),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """One-shot HTTP variant of the live channel.

    The stream starts with the routing message and, for dispatched
    annotations, carries every progress event up to and including ``result``.
    """
    events: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    async def sink(message: Dict[str, Any]) -> None:
        events.put_nowait(message)

    decision = await mode_router.submit(body.annotation, body.comment, sink=sink)
    annotation_id = decision.record.id
    log.info(f"generate: annotation {annotation_id} routed ({type(decision).__name__})")

    async def stream():
        try:
            yield _sse(decision.wire_dict())
            if isinstance(decision, Queued):
                return
            while True:
                message = await events.get()
                yield _sse(message)
                if message.get("type") == "result":
                    return
        finally:
            dispatcher.detach(sink)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"X-Annotation-Id": annotation_id, "Cache-Control": "no-cache"},
    )


@router.delete("/generate", summary="Revert the changes made for an annotation")
async def revert_generated(
    body: RevertRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    result = await dispatcher.revert(RevertCommand(annotation_id=body.annotation_id))
    if not result.success:
        raise RevertConflict(result.annotation_id, result.paths, result.blocking)
    return {"success": True, **result.model_dump(mode="json")}
