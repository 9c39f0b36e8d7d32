from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect, WebSocketState

from skema_daemon.api_models import ErrorResponse, SubmitRequest
from skema_daemon.core_models import utc_now_iso
from skema_daemon.dependencies import get_ws_dispatcher, get_ws_router
from skema_daemon.dispatch import Dispatcher, ModeRouter, RevertCommand
from skema_daemon.exceptions import InvalidTransition

router = APIRouter()

log = logging.getLogger(__name__)

# Active browser sessions keyed by session id
_sessions: Dict[str, "LiveSession"] = {}


async def safe_send_json(ws: WebSocket, data: Any, log_context: str = ""):
    """Attempts to send JSON data, catching errors if the socket is closed."""
    try:
        if ws.client_state == WebSocketState.CONNECTED:
            await ws.send_json(data)
        else:
            log.warning(f"safe_send_json ({log_context}): WebSocket not connected (state={ws.client_state}). Skipping send.")
    except (RuntimeError, WebSocketDisconnect) as e:
        log.warning(f"safe_send_json ({log_context}): Failed to send message, socket likely closed: {e}")
    except Exception as e:
        log.error(f"safe_send_json ({log_context}): Unexpected error during send: {e}", exc_info=True)


async def safe_close(ws: WebSocket, code: int = 1000, reason: Optional[str] = None):
    """Attempts to close the WebSocket connection gracefully."""
    try:
        if ws.client_state in (WebSocketState.CONNECTED, WebSocketState.CONNECTING):
            await ws.close(code=code, reason=reason)
    except (RuntimeError, WebSocketDisconnect) as e:
        log.warning(f"safe_close: Error during WebSocket close: {e}")


class LiveSession:
    """One browser connection and its ordered outbound queue.

    Agent events are pushed from the dispatch worker; a per-session sender task
    writes them to the socket in order so a slow browser never stalls a run.
    """

    def __init__(self, ws: WebSocket):
        self.id = uuid.uuid4().hex[:12]
        self.ws = ws
        self.outbound: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self.closed = False
        self._sender: Optional[asyncio.Task] = None
        # Reverts outlive a disconnect; held here so they are not garbage collected.
        self._tasks: Set[asyncio.Task] = set()
        # Registered with the dispatcher; the same object is used to detach.
        self.sink = self.push

    def start(self) -> None:
        self._sender = asyncio.create_task(self._send_loop())

    def spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def push(self, message: Dict[str, Any]) -> None:
        if not self.closed:
            self.outbound.put_nowait(message)

    async def error(self, message: str, error_code: str, annotation_id: Optional[str] = None) -> None:
        payload = ErrorResponse(error_message=message, error_code=error_code).model_dump(exclude_none=True)
        payload.update(type="error", timestamp=utc_now_iso())
        if annotation_id:
            payload["annotationId"] = annotation_id
        await self.push(payload)

    async def close(self) -> None:
        self.closed = True
        self.outbound.put_nowait(None)
        if self._sender is not None:
            try:
                await asyncio.wait_for(self._sender, timeout=2)
            except asyncio.TimeoutError:
                self._sender.cancel()

    async def _send_loop(self) -> None:
        while True:
            message = await self.outbound.get()
            if message is None:
                return
            await safe_send_json(self.ws, message, f"session {self.id}")


@router.websocket("/ws")
async def live_channel(
    ws: WebSocket,
    mode_router: ModeRouter = Depends(get_ws_router),
    dispatcher: Dispatcher = Depends(get_ws_dispatcher),
):
    """Push channel for the browser overlay: annotations in, agent progress out."""
    await ws.accept()
    session = LiveSession(ws)
    session.start()
    _sessions[session.id] = session
    log.info(f"Live session {session.id} connected (mode={mode_router.mode})")
    await session.push({
        "type": "connected",
        "sessionId": session.id,
        "mode": mode_router.mode,
        "timestamp": utc_now_iso(),
    })

    try:
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                break
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await session.error("Message is not valid JSON", "INVALID_JSON")
                continue
            if not isinstance(message, dict):
                await session.error("Message must be a JSON object", "INVALID_MESSAGE")
                continue
            try:
                await _handle_message(session, message, mode_router, dispatcher)
            except Exception as e:
                log.error(f"Live session {session.id}: handler error: {e}", exc_info=True)
                await session.error("Internal error while handling message", "INTERNAL_ERROR")
    finally:
        # Runs keep going after a disconnect; only event delivery stops.
        dispatcher.detach(session.sink)
        _sessions.pop(session.id, None)
        await session.close()
        await safe_close(ws)
        log.info(f"Live session {session.id} disconnected")


async def _handle_message(
    session: LiveSession,
    message: Dict[str, Any],
    mode_router: ModeRouter,
    dispatcher: Dispatcher,
) -> None:
    msg_type = message.get("type")

    if msg_type == "ping":
        await session.push({"type": "pong", "timestamp": utc_now_iso()})
        return

    if msg_type == "annotation_submit":
        try:
            request = SubmitRequest.model_validate(message)
        except ValidationError as e:
            await session.error("Invalid annotation payload", "INVALID_ANNOTATION")
            log.warning(f"Live session {session.id}: invalid annotation: {e.errors()}")
            return
        try:
            decision = await mode_router.submit(request.annotation, request.comment, sink=session.sink)
        except InvalidTransition as e:
            await session.error(str(e), "ANNOTATION_IN_PROGRESS", annotation_id=e.annotation_id)
            return
        await session.push(decision.wire_dict())
        return

    if msg_type == "annotation_delete":
        annotation_id = message.get("annotationId") or message.get("id")
        if not annotation_id:
            await session.error("annotation_delete requires annotationId", "INVALID_MESSAGE")
            return
        # Reverts wait for the working-tree lock; keep reading this socket meanwhile.
        session.spawn(_revert_and_report(session, dispatcher, annotation_id))
        return

    await session.error(f"Unknown message type: {msg_type}", "UNKNOWN_MESSAGE_TYPE")


async def _revert_and_report(session: LiveSession, dispatcher: Dispatcher, annotation_id: str) -> None:
    try:
        result = await dispatcher.revert(RevertCommand(annotation_id=annotation_id))
    except Exception as e:
        log.error(f"Live session {session.id}: revert of {annotation_id} failed: {e}", exc_info=True)
        await session.error("Revert failed", "REVERT_FAILED", annotation_id=annotation_id)
        return
    await session.push({
        "type": "revert_result",
        "annotationId": annotation_id,
        "success": result.success,
        "status": result.status,
        "paths": result.paths,
        "blocking": result.blocking,
        "message": result.message,
        "timestamp": utc_now_iso(),
    })
