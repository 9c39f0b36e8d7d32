"""Mode routing and the single auto-dispatch worker.

``ModeRouter`` picks its strategy once from ``DaemonConfig.mode``. In auto mode
annotations are acknowledged and queued for the ``Dispatcher``, which runs
them strictly one at a time under the working-tree lock:

    capture -> agent run -> commit + resolve   (success)
                         -> rollback + fail     (failure / timeout)

Progress is delivered to the sink registered by the submitting session only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import structlog

from skema_daemon.agents.invoker import AgentInvoker
from skema_daemon.agents.models import Outcome
from skema_daemon.annotation_store import AnnotationStore
from skema_daemon.config import DaemonConfig
from skema_daemon.core_models import Annotation, StoredAnnotation, utc_now_iso
from skema_daemon.exceptions import AnnotationNotFound, InvalidTransition, SnapshotError
from skema_daemon.metrics import REVERTS
from skema_daemon.snapshots import RevertResult, SnapshotManager

log = structlog.get_logger(__name__)

# Receives one outbound wire message (already a JSON-ready dict).
EventSink = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class Dispatched:
    record: StoredAnnotation
    position: int

    def wire_dict(self) -> Dict[str, Any]:
        return {
            "type": "annotation_dispatched",
            "annotationId": self.record.id,
            "status": self.record.status.value,
            "position": self.position,
            "timestamp": utc_now_iso(),
        }


@dataclass(frozen=True)
class Queued:
    record: StoredAnnotation

    def wire_dict(self) -> Dict[str, Any]:
        return {
            "type": "annotation_queued",
            "annotationId": self.record.id,
            "status": self.record.status.value,
            "timestamp": utc_now_iso(),
        }


RouteDecision = Union[Dispatched, Queued]


@dataclass(frozen=True)
class RevertCommand:
    """Undo everything an annotation changed; sent by the live channel on delete."""
    annotation_id: str
    remove_record: bool = True


class AutoDispatchStrategy:
    mode = "auto"

    def __init__(self, store: AnnotationStore, dispatcher: "Dispatcher"):
        self.store = store
        self.dispatcher = dispatcher

    async def route(self, stored: StoredAnnotation, sink: Optional[EventSink] = None) -> RouteDecision:
        acked = await self.store.acknowledge(stored.id)
        position = await self.dispatcher.enqueue(acked.id, sink)
        return Dispatched(acked, position)


class QueueStrategy:
    mode = "queue"

    async def route(self, stored: StoredAnnotation, sink: Optional[EventSink] = None) -> RouteDecision:
        return Queued(stored)


class ModeRouter:
    def __init__(self, config: DaemonConfig, store: AnnotationStore, dispatcher: "Dispatcher"):
        self.store = store
        if config.mode == "auto":
            self.strategy: Union[AutoDispatchStrategy, QueueStrategy] = AutoDispatchStrategy(store, dispatcher)
        else:
            self.strategy = QueueStrategy()

    @property
    def mode(self) -> str:
        return self.strategy.mode

    async def submit(self, annotation: Annotation, comment: Optional[str] = None,
                     sink: Optional[EventSink] = None) -> RouteDecision:
        stored = await self.store.submit(annotation, comment)
        decision = await self.strategy.route(stored, sink)
        log.info("annotation_routed", annotation_id=stored.id, mode=self.mode)
        return decision


class Dispatcher:
    def __init__(
        self,
        config: DaemonConfig,
        store: AnnotationStore,
        invoker: AgentInvoker,
        snapshots: SnapshotManager,
    ):
        self.config = config
        self.store = store
        self.invoker = invoker
        self.snapshots = snapshots
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._waiting: List[str] = []
        self._sinks: Dict[str, EventSink] = {}
        self._reverting: Set[str] = set()
        self._tree_lock = asyncio.Lock()
        self._worker: Optional[asyncio.Task] = None
        self.current_annotation_id: Optional[str] = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work_loop(), name="skema-dispatch")

    async def stop(self) -> None:
        await self.invoker.cancel_active()
        if self._worker is not None:
            await self._queue.put(None)
            try:
                await asyncio.wait_for(self._worker, timeout=self.config.terminate_grace_s + 5)
            except asyncio.TimeoutError:
                self._worker.cancel()
            self._worker = None
        # Anything still queued goes back to pending so it can be re-submitted after restart.
        for annotation_id in list(self._waiting):
            await self._safe_transition(self.store.fail, annotation_id, "Daemon stopped before run")
        self._waiting.clear()

    async def join(self) -> None:
        """Wait until every queued annotation has been processed."""
        await self._queue.join()

    @property
    def queued(self) -> List[str]:
        return list(self._waiting)

    # ------------------------------------------------------------------ #
    # Submission / delivery
    # ------------------------------------------------------------------ #

    async def enqueue(self, annotation_id: str, sink: Optional[EventSink] = None) -> int:
        if sink is not None:
            self._sinks[annotation_id] = sink
        self._waiting.append(annotation_id)
        await self._queue.put(annotation_id)
        return len(self._waiting) + (1 if self.current_annotation_id else 0)

    def detach(self, sink: EventSink) -> None:
        """Forget a disconnected session's sink; its runs continue, events are dropped."""
        for annotation_id in [k for k, v in self._sinks.items() if v is sink]:
            del self._sinks[annotation_id]

    async def _emit(self, annotation_id: str, message: Dict[str, Any]) -> None:
        sink = self._sinks.get(annotation_id)
        if sink is None:
            return
        try:
            await sink(message)
        except Exception as exc:
            log.warning("event_delivery_failed", annotation_id=annotation_id, error=str(exc))
            self._sinks.pop(annotation_id, None)

    # ------------------------------------------------------------------ #
    # Worker
    # ------------------------------------------------------------------ #

    async def _work_loop(self) -> None:
        while True:
            annotation_id = await self._queue.get()
            try:
                if annotation_id is None:
                    return
                if annotation_id not in self._waiting:
                    # Deleted while queued.
                    continue
                self._waiting.remove(annotation_id)
                await self.run_one(annotation_id)
            except Exception as exc:
                log.exception("dispatch_failed", annotation_id=annotation_id)
                await self._safe_transition(self.store.fail, annotation_id, f"Internal error: {exc}")
                await self._emit(annotation_id, {
                    "type": "result", "annotationId": annotation_id, "success": False,
                    "error": str(exc), "timestamp": utc_now_iso(),
                })
            finally:
                self._queue.task_done()

    async def run_one(self, annotation_id: str) -> Optional[Outcome]:
        """Run the agent for one acknowledged annotation and settle its lifecycle."""
        async with self._tree_lock:
            try:
                stored = self.store.get(annotation_id)
            except AnnotationNotFound:
                log.warning("dispatch_skipped_missing", annotation_id=annotation_id)
                return None

            # Set before capture so a delete arriving now is seen as in flight.
            self.current_annotation_id = annotation_id
            try:
                pre_snapshot = await self.snapshots.capture()
            except SnapshotError as exc:
                self.current_annotation_id = None
                log.error("snapshot_failed", annotation_id=annotation_id, error=str(exc))
                if annotation_id not in self._reverting:
                    await self._safe_transition(self.store.fail, annotation_id, f"Snapshot failed: {exc}")
                await self._emit(annotation_id, {
                    "type": "result", "annotationId": annotation_id, "success": False,
                    "error": f"Snapshot failed: {exc}", "timestamp": utc_now_iso(),
                })
                return None

            try:
                run = self.invoker.process(stored)
                if annotation_id in self._reverting:
                    # Deleted before the run existed; it finishes as cancelled without spawning.
                    await run.cancel()
                async for event in run:
                    await self._emit(annotation_id, event.wire_dict())
            finally:
                self.current_annotation_id = None
            outcome = run.outcome or Outcome.failed("Cancelled", cancelled=True)

            if run.vision_description and run.vision_description != stored.vision_description:
                await self._safe_transition(self.store.set_vision_description, annotation_id, run.vision_description)

            result: Dict[str, Any] = {
                "type": "result",
                "annotationId": annotation_id,
                "success": outcome.success,
                "timestamp": utc_now_iso(),
            }
            if outcome.success:
                change = await self.snapshots.commit(annotation_id, pre_snapshot)
                await self._safe_transition(self.store.attach_change, annotation_id, change.id)
                await self._safe_transition(self.store.resolve, annotation_id, outcome.summary)
                result.update(summary=outcome.summary, changeId=change.id, paths=change.touched_paths)
            else:
                if self.config.rollback_on_failure or outcome.cancelled:
                    rolled_back = await self.snapshots.rollback(pre_snapshot)
                    result["rolledBack"] = rolled_back
                if annotation_id not in self._reverting:
                    await self._safe_transition(self.store.fail, annotation_id, outcome.reason or "Agent failed")
                result.update(error=outcome.reason, timedOut=outcome.timed_out, cancelled=outcome.cancelled)

            await self._emit(annotation_id, result)
            return outcome

    async def _safe_transition(self, method: Callable[..., Awaitable[Any]], annotation_id: str, *args: Any) -> None:
        # The record may have been dismissed or deleted through another channel mid-run.
        try:
            await method(annotation_id, *args)
        except (AnnotationNotFound, InvalidTransition) as exc:
            log.warning("lifecycle_update_skipped", annotation_id=annotation_id, error=str(exc))

    # ------------------------------------------------------------------ #
    # Revert
    # ------------------------------------------------------------------ #

    async def revert(self, command: RevertCommand) -> RevertResult:
        """Cancel any queued or running work for the annotation, then revert its changes.

        A revert that would conflict is refused before anything is dequeued or
        cancelled, so the annotation and its pending work stay as they were.
        """
        annotation_id = command.annotation_id
        blocked = self.snapshots.conflicts(annotation_id)
        if blocked is not None:
            REVERTS.labels(result="conflict").inc()
            log.warning("revert_blocked", annotation_id=annotation_id, paths=blocked.paths, blocking=blocked.blocking)
            return blocked

        self._reverting.add(annotation_id)
        interrupted = False
        try:
            if annotation_id in self._waiting:
                self._waiting.remove(annotation_id)
                interrupted = True
                await self._emit(annotation_id, {
                    "type": "result", "annotationId": annotation_id, "success": False,
                    "error": "Deleted before run", "cancelled": True, "timestamp": utc_now_iso(),
                })
            if self.current_annotation_id == annotation_id:
                interrupted = True
                await self.invoker.cancel_active(annotation_id)
            async with self._tree_lock:
                result = await self.snapshots.revert(annotation_id)
                if result.success and command.remove_record:
                    try:
                        await self.store.remove(annotation_id)
                    except AnnotationNotFound:
                        pass
                elif interrupted:
                    # The run's own fail was suppressed; the record must not stay acknowledged.
                    reason = result.message or "Run cancelled by revert"
                    await self._safe_transition(self.store.fail, annotation_id, reason)
        finally:
            self._reverting.discard(annotation_id)
        if result.success:
            self._sinks.pop(annotation_id, None)
        log.info("revert_finished", annotation_id=annotation_id, status=result.status)
        return result
