"""In-memory annotation store with lifecycle state and optional Redis write-through.

The store is the single source of truth for annotation records. Both the live
channel and the control protocol mutate it; every mutation happens under one
``asyncio.Condition`` so appends and state transitions are atomic, and
``watch()`` callers are woken whenever a record (re-)enters ``pending``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import structlog
from pydantic import ValidationError

from skema_daemon.core_models import (
    Annotation,
    AnnotationStatus,
    LifecycleEvent,
    StoredAnnotation,
    utc_now_iso,
)
from skema_daemon.exceptions import AnnotationNotFound, InvalidTransition, StoreCorruptionError
from skema_daemon.metrics import ANNOTATIONS_RECEIVED, ANNOTATION_TRANSITIONS

log = structlog.get_logger(__name__)

_P = AnnotationStatus.PENDING
_A = AnnotationStatus.ACKNOWLEDGED
_R = AnnotationStatus.RESOLVED
_D = AnnotationStatus.DISMISSED

# event -> (allowed source states, target state)
TRANSITIONS: Dict[LifecycleEvent, Tuple[frozenset, AnnotationStatus]] = {
    LifecycleEvent.ACKNOWLEDGE: (frozenset({_P}), _A),
    LifecycleEvent.RESOLVE: (frozenset({_A}), _R),
    LifecycleEvent.DISMISS: (frozenset({_P, _A}), _D),
    LifecycleEvent.FAIL: (frozenset({_A}), _P),
    LifecycleEvent.REOPEN: (frozenset({_R, _D}), _P),
}


def apply_event(record: StoredAnnotation, event: LifecycleEvent, **details: Any) -> StoredAnnotation:
    """Return a new record with *event* applied, or raise ``InvalidTransition``.

    The input record is never modified.
    """
    allowed, target = TRANSITIONS[event]
    if record.status not in allowed:
        raise InvalidTransition(record.id, record.status.value, event.value)

    update: Dict[str, Any] = {"status": target, "updated_at": utc_now_iso()}
    if event is LifecycleEvent.ACKNOWLEDGE:
        update["attempts"] = record.attempts + 1
    elif event is LifecycleEvent.RESOLVE:
        update["resolution_summary"] = details.get("summary")
        update["resolved_by"] = details.get("resolved_by", "agent")
        update["last_error"] = None
    elif event is LifecycleEvent.DISMISS:
        update["dismissal_reason"] = details.get("reason")
        update["resolved_by"] = details.get("resolved_by", "agent")
    elif event is LifecycleEvent.FAIL:
        update["last_error"] = details.get("error") or "Agent failed"
    elif event is LifecycleEvent.REOPEN:
        update.update(resolved_by=None, resolution_summary=None, dismissal_reason=None)
    return record.model_copy(update=update, deep=True)


class AnnotationBackend(Protocol):
    async def load(self) -> List[StoredAnnotation]: ...
    async def save(self, record: StoredAnnotation) -> None: ...
    async def delete(self, annotation_id: str) -> None: ...


class RedisAnnotationBackend:
    """Write-through persistence of annotation records in Redis.

    Records live in one hash (id -> JSON); a list keeps insertion order.
    """

    def __init__(self, redis: Any, prefix: str = "skema:annotations"):
        self.redis = redis
        self._records_key = f"{prefix}:records"
        self._order_key = f"{prefix}:order"

    async def load(self) -> List[StoredAnnotation]:
        ids = [_decode(i) for i in await self.redis.lrange(self._order_key, 0, -1)]
        if not ids:
            return []
        rows = await self.redis.hmget(self._records_key, ids)
        records: List[StoredAnnotation] = []
        for ann_id, raw in zip(ids, rows):
            if raw is None:
                raise StoreCorruptionError(f"Annotation {ann_id} is listed in {self._order_key} but has no record")
            try:
                record = StoredAnnotation.model_validate(json.loads(_decode(raw)))
            except (json.JSONDecodeError, ValidationError) as exc:
                raise StoreCorruptionError(f"Annotation {ann_id} could not be decoded: {exc}") from exc
            if record.id != ann_id:
                raise StoreCorruptionError(f"Annotation row {ann_id} holds record for {record.id}")
            records.append(record)
        return records

    async def save(self, record: StoredAnnotation) -> None:
        payload = json.dumps(record.wire_dict())
        is_new = await self.redis.hset(self._records_key, record.id, payload)
        if is_new:
            await self.redis.rpush(self._order_key, record.id)

    async def delete(self, annotation_id: str) -> None:
        await self.redis.hdel(self._records_key, annotation_id)
        await self.redis.lrem(self._order_key, 0, annotation_id)


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class AnnotationStore:
    """Lifecycle-aware table of annotation records, in insertion order."""

    def __init__(self, backend: Optional[AnnotationBackend] = None):
        self._backend = backend
        self._records: Dict[str, StoredAnnotation] = {}
        self._cond = asyncio.Condition()
        # Monotonic counter stamped on a record each time it enters ``pending``;
        # watch() cursors compare against it.
        self._pending_seq = 0
        self._pending_marks: Dict[str, int] = {}

    async def load(self) -> int:
        """Hydrate from the backend. Raises ``StoreCorruptionError`` on bad data."""
        if self._backend is None:
            return 0
        records = await self._backend.load()
        async with self._cond:
            self._records = {r.id: r for r in records}
            for record in records:
                if record.status is AnnotationStatus.PENDING:
                    self._mark_pending(record.id)
        log.info("Annotation store hydrated", count=len(records))
        return len(records)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, annotation_id: str) -> StoredAnnotation:
        record = self._records.get(annotation_id)
        if record is None:
            raise AnnotationNotFound(annotation_id)
        return record.model_copy(deep=True)

    def list(self, status: Optional[AnnotationStatus | Iterable[AnnotationStatus]] = None) -> List[StoredAnnotation]:
        if status is None:
            wanted = None
        elif isinstance(status, AnnotationStatus):
            wanted = {status}
        else:
            wanted = set(status)
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if wanted is None or r.status in wanted
        ]

    def pending(self) -> List[StoredAnnotation]:
        return self.list(AnnotationStatus.PENDING)

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in AnnotationStatus}
        for record in self._records.values():
            counts[record.status.value] += 1
        return counts

    @property
    def cursor(self) -> int:
        return self._pending_seq

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    async def submit(
        self,
        annotation: Annotation,
        comment: Optional[str] = None,
        *,
        vision_description: Optional[str] = None,
    ) -> StoredAnnotation:
        """Append a new annotation, or re-submit an existing one.

        Re-submitting a pending record refreshes its payload; a resolved or
        dismissed record is reopened; an acknowledged (in-flight) record is
        rejected with ``InvalidTransition``.
        """
        comment = comment if comment is not None else (annotation.comment or "")
        async with self._cond:
            ann_id = annotation.id or f"ann-{uuid.uuid4().hex}"
            payload = annotation.model_copy(update={"id": ann_id}, deep=True)
            existing = self._records.get(ann_id)

            if existing is None:
                record = StoredAnnotation(
                    annotation=payload,
                    comment=comment,
                    vision_description=vision_description,
                )
            elif existing.status is AnnotationStatus.ACKNOWLEDGED:
                raise InvalidTransition(ann_id, existing.status.value, "submit")
            else:
                if existing.status.is_terminal:
                    existing = apply_event(existing, LifecycleEvent.REOPEN)
                record = existing.model_copy(
                    update={
                        "annotation": payload,
                        "comment": comment,
                        "updated_at": utc_now_iso(),
                        "vision_description": vision_description or existing.vision_description,
                    },
                    deep=True,
                )

            await self._commit(record)
            self._mark_pending(ann_id)
            self._cond.notify_all()

        ANNOTATIONS_RECEIVED.labels(kind=record.annotation.type).inc()
        log.info(
            "Annotation submitted",
            annotation_id=ann_id,
            resubmitted=existing is not None,
            comment=comment[:50],
        )
        return record.model_copy(deep=True)

    async def transition(self, annotation_id: str, event: LifecycleEvent, **details: Any) -> StoredAnnotation:
        """Apply a lifecycle event atomically. The record is untouched on failure."""
        async with self._cond:
            current = self._records.get(annotation_id)
            if current is None:
                raise AnnotationNotFound(annotation_id)
            updated = apply_event(current, event, **details)
            await self._commit(updated)
            if updated.status is AnnotationStatus.PENDING:
                self._mark_pending(annotation_id)
                self._cond.notify_all()
            else:
                self._pending_marks.pop(annotation_id, None)

        ANNOTATION_TRANSITIONS.labels(event=event.value).inc()
        log.info(
            "Annotation transitioned",
            annotation_id=annotation_id,
            lifecycle_event=event.value,
            from_status=current.status.value,
            to_status=updated.status.value,
        )
        return updated.model_copy(deep=True)

    async def acknowledge(self, annotation_id: str) -> StoredAnnotation:
        return await self.transition(annotation_id, LifecycleEvent.ACKNOWLEDGE)

    async def resolve(self, annotation_id: str, summary: Optional[str] = None, *, resolved_by: str = "agent") -> StoredAnnotation:
        return await self.transition(annotation_id, LifecycleEvent.RESOLVE, summary=summary, resolved_by=resolved_by)

    async def dismiss(self, annotation_id: str, reason: str, *, resolved_by: str = "agent") -> StoredAnnotation:
        return await self.transition(annotation_id, LifecycleEvent.DISMISS, reason=reason, resolved_by=resolved_by)

    async def fail(self, annotation_id: str, error: str) -> StoredAnnotation:
        return await self.transition(annotation_id, LifecycleEvent.FAIL, error=error)

    async def attach_change(self, annotation_id: str, change_id: str) -> StoredAnnotation:
        async with self._cond:
            current = self._records.get(annotation_id)
            if current is None:
                raise AnnotationNotFound(annotation_id)
            updated = current.model_copy(
                update={"change_ids": [*current.change_ids, change_id], "updated_at": utc_now_iso()},
                deep=True,
            )
            await self._commit(updated)
        return updated.model_copy(deep=True)

    async def set_vision_description(self, annotation_id: str, description: str) -> None:
        async with self._cond:
            current = self._records.get(annotation_id)
            if current is None:
                raise AnnotationNotFound(annotation_id)
            await self._commit(current.model_copy(update={"vision_description": description}, deep=True))

    async def remove(self, annotation_id: str) -> StoredAnnotation:
        async with self._cond:
            current = self._records.get(annotation_id)
            if current is None:
                raise AnnotationNotFound(annotation_id)
            if self._backend is not None:
                await self._backend.delete(annotation_id)
            del self._records[annotation_id]
            self._pending_marks.pop(annotation_id, None)
        log.info("Annotation removed", annotation_id=annotation_id)
        return current

    # ------------------------------------------------------------------ #
    # Long-poll
    # ------------------------------------------------------------------ #

    async def watch(self, timeout: float, after: Optional[int] = None) -> Optional[Tuple[StoredAnnotation, int]]:
        """Block until a record enters ``pending`` after cursor *after*.

        With ``after=None`` only records that become pending after the call
        starts count. Returns ``(record, cursor)`` or ``None`` once *timeout*
        seconds have passed with no new work.
        """
        async with self._cond:
            threshold = self._pending_seq if after is None else after
            try:
                await asyncio.wait_for(
                    self._cond.wait_for(lambda: self._first_pending_after(threshold) is not None),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            ann_id = self._first_pending_after(threshold)
            assert ann_id is not None
            return self._records[ann_id].model_copy(deep=True), self._pending_marks[ann_id]

    # ------------------------------------------------------------------ #
    # Internals (caller holds the condition lock)
    # ------------------------------------------------------------------ #

    def _first_pending_after(self, threshold: int) -> Optional[str]:
        best: Optional[Tuple[int, str]] = None
        for ann_id, mark in self._pending_marks.items():
            if mark > threshold and (best is None or mark < best[0]):
                best = (mark, ann_id)
        return best[1] if best else None

    def _mark_pending(self, annotation_id: str) -> None:
        self._pending_seq += 1
        self._pending_marks[annotation_id] = self._pending_seq

    async def _commit(self, record: StoredAnnotation) -> None:
        # Persist before publishing in memory so a failed write leaves the
        # in-memory view unchanged.
        if self._backend is not None:
            await self._backend.save(record)
        self._records[record.id] = record
