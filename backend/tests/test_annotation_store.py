import asyncio
import json
import time

import pytest

from conftest import DummyRedis, button_annotation
from skema_daemon.annotation_store import AnnotationStore, RedisAnnotationBackend, apply_event
from skema_daemon.core_models import AnnotationStatus, LifecycleEvent
from skema_daemon.exceptions import AnnotationNotFound, InvalidTransition, StoreCorruptionError


@pytest.mark.asyncio
async def test_submit_assigns_id_and_starts_pending():
    store = AnnotationStore()
    record = await store.submit(button_annotation(), "Make it blue")

    assert record.id.startswith("ann-")
    assert record.status is AnnotationStatus.PENDING
    assert record.comment == "Make it blue"
    assert store.get(record.id).annotation.selector == ".btn"


@pytest.mark.asyncio
async def test_client_id_is_kept():
    store = AnnotationStore()
    record = await store.submit(button_annotation(id="abc-1"))
    assert record.id == "abc-1"
    # Comment falls back to the annotation's own comment
    assert record.comment == "Rename this button"


@pytest.mark.asyncio
async def test_full_lifecycle_and_attempts():
    store = AnnotationStore()
    rec = await store.submit(button_annotation())

    acked = await store.acknowledge(rec.id)
    assert acked.status is AnnotationStatus.ACKNOWLEDGED
    assert acked.attempts == 1

    done = await store.resolve(rec.id, "done")
    assert done.status is AnnotationStatus.RESOLVED
    assert done.resolution_summary == "done"
    assert done.resolved_by == "agent"


@pytest.mark.asyncio
async def test_pending_to_resolved_is_rejected_and_record_unchanged():
    store = AnnotationStore()
    rec = await store.submit(button_annotation())

    with pytest.raises(InvalidTransition):
        await store.resolve(rec.id, "too early")

    again = store.get(rec.id)
    assert again.status is AnnotationStatus.PENDING
    assert again.resolution_summary is None


@pytest.mark.asyncio
async def test_dismiss_from_pending_and_from_acknowledged():
    store = AnnotationStore()
    a = await store.submit(button_annotation())
    b = await store.submit(button_annotation())
    await store.acknowledge(b.id)

    assert (await store.dismiss(a.id, "duplicate")).status is AnnotationStatus.DISMISSED
    dismissed = await store.dismiss(b.id, "not doing it", resolved_by="human")
    assert dismissed.dismissal_reason == "not doing it"
    assert dismissed.resolved_by == "human"

    with pytest.raises(InvalidTransition):
        await store.acknowledge(a.id)


@pytest.mark.asyncio
async def test_fail_returns_to_pending_with_error():
    store = AnnotationStore()
    rec = await store.submit(button_annotation())
    await store.acknowledge(rec.id)

    failed = await store.fail(rec.id, "Agent exited with code 3")
    assert failed.status is AnnotationStatus.PENDING
    assert failed.last_error == "Agent exited with code 3"
    assert failed.attempts == 1


@pytest.mark.asyncio
async def test_resubmit_rules():
    store = AnnotationStore()
    rec = await store.submit(button_annotation(id="x"), "first")

    # pending -> payload refreshed
    refreshed = await store.submit(button_annotation(id="x", text="Sign up"), "second")
    assert refreshed.status is AnnotationStatus.PENDING
    assert refreshed.comment == "second"
    assert refreshed.annotation.text == "Sign up"
    assert len(store.list()) == 1

    # acknowledged -> in flight, rejected
    await store.acknowledge(rec.id)
    with pytest.raises(InvalidTransition):
        await store.submit(button_annotation(id="x"), "third")

    # terminal -> reopened
    await store.resolve(rec.id, "done")
    reopened = await store.submit(button_annotation(id="x"), "again")
    assert reopened.status is AnnotationStatus.PENDING
    assert reopened.resolution_summary is None
    assert reopened.resolved_by is None


def test_apply_event_does_not_mutate_input():
    from skema_daemon.core_models import StoredAnnotation

    rec = StoredAnnotation(annotation=button_annotation(id="z"))
    out = apply_event(rec, LifecycleEvent.ACKNOWLEDGE)
    assert rec.status is AnnotationStatus.PENDING
    assert out.status is AnnotationStatus.ACKNOWLEDGED


@pytest.mark.asyncio
async def test_unknown_id_raises_not_found():
    store = AnnotationStore()
    with pytest.raises(AnnotationNotFound):
        store.get("missing")
    with pytest.raises(AnnotationNotFound):
        await store.acknowledge("missing")
    with pytest.raises(AnnotationNotFound):
        await store.remove("missing")


@pytest.mark.asyncio
async def test_reads_return_copies():
    store = AnnotationStore()
    rec = await store.submit(button_annotation())
    copy = store.get(rec.id)
    copy.comment = "tampered"
    assert store.get(rec.id).comment != "tampered"


@pytest.mark.asyncio
async def test_concurrent_submits_get_distinct_ids_in_order():
    store = AnnotationStore()
    records = await asyncio.gather(*(store.submit(button_annotation(), f"c{i}") for i in range(20)))

    ids = [r.id for r in records]
    assert len(set(ids)) == 20
    assert [r.comment for r in store.list()] == [f"c{i}" for i in range(20)]


@pytest.mark.asyncio
async def test_list_filters_by_status():
    store = AnnotationStore()
    a = await store.submit(button_annotation())
    await store.submit(button_annotation())
    await store.acknowledge(a.id)

    assert [r.id for r in store.list(AnnotationStatus.ACKNOWLEDGED)] == [a.id]
    assert len(store.pending()) == 1
    assert store.counts() == {"pending": 1, "acknowledged": 1, "resolved": 0, "dismissed": 0}


# --- watch ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_watch_returns_none_after_ceiling():
    store = AnnotationStore()
    await store.submit(button_annotation())  # already pending before the call; does not count

    started = time.monotonic()
    assert await store.watch(0.2) is None
    assert time.monotonic() - started >= 0.15


@pytest.mark.asyncio
async def test_watch_wakes_promptly_on_submit():
    store = AnnotationStore()
    waiter = asyncio.create_task(store.watch(5))
    await asyncio.sleep(0.05)

    started = time.monotonic()
    rec = await store.submit(button_annotation(), "new work")
    hit = await asyncio.wait_for(waiter, 1)

    assert hit is not None
    record, cursor = hit
    assert record.id == rec.id
    assert cursor == store.cursor
    assert time.monotonic() - started < 1


@pytest.mark.asyncio
async def test_watch_wakes_on_fail_back_to_pending():
    store = AnnotationStore()
    rec = await store.submit(button_annotation())
    await store.acknowledge(rec.id)

    waiter = asyncio.create_task(store.watch(5))
    await asyncio.sleep(0.05)
    await store.fail(rec.id, "retry me")
    record, _ = await asyncio.wait_for(waiter, 1)
    assert record.id == rec.id
    assert record.last_error == "retry me"


@pytest.mark.asyncio
async def test_watch_with_cursor_does_not_miss_earlier_work():
    store = AnnotationStore()
    cursor = store.cursor
    first = await store.submit(button_annotation(), "one")
    second = await store.submit(button_annotation(), "two")

    record, cursor = await store.watch(0.1, after=cursor)
    assert record.id == first.id
    record, cursor = await store.watch(0.1, after=cursor)
    assert record.id == second.id
    assert await store.watch(0.1, after=cursor) is None


@pytest.mark.asyncio
async def test_watch_skips_records_no_longer_pending():
    store = AnnotationStore()
    cursor = store.cursor
    rec = await store.submit(button_annotation())
    await store.acknowledge(rec.id)
    assert await store.watch(0.1, after=cursor) is None


# --- persistence ------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_redis_backend_round_trip():
    redis = DummyRedis()
    store = AnnotationStore(RedisAnnotationBackend(redis))
    a = await store.submit(button_annotation(), "one")
    b = await store.submit(button_annotation(), "two")
    await store.acknowledge(a.id)
    await store.resolve(a.id, "done")
    await store.remove(b.id)

    reloaded = AnnotationStore(RedisAnnotationBackend(redis))
    assert await reloaded.load() == 1
    rec = reloaded.get(a.id)
    assert rec.status is AnnotationStatus.RESOLVED
    assert rec.resolution_summary == "done"
    with pytest.raises(AnnotationNotFound):
        reloaded.get(b.id)


@pytest.mark.asyncio
async def test_redis_backend_keeps_insertion_order_and_pending_watchable():
    redis = DummyRedis()
    store = AnnotationStore(RedisAnnotationBackend(redis))
    for i in range(3):
        await store.submit(button_annotation(), f"c{i}")

    reloaded = AnnotationStore(RedisAnnotationBackend(redis))
    await reloaded.load()
    assert [r.comment for r in reloaded.list()] == ["c0", "c1", "c2"]
    record, _ = await reloaded.watch(0.1, after=0)
    assert record.comment == "c0"


@pytest.mark.asyncio
async def test_corrupt_row_raises_store_corruption():
    redis = DummyRedis()
    store = AnnotationStore(RedisAnnotationBackend(redis))
    rec = await store.submit(button_annotation())
    redis.hashes["skema:annotations:records"][rec.id.encode()] = b"{not json"

    with pytest.raises(StoreCorruptionError):
        await AnnotationStore(RedisAnnotationBackend(redis)).load()


@pytest.mark.asyncio
async def test_invalid_status_row_raises_store_corruption():
    redis = DummyRedis()
    store = AnnotationStore(RedisAnnotationBackend(redis))
    rec = await store.submit(button_annotation())
    row = json.loads(redis.hashes["skema:annotations:records"][rec.id.encode()])
    row["status"] = "exploded"
    redis.hashes["skema:annotations:records"][rec.id.encode()] = json.dumps(row).encode()

    with pytest.raises(StoreCorruptionError):
        await AnnotationStore(RedisAnnotationBackend(redis)).load()
