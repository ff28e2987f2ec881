"""Tests for the durable sync operation queue."""
import pytest

from matchstore.errors import NoActivePrincipal
from matchstore.models import SyncOperationInput
from matchstore.queue import SyncOperationQueue, merged_operation, now_ms


def make_op(entity_id="p1", operation="create", entity_type="player", payload=None):
    return SyncOperationInput(
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        payload=payload if payload is not None else {"name": entity_id},
        timestamp=now_ms(),
    )


@pytest.fixture
def active_queue(queue):
    queue.set_active_principal("alice")
    return queue


async def test_enqueue_requires_active_principal(queue):
    """Nothing can be queued while nobody is signed in."""
    with pytest.raises(NoActivePrincipal):
        await queue.enqueue(make_op())


async def test_reads_are_empty_without_principal(queue):
    """Reads without an active principal see nothing."""
    assert await queue.pending() == []
    assert (await queue.stats()).total == 0


async def test_enqueue_stamps_active_principal(active_queue):
    """The owning principal comes from the queue, never from the caller."""
    await active_queue.enqueue({
        "entityType": "player",
        "entityId": "p1",
        "operation": "create",
        "payload": {"name": "Aino"},
        "timestamp": now_ms(),
        "principalId": "mallory",
    })
    [op] = await active_queue.pending()
    assert op.principal_id == "alice"
    assert op.payload == {"name": "Aino"}
    assert op.max_retries == 3


@pytest.mark.parametrize("existing,new,expected", [
    ("create", "update", "create"),
    ("create", "delete", None),
    ("update", "update", "update"),
    ("update", "delete", "delete"),
    ("delete", "create", "create"),
])
def test_merged_operation(existing, new, expected):
    """Coalescing rules for two mutations of the same entity."""
    assert merged_operation(existing, new) == expected


async def test_create_then_update_coalesces(active_queue):
    """An update to a pending create stays a create with the latest payload."""
    first = await active_queue.enqueue(make_op(payload={"name": "Aino"}))
    second = await active_queue.enqueue(make_op(operation="update", payload={"name": "Aino V"}))

    [op] = await active_queue.pending()
    assert first == second == op.id
    assert op.operation == "create"
    assert op.payload == {"name": "Aino V"}


async def test_create_then_delete_cancels(active_queue):
    """An entity created and deleted before syncing never reaches the remote."""
    await active_queue.enqueue(make_op())
    assert await active_queue.enqueue(make_op(operation="delete", payload={})) is None
    assert await active_queue.pending() == []


async def test_other_entities_are_not_coalesced(active_queue):
    """Coalescing is per (type, id)."""
    await active_queue.enqueue(make_op("p1"))
    await active_queue.enqueue(make_op("p2"))
    await active_queue.enqueue(make_op("p1", entity_type="game", payload={"gameDate": "2024-01-01"}))
    assert len(await active_queue.pending()) == 3


async def test_pending_is_fifo(active_queue):
    """Operations come back oldest first."""
    for entity_id in ("a", "b", "c"):
        await active_queue.enqueue(make_op(entity_id))
    assert [op.entity_id for op in await active_queue.pending()] == ["a", "b", "c"]
    assert (await active_queue.peek()).entity_id == "a"


async def test_principal_switch_hides_and_restores_operations(queue):
    """Switching principals neither loses nor leaks queued operations."""
    queue.set_active_principal("alice")
    await queue.enqueue(make_op("a1"))
    await queue.enqueue(make_op("a2"))
    alice_ops = [op.id for op in await queue.pending()]

    queue.set_active_principal("bob")
    assert await queue.pending() == []
    await queue.enqueue(make_op("b1"))
    assert [op.entity_id for op in await queue.pending()] == ["b1"]

    queue.set_active_principal("alice")
    assert [op.id for op in await queue.pending()] == alice_ops

    queue.set_active_principal("alice")
    assert [op.id for op in await queue.pending()] == alice_ops


async def test_operations_of_inactive_principal_cannot_be_touched(queue):
    """Status changes only apply to the active principal's rows."""
    queue.set_active_principal("alice")
    op_id = await queue.enqueue(make_op())

    queue.set_active_principal("bob")
    await queue.mark_completed(op_id)
    assert await queue.purge_active_principal() == 0

    queue.set_active_principal("alice")
    assert await queue.get_by_id(op_id) is not None


async def test_mark_failed_until_ceiling(active_queue):
    """Each failure counts; reaching max_retries makes the operation terminal."""
    op_id = await active_queue.enqueue(make_op())

    for attempt in (1, 2):
        op = await active_queue.mark_failed(op_id, "HTTP 503")
        assert op.status == "pending"
        assert op.retry_count == attempt

    op = await active_queue.mark_failed(op_id, "HTTP 503")
    assert op.status == "failed"
    assert op.retry_count == 3
    assert [f.id for f in await active_queue.failed()] == [op_id]
    assert await active_queue.pending() == []


async def test_ready_respects_backoff(tmp_path):
    """A failed operation is held back until its backoff window elapses."""
    queue = SyncOperationQueue(tmp_path / "q.db", max_retries=5, backoff_base=1, backoff_max=60)
    queue.set_active_principal("alice")
    op_id = await queue.enqueue(make_op())
    await queue.mark_failed(op_id, "timeout")
    op = await queue.get_by_id(op_id)

    assert await queue.ready(now=op.last_attempt + 500) == []
    assert [r.id for r in await queue.ready(now=op.last_attempt + 1000)] == [op_id]


def test_backoff_formula(tmp_path):
    """Backoff doubles per retry and is capped."""
    queue = SyncOperationQueue(tmp_path / "q.db", backoff_base=1, backoff_max=5)
    assert [queue._calculate_backoff(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]


async def test_ready_limit(active_queue):
    """ready() honours the batch limit."""
    for entity_id in ("a", "b", "c"):
        await active_queue.enqueue(make_op(entity_id))
    assert len(await active_queue.ready(limit=2)) == 2


async def test_completed_operations_are_removed(active_queue):
    """Completing an operation deletes it."""
    op_id = await active_queue.enqueue(make_op())
    await active_queue.mark_syncing(op_id)
    assert (await active_queue.stats()).syncing == 1
    await active_queue.mark_completed(op_id)
    assert await active_queue.get_by_id(op_id) is None


async def test_stale_syncing_is_reset(active_queue):
    """Operations stuck in 'syncing' go back to pending with one retry used."""
    op_id = await active_queue.enqueue(make_op())
    await active_queue.mark_syncing(op_id)

    assert await active_queue.reset_stale_syncing() == 1
    op = await active_queue.get_by_id(op_id)
    assert op.status == "pending"
    assert op.retry_count == 1
    assert "stale" in op.last_error


async def test_reset_to_pending_keeps_retry_budget(active_queue):
    """Auth-related resets do not count against the retry ceiling."""
    op_id = await active_queue.enqueue(make_op())
    await active_queue.mark_syncing(op_id)
    assert await active_queue.reset_to_pending(op_id) is True
    op = await active_queue.get_by_id(op_id)
    assert op.status == "pending"
    assert op.retry_count == 0


async def test_retry_and_discard_failed(active_queue):
    """Failed operations can be retried with a fresh budget or discarded."""
    first = await active_queue.enqueue(make_op("a"))
    second = await active_queue.enqueue(make_op("b"))
    await active_queue.mark_permanently_failed(first, "HTTP 400")
    await active_queue.mark_permanently_failed(second, "HTTP 400")

    assert await active_queue.retry_failed() == 2
    op = await active_queue.get_by_id(first)
    assert op.status == "pending"
    assert op.retry_count == 0

    await active_queue.mark_permanently_failed(first, "HTTP 400")
    assert await active_queue.discard_failed() == 1
    assert [op.id for op in await active_queue.pending()] == [second]


async def test_stats(active_queue):
    """Stats count operations per status."""
    first = await active_queue.enqueue(make_op("a"))
    await active_queue.enqueue(make_op("b"))
    await active_queue.mark_permanently_failed(first, "boom")

    stats = await active_queue.stats()
    assert stats.pending == 1
    assert stats.failed == 1
    assert stats.total == 2
    assert stats.oldest_timestamp is not None


async def test_queue_survives_reopen(tmp_path):
    """Queued operations persist across queue instances."""
    path = tmp_path / "q.db"
    queue = SyncOperationQueue(path)
    queue.set_active_principal("alice")
    await queue.enqueue(make_op())

    reopened = SyncOperationQueue(path)
    reopened.set_active_principal("alice")
    assert len(await reopened.pending()) == 1
