"""Tests for the sync engine."""
import asyncio

import pytest

from conftest import FakeRemoteStore
from matchstore.engine import SyncEngine
from matchstore.errors import AuthExpired, PermanentError, TransientError
from matchstore.models import RemoteRecord, SyncOperationInput
from matchstore.queue import now_ms
from matchstore.synced import SyncedDataStore


@pytest.fixture
def synced(store, queue):
    queue.set_active_principal("user-1")
    return SyncedDataStore(store, queue)


@pytest.fixture
def engine(queue, remote, synced):
    return SyncEngine(queue, remote, synced.apply_remote, resync_handler=synced.expand_resync, interval=0.05)


class SlowRemoteStore(FakeRemoteStore):
    async def fetch(self, entity_type, entity_id):
        await asyncio.sleep(1)
        return None


async def test_pushes_pending_operations(engine, synced, queue, remote):
    """Queued creates reach the remote store and leave the queue."""
    player = await synced.create_player({"name": "Aino"})
    team = await synced.create_team({"name": "Eagles"})

    result = await engine.process_queue()

    assert result.synced == 2
    assert await queue.pending() == []
    assert remote.records[("player", player.id)].data["name"] == "Aino"
    assert ("team", team.id) in remote.records
    assert engine.last_synced_at is not None
    assert (await engine.status()).state == "synced"


async def test_transient_error_requeues(engine, synced, queue, remote):
    """A transient failure counts one retry and keeps the operation pending."""
    failures = []
    engine.add_failure_listener(lambda op, error, will_retry: failures.append((op.entity_id, will_retry)))
    player = await synced.create_player({"name": "Aino"})
    remote.fail_with = TransientError("HTTP 503")

    result = await engine.process_queue()

    assert result.requeued == 1
    [op] = await queue.pending()
    assert op.retry_count == 1
    assert op.last_error == "HTTP 503"
    assert failures == [(player.id, True)]
    assert engine.last_synced_at is None


async def test_retry_ceiling_marks_failed(engine, synced, queue, remote):
    """After max_retries transient failures the operation is terminal."""
    failures = []
    engine.add_failure_listener(lambda op, error, will_retry: failures.append(will_retry))
    await synced.create_player({"name": "Aino"})
    remote.fail_with = TransientError("HTTP 503")

    for _ in range(3):
        await engine.process_queue()

    assert await queue.pending() == []
    [op] = await queue.failed()
    assert op.retry_count == 3
    assert failures == [True, True, False]
    status = await engine.status()
    assert status.state == "error"
    assert status.failed_count == 1


async def test_permanent_error_fails_immediately(engine, synced, queue, remote):
    """Permanent rejections are not retried."""
    await synced.create_player({"name": "Aino"})
    remote.fail_with = PermanentError("HTTP 400")

    result = await engine.process_queue()

    assert result.failed == 1
    [op] = await queue.failed()
    assert op.retry_count == 0


async def test_malformed_operation_is_not_retried(engine, queue, remote):
    """An operation that can never be valid fails at once without touching the remote."""
    failures = []
    engine.add_failure_listener(lambda op, error, will_retry: failures.append(will_retry))
    await queue.enqueue(SyncOperationInput(
        entity_type="player",
        entity_id="   ",
        operation="update",
        payload={"name": "Aino"},
        timestamp=now_ms(),
    ))

    result = await engine.process_queue()

    assert result.failed == 1
    [op] = await queue.failed()
    assert op.retry_count == 0
    assert "entity_id" in op.last_error
    assert failures == [False]
    assert remote.calls == []


async def test_auth_expired_stops_drain_without_spending_retries(engine, synced, queue, remote):
    """Authorization failures leave every operation pending and untouched."""
    await synced.create_player({"name": "Aino"})
    await synced.create_player({"name": "Eero"})
    remote.fail_with = AuthExpired("HTTP 401")

    result = await engine.process_queue()

    assert result.requeued == 1
    assert result.skipped == 1
    ops = await queue.pending()
    assert len(ops) == 2
    assert all(op.retry_count == 0 for op in ops)


async def test_remote_for_other_principal_is_not_used(queue, synced):
    """Operations are never sent with another principal's session."""
    remote = FakeRemoteStore("someone-else")
    engine = SyncEngine(queue, remote, synced.apply_remote)
    await synced.create_player({"name": "Aino"})

    result = await engine.process_queue()

    assert result.requeued == 1
    assert remote.calls == []
    [op] = await queue.pending()
    assert op.last_attempt is None


async def test_missing_remote_leaves_queue_alone(queue, synced):
    """Without a remote session nothing is attempted."""
    engine = SyncEngine(queue, None, synced.apply_remote)
    await synced.create_player({"name": "Aino"})
    await engine.process_queue()
    [op] = await queue.pending()
    assert op.retry_count == 0


async def test_offline_and_paused(engine, synced, queue, remote):
    """Nothing is processed while offline or paused."""
    await synced.create_player({"name": "Aino"})

    engine.set_online(False)
    assert (await engine.process_queue()).synced == 0
    assert (await engine.status()).state == "offline"

    engine.set_online(True)
    engine.pause()
    assert (await engine.process_queue()).synced == 0
    assert (await engine.status()).state == "pending"

    engine.resume()
    assert (await engine.process_queue()).synced == 1


async def test_no_principal_means_no_work(engine, queue):
    """A signed-out queue is never drained."""
    queue.clear_active_principal()
    result = await engine.process_queue()
    assert result.to_json_dict() == {"synced": 0, "requeued": 0, "failed": 0, "skipped": 0}


async def test_remote_winner_written_locally(engine, synced, queue, remote):
    """When the remote copy is newer it replaces the local one without requeueing."""
    player = await synced.create_player({"name": "Aino"})
    remote.records[("player", player.id)] = RemoteRecord(
        entity_type="player",
        entity_id=player.id,
        principal_id="user-1",
        data={**player.to_json_dict(), "name": "Aino (remote)"},
        updated_at=now_ms() + 60_000,
    )

    result = await engine.process_queue()

    assert result.synced == 1
    assert (await synced.get_players())[0].name == "Aino (remote)"
    assert await queue.pending() == []


async def test_resync_marker_expands(engine, store, queue, remote):
    """A resync marker is replaced by one operation per entity."""
    player = await store.create_player({"name": "Aino"})
    await queue.enqueue(SyncOperationInput(
        entity_type="resync", entity_id="all", operation="update", timestamp=now_ms(),
    ))

    first = await engine.process_queue()
    assert first.synced == 1
    assert {op.entity_type for op in await queue.pending()} == {"player", "settings"}

    second = await engine.process_queue()
    assert second.synced == 2
    assert ("player", player.id) in remote.records
    assert ("settings", "app") in remote.records


async def test_operation_timeout_is_transient(queue, synced):
    """A hung remote call is abandoned and retried later."""
    engine = SyncEngine(queue, SlowRemoteStore(), synced.apply_remote, operation_timeout=0.05)
    await synced.create_player({"name": "Aino"})

    result = await engine.process_queue()

    assert result.requeued == 1
    [op] = await queue.pending()
    assert "timed out" in op.last_error


async def test_principal_switch_interrupts_drain(queue, synced, remote):
    """Remaining batches are skipped once the active principal changes."""
    engine = SyncEngine(queue, remote, synced.apply_remote, batch_size=1)
    await synced.create_player({"name": "Aino"})
    await synced.create_player({"name": "Eero"})

    original_fetch = remote.fetch

    async def switching_fetch(entity_type, entity_id):
        queue.set_active_principal("user-2")
        return await original_fetch(entity_type, entity_id)

    remote.fetch = switching_fetch
    result = await engine.process_queue()

    assert result.skipped == 1
    queue.set_active_principal("user-1")
    assert len(await queue.pending()) == 1


async def test_background_loop(engine, synced, queue, remote):
    """The started engine drains the queue on request and stops cleanly."""
    synced.on_enqueue = engine.request_sync
    engine.start()
    assert engine.running

    player = await synced.create_player({"name": "Aino"})
    for _ in range(100):
        if not await queue.pending():
            break
        await asyncio.sleep(0.02)

    await engine.stop()
    assert not engine.running
    assert ("player", player.id) in remote.records
