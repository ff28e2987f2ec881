"""Tests for the partitioned key/value store."""
import asyncio
import os
import sqlite3

import pytest

from matchstore.errors import InvalidArgument, NamespaceCollision, StorageError, StorageUnavailable
from matchstore.kvstore import PartitionedKeyValueStore, partition_db_name


async def test_open_is_idempotent(kv):
    """Opening the active principal again returns the same handle."""
    first = await kv.open("alice")
    second = await kv.open("alice")
    assert first is second
    assert kv.active is first


async def test_open_rejects_invalid_principal(kv):
    """An empty principal never opens a partition."""
    with pytest.raises(InvalidArgument):
        await kv.open("  ")


async def test_opening_another_principal_closes_previous(kv):
    """Only one handle is open at a time."""
    alice = await kv.open("alice")
    bob = await kv.open("bob")

    assert alice.closed
    assert not bob.closed
    assert kv.active is bob
    with pytest.raises(StorageError):
        await kv.get(alice, "alice_x")


async def test_partitions_are_separate_files(kv):
    """Each principal gets its own database file."""
    alice = await kv.open("alice")
    await kv.set(alice, "alice_masterRoster", "[]")

    bob = await kv.open("bob")
    assert await kv.get(bob, "alice_masterRoster") is None
    assert os.path.basename(bob.path) == partition_db_name("bob") == "data_bob.db"
    assert os.path.exists(kv.path_for("alice"))


async def test_get_set_remove(kv):
    """Basic operations on one handle."""
    handle = await kv.open("alice")

    assert await kv.get(handle, "k") is None
    await kv.set(handle, "k", "v1")
    await kv.set(handle, "k", "v2")
    assert await kv.get(handle, "k") == "v2"
    assert await kv.remove(handle, "k") is True
    assert await kv.remove(handle, "k") is False


async def test_keys_treat_underscore_literally(kv):
    """Prefix matching does not treat '_' as a wildcard."""
    handle = await kv.open("alice")
    await kv.set(handle, "p_a", "1")
    await kv.set(handle, "pxa", "2")

    assert await kv.keys(handle, "p_") == ["p_a"]
    assert await kv.items(handle, "p_") == {"p_a": "1"}


async def test_clear_prefix(kv):
    """clear_prefix only touches keys under the prefix."""
    handle = await kv.open("alice")
    await kv.set(handle, "a_1", "x")
    await kv.set(handle, "a_2", "y")
    await kv.set(handle, "b_1", "z")

    assert await kv.clear_prefix(handle, "a_") == 2
    assert await kv.keys(handle) == ["b_1"]


async def test_clear_prefix_refuses_empty_prefix(kv):
    """Clearing everything by accident is not possible."""
    handle = await kv.open("alice")
    with pytest.raises(StorageError):
        await kv.clear_prefix(handle, "")


async def test_size_of(kv):
    """Size accounts for keys and values under the prefix."""
    handle = await kv.open("alice")
    await kv.set(handle, "a_k", "12345")
    assert await kv.size_of(handle, "a_") == len("a_k") + 5
    assert await kv.size_of(handle, "b_") == 0


async def test_swap_prefix_replaces_target(kv):
    """Keys under the source replace everything under the target."""
    handle = await kv.open("alice")
    await kv.set(handle, "live_a", "old-a")
    await kv.set(handle, "live_b", "old-b")
    await kv.set(handle, "tmp_a", "new-a")

    moved = await kv.swap_prefix(handle, "tmp_", "live_")

    assert moved == 1
    assert await kv.items(handle) == {"live_a": "new-a"}


async def test_swap_prefix_rejects_overlap(kv):
    """Overlapping prefixes would corrupt the swap."""
    handle = await kv.open("alice")
    with pytest.raises(StorageError):
        await kv.swap_prefix(handle, "live_tmp_", "live_")


async def test_open_gives_up_after_retries(kv, monkeypatch):
    """Persistent open failures surface as StorageUnavailable."""
    calls = []

    def failing_connect(path):
        calls.append(path)
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr(kv, "_connect", failing_connect)

    with pytest.raises(StorageUnavailable):
        await kv.open("alice")
    assert len(calls) == kv.max_attempts
    assert kv.active is None


async def test_open_recovers_from_transient_failure(kv, monkeypatch):
    """A failure followed by success still opens the partition."""
    original = kv._connect
    calls = []

    def flaky_connect(path):
        calls.append(path)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return original(path)

    monkeypatch.setattr(kv, "_connect", flaky_connect)

    handle = await kv.open("alice")
    assert not handle.closed
    assert len(calls) == 2


def test_backoff_is_bounded(tmp_path):
    """Open backoff doubles per attempt up to the ceiling."""
    kv = PartitionedKeyValueStore(tmp_path, max_attempts=5, initial_backoff=0.1, max_backoff=0.3)
    assert kv._calculate_backoff(0) == pytest.approx(0.1)
    assert kv._calculate_backoff(1) == pytest.approx(0.2)
    assert kv._calculate_backoff(4) == pytest.approx(0.3)


async def test_close_is_idempotent(kv):
    """Closing twice is harmless."""
    handle = await kv.open("alice")
    await kv.close(handle)
    await kv.close(handle)
    assert handle.closed
    assert kv.active is None


async def test_concurrent_open_shares_one_handle(kv, monkeypatch):
    """Racing opens for the same principal create the partition once."""
    original = kv._connect
    calls = []

    def counting_connect(path):
        calls.append(path)
        return original(path)

    monkeypatch.setattr(kv, "_connect", counting_connect)

    first, second = await asyncio.gather(kv.open("alice"), kv.open("alice"))

    assert first is second
    assert len(calls) == 1


async def test_prefix_collision_is_refused(kv):
    """A principal whose prefix matches another's cannot open that partition."""
    owner = await kv.open("abcdefghijkl-one")
    await kv.set(owner, "abcdefghijkl_masterRoster", '[{"id": "p1", "name": "Aino"}]')

    with pytest.raises(NamespaceCollision) as exc_info:
        await kv.open("abcdefghijkl-two")

    assert exc_info.value.owner == "abcdefghijkl-one"
    assert kv.active is None

    owner = await kv.open("abcdefghijkl-one")
    assert await kv.get(owner, "abcdefghijkl_masterRoster") is not None
