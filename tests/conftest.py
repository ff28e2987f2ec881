"""Shared fixtures: temporary partitions, queue and an in-memory remote store."""
from typing import Any, Optional

import pytest

from matchstore.datastore import LocalDataStore
from matchstore.kvstore import PartitionedKeyValueStore
from matchstore.models import RemoteRecord
from matchstore.queue import SyncOperationQueue
from matchstore.remote import RemoteStore


class FakeRemoteStore(RemoteStore):
    """In-memory remote store. Set fail_with to make every call raise."""

    def __init__(self, principal_id: Optional[str] = "user-1"):
        self._principal_id = principal_id
        self.records: dict[tuple[str, str], RemoteRecord] = {}
        self.fail_with: Optional[Exception] = None
        self.calls: list[tuple] = []

    @property
    def principal_id(self) -> Optional[str]:
        return self._principal_id

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def fetch(self, entity_type: str, entity_id: str) -> Optional[RemoteRecord]:
        self.calls.append(("fetch", entity_type, entity_id))
        self._maybe_fail()
        return self.records.get((entity_type, entity_id))

    async def upsert(self, entity_type: str, entity_id: str, data: Any, updated_at: int) -> RemoteRecord:
        self.calls.append(("upsert", entity_type, entity_id))
        self._maybe_fail()
        record = RemoteRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            principal_id=self._principal_id,
            data=data,
            updated_at=updated_at,
        )
        self.records[(entity_type, entity_id)] = record
        return record

    async def delete(self, entity_type: str, entity_id: str):
        self.calls.append(("delete", entity_type, entity_id))
        self._maybe_fail()
        self.records.pop((entity_type, entity_id), None)


@pytest.fixture
def kv(tmp_path):
    """Key/value store rooted in a temporary directory, no open backoff."""
    return PartitionedKeyValueStore(tmp_path / "data", max_attempts=2, initial_backoff=0, max_backoff=0)


@pytest.fixture
async def store(kv):
    """Initialized LocalDataStore for principal user-1."""
    local = LocalDataStore(kv, "user-1")
    await local.initialize()
    yield local
    await local.close()


@pytest.fixture
def queue(tmp_path):
    """Queue with a small retry ceiling and no backoff delay."""
    return SyncOperationQueue(tmp_path / "sync_queue.db", max_retries=3, backoff_base=0, backoff_max=0)


@pytest.fixture
def remote():
    return FakeRemoteStore("user-1")
