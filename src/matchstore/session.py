"""
Sign-in / sign-out hand-off between principals.

Sign-in and sign-out are serialized by one asyncio.Lock, so a sign-in
issued while a sign-out is in flight waits for it (including the read-cache
clear) before opening the next partition.
"""
import asyncio
import logging
from typing import Optional, Union

from matchstore.datastore import LocalDataStore
from matchstore.engine import SyncEngine
from matchstore.errors import NotInitialized
from matchstore.identifiers import validate_principal_id
from matchstore.kvstore import PartitionedKeyValueStore
from matchstore.queue import SyncOperationQueue
from matchstore.remote import RemoteStore
from matchstore.synced import SyncedDataStore

logger = logging.getLogger("matchstore.session")


class SessionManager:
    """Owns the active principal's store, queue binding and sync engine."""

    def __init__(self, kv: PartitionedKeyValueStore, queue: SyncOperationQueue, engine_options: Optional[dict] = None):
        self.kv = kv
        self.queue = queue
        self.engine_options = engine_options or {}
        self.local: Optional[LocalDataStore] = None
        self.store: Optional[Union[LocalDataStore, SyncedDataStore]] = None
        self.engine: Optional[SyncEngine] = None
        self._lock = asyncio.Lock()

    @property
    def principal_id(self) -> Optional[str]:
        return self.local.principal_id if self.local is not None else None

    async def sign_in(self, principal_id: str, sync_enabled: bool = False, remote: Optional[RemoteStore] = None):
        """
        Make principal_id the active principal and return its store.

        Signing in as the already active principal with the same sync
        setting returns the existing store.
        """
        principal_id = validate_principal_id(principal_id)
        async with self._lock:
            if self.local is not None:
                same_mode = (self.engine is not None) == sync_enabled
                if self.local.principal_id == principal_id and same_mode:
                    if remote is not None and self.engine is not None:
                        self.engine.set_remote(remote)
                    return self.store
                await self._sign_out()

            local = LocalDataStore(self.kv, principal_id)
            await local.initialize()
            self.queue.set_active_principal(principal_id)
            self.local = local

            if sync_enabled:
                synced = SyncedDataStore(local, self.queue)
                engine = SyncEngine(
                    self.queue,
                    remote,
                    synced.apply_remote,
                    resync_handler=synced.expand_resync,
                    **self.engine_options,
                )
                synced.on_enqueue = engine.request_sync
                engine.start()
                self.engine = engine
                self.store = synced
            else:
                self.store = local

            logger.info(f"Signed in as {principal_id} (sync {'enabled' if sync_enabled else 'disabled'})")
            return self.store

    async def sign_out(self):
        async with self._lock:
            await self._sign_out()

    async def _sign_out(self):
        local = self.local
        if local is None:
            return
        if self.engine is not None:
            await self.engine.stop()
            self.engine = None
        local.clear_cache()
        self.queue.clear_active_principal()
        await local.close()
        self.local = None
        self.store = None
        logger.info(f"Signed out {local.principal_id}")

    def set_remote(self, remote: Optional[RemoteStore]):
        """Hand a (re-)authenticated remote client to the running engine."""
        if self.engine is not None:
            self.engine.set_remote(remote)

    async def delete_local_data(self, purge_queue: bool = True) -> int:
        """Clear the active principal's partition, and optionally its queued operations."""
        async with self._lock:
            if self.local is None:
                raise NotInitialized("No principal is signed in")
            removed = await self.local.clear_all_user_data()
            if purge_queue:
                await self.queue.purge_active_principal()
            return removed
