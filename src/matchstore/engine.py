"""
Sync engine: drains the active principal's queue against the remote store.

Per operation: pending → syncing → removed on success, back to pending on
transient or authorization failures, failed once the retry ceiling is
reached or the remote store rejects it permanently.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from matchstore.config import StoreConfig
from matchstore.conflict import ConflictResolver, LocalWriter
from matchstore.errors import AuthExpired, InvalidArgument, PermanentError, StoreError, TransientError
from matchstore.models import SyncOperation, SyncRunResult, SyncStatusInfo
from matchstore.queue import SyncOperationQueue, now_ms
from matchstore.remote import RemoteStore

logger = logging.getLogger("matchstore.engine")

FailureListener = Callable[[SyncOperation, Exception, bool], None]
ResyncHandler = Callable[[], Awaitable[int]]


class SyncEngine:
    """
    Background worker applying queued operations under last-write-wins.

    The engine never reads operations of an inactive principal and
    re-checks every operation's owner before touching the remote store.
    """

    def __init__(
        self,
        queue: SyncOperationQueue,
        remote: Optional[RemoteStore],
        write_local: LocalWriter,
        resync_handler: Optional[ResyncHandler] = None,
        batch_size: Optional[int] = None,
        interval: Optional[float] = None,
        operation_timeout: Optional[float] = None,
    ):
        """
        Args:
            queue: Durable operation queue
            remote: Remote store client (None until signed in remotely)
            write_local: Coroutine writing remote winners into the local store
            resync_handler: Coroutine expanding a resync marker into operations
            batch_size: Operations processed between state re-checks
            interval: Seconds between background drains
            operation_timeout: Per-operation time limit in seconds
        """
        self.queue = queue
        self.remote = remote
        self.write_local = write_local
        self.resync_handler = resync_handler
        self.batch_size = batch_size or StoreConfig.SYNC_BATCH_SIZE
        self.interval = StoreConfig.SYNC_INTERVAL_SECONDS if interval is None else interval
        self.operation_timeout = operation_timeout or StoreConfig.SYNC_OPERATION_TIMEOUT

        self.is_online = True
        self.is_paused = False
        self.is_syncing = False
        self.last_synced_at: Optional[int] = None
        self._failure_listeners: list[FailureListener] = []
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._auth_lost = False

    # ---------- Configuration ----------

    def set_remote(self, remote: Optional[RemoteStore]):
        self.remote = remote
        if remote is not None:
            self.request_sync()

    def add_failure_listener(self, listener: FailureListener):
        self._failure_listeners.append(listener)

    def remove_failure_listener(self, listener: FailureListener):
        if listener in self._failure_listeners:
            self._failure_listeners.remove(listener)

    def set_online(self, online: bool):
        was_online = self.is_online
        self.is_online = online
        if online and not was_online:
            logger.info("Back online, scheduling sync")
            self.request_sync()
        elif not online and was_online:
            logger.info("Offline, sync suspended")

    def pause(self):
        self.is_paused = True
        logger.info("Sync paused")

    def resume(self):
        self.is_paused = False
        logger.info("Sync resumed")
        self.request_sync()

    def request_sync(self):
        """Wake the background loop (no-op when it is not running)."""
        self._wake.set()

    # ---------- Status ----------

    async def status(self) -> SyncStatusInfo:
        stats = await self.queue.stats()
        pending = stats.pending + stats.syncing
        if not self.is_online:
            state = "offline"
        elif self.is_syncing:
            state = "syncing"
        elif stats.failed:
            state = "error"
        elif pending:
            state = "pending"
        else:
            state = "synced"
        return SyncStatusInfo(
            state=state,
            pending_count=pending,
            failed_count=stats.failed,
            last_synced_at=self.last_synced_at,
            is_online=self.is_online,
        )

    # ---------- Drain ----------

    def _notify_failure(self, op: SyncOperation, error: Exception, will_retry: bool):
        for listener in self._failure_listeners:
            try:
                listener(op, error, will_retry)
            except Exception as e:
                logger.warning(f"Sync failure listener raised: {e}")

    async def process_queue(self) -> SyncRunResult:
        """
        Process every operation that is ready now, in batches.

        Returns counts of synced, requeued, failed and skipped operations.
        """
        result = SyncRunResult()
        if self.is_syncing:
            logger.debug("Sync already in progress")
            return result
        if not self.is_online or self.is_paused:
            logger.debug("Sync skipped (offline or paused)")
            return result

        principal_id = self.queue.active_principal
        if principal_id is None:
            return result

        self.is_syncing = True
        try:
            ops = await self.queue.ready()
            if ops:
                logger.info(f"Processing {len(ops)} sync operation(s)...")
            for start in range(0, len(ops), self.batch_size):
                batch = ops[start:start + self.batch_size]
                if self.queue.active_principal != principal_id or not self.is_online or self.is_paused:
                    result.skipped += len(ops) - start
                    logger.info("Sync interrupted, remaining operations left queued")
                    break
                auth_lost = False
                for index, op in enumerate(batch):
                    outcome = await self._process_one(op)
                    setattr(result, outcome, getattr(result, outcome) + 1)
                    if outcome == "requeued" and self._auth_lost:
                        result.skipped += len(ops) - start - index - 1
                        auth_lost = True
                        break
                if auth_lost:
                    logger.warning("Remote authorization lost, sync stopped until re-authentication")
                    break
        finally:
            self.is_syncing = False

        if result.synced and not result.failed and not result.requeued:
            self.last_synced_at = now_ms()
        if ops:
            logger.info(
                f"Sync run done: {result.synced} synced, {result.requeued} requeued, "
                f"{result.failed} failed, {result.skipped} skipped"
            )
        return result

    async def _process_one(self, op: SyncOperation) -> str:
        self._auth_lost = False
        active = self.queue.active_principal
        if op.principal_id != active:
            logger.warning(f"Skipping operation {op.id}: owned by another principal")
            return "skipped"

        remote = self.remote
        if remote is None or remote.principal_id != op.principal_id:
            logger.warning(f"Remote session does not match principal of operation {op.id}, leaving it pending")
            self._auth_lost = True
            return "requeued"

        await self.queue.mark_syncing(op.id)
        try:
            if op.entity_type == "resync":
                await self._run_resync(op)
            else:
                resolver = ConflictResolver(remote, self.write_local)
                resolution = await asyncio.wait_for(resolver.resolve(op), timeout=self.operation_timeout)
                logger.debug(f"{op.entity_type}/{op.entity_id}: {resolution.winner} wins ({resolution.action_taken})")

        except AuthExpired as e:
            await self.queue.reset_to_pending(op.id)
            self._auth_lost = True
            logger.warning(f"Authorization failed for operation {op.id}: {e}")
            self._notify_failure(op, e, True)
            return "requeued"

        except (PermanentError, InvalidArgument) as e:
            # A malformed operation can never succeed
            await self.queue.mark_permanently_failed(op.id, str(e))
            logger.error(f"✗ Permanent error for {op.entity_type}/{op.entity_id}: {e}. Will not retry.")
            self._notify_failure(op, e, False)
            return "failed"

        except asyncio.TimeoutError:
            error = TransientError(f"Operation timed out after {self.operation_timeout}s")
            return await self._retry_later(op, error)

        except TransientError as e:
            return await self._retry_later(op, e)

        except Exception as e:
            logger.warning(f"Unexpected error for operation {op.id}: {type(e).__name__}: {e}")
            return await self._retry_later(op, e)

        await self.queue.mark_completed(op.id)
        if op.retry_count > 0:
            logger.info(f"✓ Synced {op.entity_type}/{op.entity_id} after {op.retry_count} retries")
        else:
            logger.debug(f"✓ Synced {op.entity_type}/{op.entity_id}")
        return "synced"

    async def _retry_later(self, op: SyncOperation, error: Exception) -> str:
        message = str(error) if isinstance(error, StoreError) else f"{type(error).__name__}: {error}"
        updated = await self.queue.mark_failed(op.id, message)
        will_retry = updated.status == "pending"
        if will_retry:
            logger.warning(
                f"✗ Transient error for {op.entity_type}/{op.entity_id}: {message}. "
                f"Will retry (attempt {updated.retry_count}/{updated.max_retries})"
            )
        self._notify_failure(updated, error, will_retry)
        return "requeued" if will_retry else "failed"

    async def _run_resync(self, op: SyncOperation):
        if self.resync_handler is None:
            logger.warning(f"No resync handler configured, dropping marker {op.id}")
            return
        count = await self.resync_handler()
        logger.info(f"Resync marker expanded into {count} operation(s)")
        self.request_sync()

    # ---------- Background loop ----------

    def start(self):
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Sync engine started (interval={self.interval}s, batch={self.batch_size})")

    async def stop(self):
        if self._task is None:
            return
        self._stopping = True
        self._wake.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Sync engine stopped.")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        try:
            await self.queue.reset_stale_syncing()
        except StoreError as e:
            logger.error(f"Could not reset stale operations: {e}")

        while not self._stopping:
            try:
                await self.process_queue()
            except StoreError as e:
                logger.error(f"Sync run failed: {e}")
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
