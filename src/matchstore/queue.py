"""
Durable sync operation queue.

One SQLite database holds the pending mutations of every principal on the
device. Each row is tagged with its owning principal; reads and mutations
only ever see rows of the active principal. Operations of inactive
principals stay queued, dormant and invisible.
"""
import json
import logging
import os
import sqlite3
import time
import uuid
from typing import Optional

from matchstore.config import StoreConfig
from matchstore.errors import NoActivePrincipal, NotFound, StorageError
from matchstore.identifiers import validate_principal_id
from matchstore.models import SyncOperation, SyncOperationInput, SyncQueueStats

logger = logging.getLogger("matchstore.queue")


def now_ms() -> int:
    return int(time.time() * 1000)


def merged_operation(existing: str, new: str) -> Optional[str]:
    """
    Operation type after coalescing a new mutation into a pending one.

    Returns None when both cancel out (create followed by delete: the
    entity never reached the remote store).
    """
    if existing == "create":
        return None if new == "delete" else "create"
    if existing == "update":
        return "delete" if new == "delete" else "update"
    return new


class SyncOperationQueue:
    """
    FIFO queue of sync operations, tagged and filtered by principal.

    Retry bookkeeping mirrors delivery tracking: retry_count and
    last_attempt drive an exponential backoff window; reaching max_retries
    moves the operation to the terminal 'failed' status.
    """

    def __init__(self, db_path=None, max_retries=None, backoff_base=None, backoff_max=None):
        """
        Args:
            db_path: Path to the queue SQLite database
            max_retries: Retry ceiling stamped onto new operations
            backoff_base: Initial retry delay in seconds
            backoff_max: Maximum retry delay in seconds
        """
        self.db_path = str(db_path or StoreConfig.QUEUE_DB_PATH)
        self.max_retries = max_retries or StoreConfig.SYNC_MAX_RETRIES
        self.backoff_base = StoreConfig.SYNC_BACKOFF_BASE if backoff_base is None else backoff_base
        self.backoff_max = StoreConfig.SYNC_BACKOFF_MAX if backoff_max is None else backoff_max
        self._active_principal: Optional[str] = None
        self._ensure_schema()

    def _get_db(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
            conn.row_factory = sqlite3.Row
            return conn
        except sqlite3.Error as e:
            logger.error(f"Queue database connection failed: {e}")
            raise StorageError(f"Could not open queue database {self.db_path}", e)

    def _ensure_schema(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        db = self._get_db()
        try:
            db.execute("""
                CREATE TABLE IF NOT EXISTS sync_operations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    principal_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT,
                    timestamp INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL,
                    last_error TEXT,
                    last_attempt INTEGER,
                    created_at INTEGER NOT NULL
                )
            """)
            db.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_operations_principal
                ON sync_operations (principal_id, status, seq)
            """)
            db.commit()
        finally:
            db.close()

    # ---------- Active principal ----------

    @property
    def active_principal(self) -> Optional[str]:
        return self._active_principal

    def set_active_principal(self, principal_id: str):
        """Make a principal's operations visible. Does not touch any data."""
        self._active_principal = validate_principal_id(principal_id)
        logger.debug(f"Queue active principal set to {self._active_principal}")

    def clear_active_principal(self):
        self._active_principal = None
        logger.debug("Queue active principal cleared")

    def _require_principal(self) -> str:
        if self._active_principal is None:
            raise NoActivePrincipal("No active principal for the sync queue")
        return self._active_principal

    # ---------- Helpers ----------

    @staticmethod
    def _row_to_operation(row) -> SyncOperation:
        return SyncOperation(
            id=row["id"],
            principal_id=row["principal_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=row["operation"],
            payload=json.loads(row["payload"]) if row["payload"] is not None else None,
            timestamp=row["timestamp"],
            status=row["status"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            last_error=row["last_error"],
            last_attempt=row["last_attempt"],
            created_at=row["created_at"],
        )

    def _calculate_backoff(self, retry_count):
        """Backoff window in seconds before retry number retry_count + 1."""
        backoff = self.backoff_base * (2 ** max(retry_count - 1, 0))
        return min(backoff, self.backoff_max)

    def is_ready(self, op: SyncOperation, now: Optional[int] = None) -> bool:
        if op.status != "pending":
            return False
        if op.last_attempt is None or op.retry_count == 0:
            return True
        now = now_ms() if now is None else now
        return now - op.last_attempt >= self._calculate_backoff(op.retry_count) * 1000

    def _select(self, where: str, params: tuple) -> list[SyncOperation]:
        if self._active_principal is None:
            return []
        db = self._get_db()
        try:
            rows = db.execute(
                f"SELECT * FROM sync_operations WHERE principal_id = ? AND {where} ORDER BY seq ASC",
                (self._active_principal, *params),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError("Failed to read sync queue", e)
        finally:
            db.close()
        return [self._row_to_operation(row) for row in rows]

    def _update(self, op_id: str, **fields) -> int:
        principal_id = self._require_principal()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        db = self._get_db()
        try:
            cursor = db.execute(
                f"UPDATE sync_operations SET {assignments} WHERE id = ? AND principal_id = ?",
                (*fields.values(), op_id, principal_id),
            )
            db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update operation {op_id}", e)
        finally:
            db.close()
        return cursor.rowcount

    # ---------- Enqueue ----------

    async def enqueue(self, op) -> Optional[str]:
        """
        Queue a mutation for the active principal.

        A pending operation for the same entity is coalesced with the new one
        (create+update → create, update+delete → delete, create+delete →
        both removed). Returns the operation id, or None when the pair
        cancelled out.

        Raises:
            NoActivePrincipal: No principal is signed in
        """
        principal_id = self._require_principal()
        if not isinstance(op, SyncOperationInput):
            op = SyncOperationInput.model_validate(op)

        db = self._get_db()
        try:
            with db:
                existing = db.execute("""
                    SELECT * FROM sync_operations
                    WHERE principal_id = ? AND entity_type = ? AND entity_id = ? AND status = 'pending'
                    ORDER BY seq ASC LIMIT 1
                """, (principal_id, op.entity_type, op.entity_id)).fetchone()

                operation = op.operation
                op_id = f"op_{uuid.uuid4().hex}"
                created_at = now_ms()
                if existing is not None:
                    merged = merged_operation(existing["operation"], op.operation)
                    db.execute("DELETE FROM sync_operations WHERE id = ?", (existing["id"],))
                    if merged is None:
                        logger.debug(f"create + delete on {op.entity_type}/{op.entity_id} cancelled out")
                        return None
                    logger.debug(
                        f"Coalesced {existing['operation']} + {op.operation} → {merged} "
                        f"on {op.entity_type}/{op.entity_id}"
                    )
                    operation = merged
                    op_id = existing["id"]
                    created_at = existing["created_at"]

                db.execute("""
                    INSERT INTO sync_operations
                    (id, principal_id, entity_type, entity_id, operation, payload, timestamp,
                     status, retry_count, max_retries, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                """, (
                    op_id, principal_id, op.entity_type, op.entity_id, operation,
                    json.dumps(op.payload) if op.payload is not None else None,
                    op.timestamp, self.max_retries, created_at,
                ))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to enqueue {op.operation} for {op.entity_type}/{op.entity_id}", e)
        finally:
            db.close()

        logger.debug(f"Enqueued {operation} {op.entity_type}/{op.entity_id} as {op_id}")
        return op_id

    # ---------- Reads (active principal only) ----------

    async def pending(self) -> list[SyncOperation]:
        """All pending operations of the active principal, oldest first."""
        return self._select("status = 'pending'", ())

    async def ready(self, limit: Optional[int] = None, now: Optional[int] = None) -> list[SyncOperation]:
        """Pending operations whose backoff window has elapsed."""
        now = now_ms() if now is None else now
        ready = [op for op in await self.pending() if self.is_ready(op, now)]
        return ready[:limit] if limit is not None else ready

    async def peek(self) -> Optional[SyncOperation]:
        ops = await self.pending()
        return ops[0] if ops else None

    async def get_by_id(self, op_id: str) -> Optional[SyncOperation]:
        ops = self._select("id = ?", (op_id,))
        return ops[0] if ops else None

    async def failed(self) -> list[SyncOperation]:
        return self._select("status = 'failed'", ())

    async def stats(self) -> SyncQueueStats:
        if self._active_principal is None:
            return SyncQueueStats()
        db = self._get_db()
        try:
            rows = db.execute("""
                SELECT status, COUNT(*) AS count, MIN(timestamp) AS oldest
                FROM sync_operations WHERE principal_id = ? GROUP BY status
            """, (self._active_principal,)).fetchall()
        except sqlite3.Error as e:
            raise StorageError("Failed to read sync queue stats", e)
        finally:
            db.close()

        stats = SyncQueueStats()
        for row in rows:
            setattr(stats, row["status"], row["count"])
            stats.total += row["count"]
            if row["oldest"] is not None and (stats.oldest_timestamp is None or row["oldest"] < stats.oldest_timestamp):
                stats.oldest_timestamp = row["oldest"]
        return stats

    # ---------- Status transitions ----------

    async def mark_syncing(self, op_id: str):
        if not self._update(op_id, status="syncing", last_attempt=now_ms()):
            raise NotFound(f"Operation {op_id} not found in queue")

    async def mark_completed(self, op_id: str):
        """Remove a successfully synced operation."""
        principal_id = self._require_principal()
        db = self._get_db()
        try:
            db.execute("DELETE FROM sync_operations WHERE id = ? AND principal_id = ?", (op_id, principal_id))
            db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to complete operation {op_id}", e)
        finally:
            db.close()
        logger.debug(f"Operation {op_id} completed and removed")

    async def mark_failed(self, op_id: str, error: str) -> SyncOperation:
        """
        Record a failed attempt.

        Increments retry_count; the operation returns to 'pending' or becomes
        'failed' once retry_count reaches max_retries.
        """
        op = await self.get_by_id(op_id)
        if op is None:
            raise NotFound(f"Operation {op_id} not found in queue - cannot mark as failed")

        retry_count = op.retry_count + 1
        status = "failed" if retry_count >= op.max_retries else "pending"
        self._update(op_id, status=status, retry_count=retry_count, last_error=error, last_attempt=now_ms())

        if status == "failed":
            logger.warning(
                f"Operation {op_id} ({op.entity_type}/{op.entity_id}) exceeded max retries "
                f"({op.max_retries}), giving up. Last error: {error}"
            )
        else:
            logger.debug(
                f"Operation {op_id} failed (attempt {retry_count}/{op.max_retries}). "
                f"Next retry in {self._calculate_backoff(retry_count)}s. Error: {error}"
            )
        return op.model_copy(update={"status": status, "retry_count": retry_count, "last_error": error})

    async def mark_permanently_failed(self, op_id: str, error: str):
        if not self._update(op_id, status="failed", last_error=error, last_attempt=now_ms()):
            raise NotFound(f"Operation {op_id} not found in queue")
        logger.error(f"Operation {op_id} failed permanently: {error}")

    async def reset_to_pending(self, op_id: str, increment_retry: bool = False) -> bool:
        """Put an operation back to 'pending' (auth failures, aborted attempts)."""
        op = await self.get_by_id(op_id)
        if op is None:
            return False
        retry_count = op.retry_count + 1 if increment_retry else op.retry_count
        status = "failed" if retry_count >= op.max_retries else "pending"
        self._update(op_id, status=status, retry_count=retry_count)
        return True

    async def reset_stale_syncing(self) -> int:
        """
        Recover operations left in 'syncing' by an interrupted run.

        The interrupted attempt counts against the retry ceiling.
        """
        stale = self._select("status = 'syncing'", ())
        for op in stale:
            retry_count = op.retry_count + 1
            status = "failed" if retry_count >= op.max_retries else "pending"
            last_error = f"{op.last_error} (reset from stale syncing)" if op.last_error else "Reset from stale syncing state"
            self._update(op.id, status=status, retry_count=retry_count, last_error=last_error, last_attempt=now_ms())
        if stale:
            logger.info(f"Reset {len(stale)} stale syncing operation(s)")
        return len(stale)

    async def retry_failed(self) -> int:
        """Manual retry: failed operations go back to pending with a fresh retry budget."""
        principal_id = self._require_principal()
        db = self._get_db()
        try:
            cursor = db.execute("""
                UPDATE sync_operations
                SET status = 'pending', retry_count = 0, last_attempt = NULL
                WHERE principal_id = ? AND status = 'failed'
            """, (principal_id,))
            db.commit()
        except sqlite3.Error as e:
            raise StorageError("Failed to retry failed operations", e)
        finally:
            db.close()
        if cursor.rowcount:
            logger.info(f"Re-queued {cursor.rowcount} failed operation(s)")
        return cursor.rowcount

    async def discard_failed(self) -> int:
        return self._delete_where("status = 'failed'")

    async def purge_active_principal(self) -> int:
        """Drop every queued operation of the active principal (abandon unsynced changes)."""
        removed = self._delete_where("1 = 1")
        logger.info(f"Purged {removed} queued operation(s) for {self._active_principal}")
        return removed

    def _delete_where(self, where: str) -> int:
        principal_id = self._require_principal()
        db = self._get_db()
        try:
            cursor = db.execute(
                f"DELETE FROM sync_operations WHERE principal_id = ? AND {where}",
                (principal_id,),
            )
            db.commit()
        except sqlite3.Error as e:
            raise StorageError("Failed to delete queued operations", e)
        finally:
            db.close()
        return cursor.rowcount
