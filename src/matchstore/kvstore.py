"""
Partitioned key/value storage.

One SQLite database per principal, named from the principal's namespace
prefix (data_{prefix}.db). Only one handle is open per process: opening a
different principal closes the current handle first. Each partition file
records the principal that created it and refuses to open for any other.
"""
import asyncio
import logging
import os
import sqlite3
import time
from typing import Optional

from matchstore.config import StoreConfig
from matchstore.errors import NamespaceCollision, StorageError, StorageUnavailable
from matchstore.identifiers import namespace_prefix, validate_principal_id

logger = logging.getLogger("matchstore.kvstore")


def partition_db_name(principal_id: str) -> str:
    """Physical database file name for a principal's partition."""
    return f"data_{namespace_prefix(principal_id)}.db"


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class KeyValueHandle:
    """An open partition. Owned by PartitionedKeyValueStore."""

    def __init__(self, principal_id: str, path: str, conn: sqlite3.Connection):
        self.principal_id = principal_id
        self.path = path
        self.conn = conn
        self.closed = False

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"<KeyValueHandle {self.principal_id} {self.path} ({state})>"


class PartitionedKeyValueStore:
    """
    Durable async key/value adapter, one physical database per principal.

    Handles:
    - Creation mutex so concurrent open() calls share one handle
    - Bounded exponential backoff on transient open failures
    - Single active handle (explicit hand-off between principals)
    """

    def __init__(self, data_dir, max_attempts=None, initial_backoff=None, max_backoff=None):
        """
        Args:
            data_dir: Directory holding the per-principal databases
            max_attempts: Open attempts before giving up
            initial_backoff: First retry delay in seconds
            max_backoff: Upper bound on the retry delay in seconds
        """
        self.data_dir = str(data_dir)
        self.max_attempts = max_attempts or StoreConfig.OPEN_MAX_ATTEMPTS
        self.initial_backoff = StoreConfig.OPEN_INITIAL_BACKOFF if initial_backoff is None else initial_backoff
        self.max_backoff = StoreConfig.OPEN_MAX_BACKOFF if max_backoff is None else max_backoff
        self._open_lock = asyncio.Lock()
        self._active: Optional[KeyValueHandle] = None

    @property
    def active(self) -> Optional[KeyValueHandle]:
        if self._active is not None and not self._active.closed:
            return self._active
        return None

    def path_for(self, principal_id: str) -> str:
        return os.path.join(self.data_dir, partition_db_name(principal_id))

    def _calculate_backoff(self, attempt):
        backoff = self.initial_backoff * (2 ** attempt)
        return min(backoff, self.max_backoff)

    def _connect(self, path):
        """Open the SQLite file and ensure the kv table exists."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        conn = sqlite3.connect(path, timeout=10.0)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _claim(self, conn: sqlite3.Connection, principal_id: str, path: str):
        """Record the partition's owner on first open; refuse any other principal afterwards."""
        try:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO meta (name, value) VALUES ('principal_id', ?)",
                    (principal_id,),
                )
            owner = conn.execute("SELECT value FROM meta WHERE name = 'principal_id'").fetchone()[0]
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Could not read the owner of {path}", e)
        if owner != principal_id:
            conn.close()
            logger.error(f"Namespace prefix collision: {principal_id} maps onto {owner}'s partition")
            raise NamespaceCollision(principal_id, owner, path)

    async def open(self, principal_id: str) -> KeyValueHandle:
        """
        Open (or return the already-open) handle for a principal.

        Raises:
            InvalidArgument: principal_id missing or malformed
            StorageUnavailable: database could not be opened after retries
            NamespaceCollision: the partition file belongs to another principal
        """
        principal_id = validate_principal_id(principal_id)

        async with self._open_lock:
            current = self.active
            if current is not None and current.principal_id == principal_id:
                return current
            if current is not None:
                logger.info(f"Closing partition for {current.principal_id} before opening {principal_id}")
                self._close_handle(current)

            path = self.path_for(principal_id)
            last_error = None
            for attempt in range(self.max_attempts):
                try:
                    conn = self._connect(path)
                except (sqlite3.Error, OSError) as e:
                    last_error = e
                    if attempt + 1 < self.max_attempts:
                        delay = self._calculate_backoff(attempt)
                        logger.warning(
                            f"Opening {path} failed (attempt {attempt + 1}/{self.max_attempts}): {e}. "
                            f"Retrying in {delay}s"
                        )
                        await asyncio.sleep(delay)
                    continue

                self._claim(conn, principal_id, path)
                handle = KeyValueHandle(principal_id, path, conn)
                self._active = handle
                logger.info(f"Opened partition {os.path.basename(path)}")
                return handle

            logger.error(f"Giving up on {path} after {self.max_attempts} attempts: {last_error}")
            raise StorageUnavailable(f"Could not open partition {path}", last_error)

    def _close_handle(self, handle: KeyValueHandle):
        if handle.closed:
            return
        try:
            handle.conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing {handle.path}: {e}")
        handle.closed = True
        if self._active is handle:
            self._active = None
        logger.debug(f"Closed partition {handle.path}")

    async def close(self, handle: KeyValueHandle):
        """Release the physical resource behind a handle."""
        async with self._open_lock:
            self._close_handle(handle)

    def _conn(self, handle: KeyValueHandle) -> sqlite3.Connection:
        if handle is None or handle.closed:
            raise StorageError(f"Handle is closed: {handle!r}")
        return handle.conn

    # ---------- Basic operations ----------

    async def get(self, handle: KeyValueHandle, key: str) -> Optional[str]:
        conn = self._conn(handle)
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read key {key}", e)
        return row[0] if row else None

    async def set(self, handle: KeyValueHandle, key: str, value: str):
        conn = self._conn(handle)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, int(time.time() * 1000)),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to write key {key}", e)

    async def remove(self, handle: KeyValueHandle, key: str) -> bool:
        conn = self._conn(handle)
        try:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to remove key {key}", e)
        return cursor.rowcount > 0

    # ---------- Namespace operations ----------

    async def keys(self, handle: KeyValueHandle, prefix: str = "") -> list[str]:
        conn = self._conn(handle)
        try:
            rows = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (_escape_like(prefix) + "%",),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys under {prefix!r}", e)
        return [row[0] for row in rows]

    async def items(self, handle: KeyValueHandle, prefix: str = "") -> dict[str, str]:
        conn = self._conn(handle)
        try:
            rows = conn.execute(
                "SELECT key, value FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (_escape_like(prefix) + "%",),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read keys under {prefix!r}", e)
        return {row[0]: row[1] for row in rows}

    async def size_of(self, handle: KeyValueHandle, prefix: str = "") -> int:
        """Approximate bytes stored under a prefix."""
        conn = self._conn(handle)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv WHERE key LIKE ? ESCAPE '\\'",
                (_escape_like(prefix) + "%",),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to measure keys under {prefix!r}", e)
        return int(row[0])

    async def clear_prefix(self, handle: KeyValueHandle, prefix: str) -> int:
        if not prefix:
            raise StorageError("Refusing to clear an empty prefix")
        conn = self._conn(handle)
        try:
            cursor = conn.execute(
                "DELETE FROM kv WHERE key LIKE ? ESCAPE '\\'",
                (_escape_like(prefix) + "%",),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to clear keys under {prefix!r}", e)
        return cursor.rowcount

    async def swap_prefix(self, handle: KeyValueHandle, source_prefix: str, target_prefix: str) -> int:
        """
        Atomically replace every key under target_prefix with the keys under
        source_prefix (renamed into target_prefix).

        Runs in one transaction: either the swap happens or nothing changes.
        Returns the number of keys moved.
        """
        if not source_prefix or not target_prefix:
            raise StorageError("swap_prefix requires non-empty prefixes")
        if source_prefix.startswith(target_prefix) or target_prefix.startswith(source_prefix):
            raise StorageError(f"Prefixes overlap: {source_prefix!r} / {target_prefix!r}")
        conn = self._conn(handle)
        try:
            with conn:
                conn.execute(
                    "DELETE FROM kv WHERE key LIKE ? ESCAPE '\\'",
                    (_escape_like(target_prefix) + "%",),
                )
                cursor = conn.execute(
                    "UPDATE kv SET key = ? || substr(key, ?) WHERE key LIKE ? ESCAPE '\\'",
                    (target_prefix, len(source_prefix) + 1, _escape_like(source_prefix) + "%"),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to swap {source_prefix!r} into {target_prefix!r}", e)
        logger.info(f"Swapped {cursor.rowcount} key(s) from {source_prefix!r} into {target_prefix!r}")
        return cursor.rowcount
