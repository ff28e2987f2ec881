"""
Last-write-wins conflict resolution.

Whole-record granularity: the side with the later timestamp overwrites the
other. Ties go to the local side.
"""
import logging
from typing import Any, Awaitable, Callable

from matchstore.errors import InvalidArgument, SyncConflict
from matchstore.models import ConflictResolution, SyncOperation
from matchstore.remote import RemoteStore

logger = logging.getLogger("matchstore.conflict")

LocalWriter = Callable[[str, str, Any], Awaitable[None]]


class ConflictResolver:
    """Applies one queued operation to the remote store under LWW."""

    def __init__(self, remote: RemoteStore, write_local: LocalWriter):
        """
        Args:
            remote: Remote store client
            write_local: Coroutine writing a remote winner into the local store
        """
        self.remote = remote
        self.write_local = write_local

    async def resolve(self, op: SyncOperation) -> ConflictResolution:
        if not op.entity_id or not op.entity_id.strip():
            raise InvalidArgument("Operation entity_id is required")
        if op.timestamp < 0:
            raise InvalidArgument("Operation timestamp must be a positive number")

        record = await self.remote.fetch(op.entity_type, op.entity_id)

        if record is None:
            if op.operation == "delete":
                logger.debug(f"{op.entity_type}/{op.entity_id} already absent remotely")
                return self._resolution(op, "local", None, "skipped")
            await self.remote.upsert(op.entity_type, op.entity_id, op.payload, op.timestamp)
            logger.debug(f"Pushed {op.entity_type}/{op.entity_id} (no remote record)")
            return self._resolution(op, "local", None, "pushed")

        if op.timestamp >= record.updated_at:
            if op.operation == "delete":
                await self.remote.delete(op.entity_type, op.entity_id)
                logger.info(f"Local delete wins for {op.entity_type}/{op.entity_id}")
                return self._resolution(op, "local", record.updated_at, "deleted")
            await self.remote.upsert(op.entity_type, op.entity_id, op.payload, op.timestamp)
            if op.timestamp > record.updated_at:
                logger.debug(f"Local wins for {op.entity_type}/{op.entity_id}")
            return self._resolution(op, "local", record.updated_at, "pushed")

        conflict = SyncConflict(op.entity_type, op.entity_id, op.timestamp, record.updated_at)
        logger.info(f"Remote wins: {conflict}")
        await self.write_local(op.entity_type, op.entity_id, record.data)
        return self._resolution(op, "remote", record.updated_at, "pulled")

    @staticmethod
    def _resolution(op: SyncOperation, winner, remote_timestamp, action) -> ConflictResolution:
        return ConflictResolution(
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            winner=winner,
            local_timestamp=op.timestamp,
            remote_timestamp=remote_timestamp,
            action_taken=action,
        )
