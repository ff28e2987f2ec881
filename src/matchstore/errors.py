"""
Error taxonomy for matchstore.

Storage and identifier errors propagate to the caller. Remote delivery errors
are split into transient and permanent categories so the sync engine can
decide whether to retry.
"""
from typing import Optional


class StoreError(Exception):
    """Base class for all matchstore errors."""
    pass


class InvalidArgument(StoreError):
    """Caller supplied a missing or malformed argument (e.g., empty principal)."""
    pass


class NotInitialized(StoreError):
    """Store method called before initialize()."""
    pass


class NotFound(StoreError):
    """Referenced entity does not exist."""
    pass


class AlreadyExists(StoreError):
    """Composite-uniqueness violation."""

    def __init__(self, entity_type: str, name: str):
        super().__init__(f"{entity_type} '{name}' already exists")
        self.entity_type = entity_type
        self.name = name


class StorageError(StoreError):
    """Underlying durable storage failed. Wraps the original cause."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.cause = cause


class StorageUnavailable(StorageError):
    """Storage could not be opened after exhausting retries."""
    pass


class QuotaExceeded(StoreError):
    """Not enough storage space for the requested operation."""

    def __init__(self, required_bytes: int, available_bytes: int):
        super().__init__(
            f"Storage quota exceeded: need {required_bytes} bytes, "
            f"{available_bytes} bytes available"
        )
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class InvalidFormat(StoreError):
    """Snapshot payload is not a supported, well-formed snapshot."""

    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = problems or []
        if self.problems:
            shown = "; ".join(self.problems[:3])
            message = f"{message} ({len(self.problems)} problem(s): {shown})"
        super().__init__(message)


class ReferenceIntegrityError(StoreError):
    """Cross-entity references do not resolve after an import."""

    def __init__(self, report):
        errors = report.errors
        shown = "; ".join(errors[:3])
        super().__init__(f"Reference integrity check failed with {len(errors)} error(s): {shown}")
        self.report = report


class NamespaceCollision(StorageError):
    """A partition file already belongs to another principal with the same namespace prefix."""

    def __init__(self, principal_id: str, owner: str, path: str):
        super().__init__(f"Partition {path} belongs to {owner!r}, refusing to open it for {principal_id!r}")
        self.principal_id = principal_id
        self.owner = owner
        self.path = path


class NoActivePrincipal(StoreError):
    """Queue mutation attempted while no principal is signed in."""
    pass


class SyncConflict(StoreError):
    """Local and remote versions diverged. Informational; resolved by last-write-wins."""

    def __init__(self, entity_type: str, entity_id: str, local_timestamp: int, remote_timestamp: int):
        super().__init__(
            f"Conflict on {entity_type}/{entity_id}: "
            f"local={local_timestamp} remote={remote_timestamp}"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.local_timestamp = local_timestamp
        self.remote_timestamp = remote_timestamp


class AuthExpired(StoreError):
    """Remote session is missing, expired, or belongs to another principal."""
    pass


# ---------- Remote delivery categories ----------

class DeliveryError(StoreError):
    """Base class for remote delivery errors."""
    pass


class TransientError(DeliveryError):
    """Temporary error that should be retried (network issues, timeouts, 5xx errors)."""
    pass


class PermanentError(DeliveryError):
    """Permanent error that should not be retried (bad data, 4xx errors)."""
    pass
