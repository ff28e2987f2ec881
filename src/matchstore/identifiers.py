"""
Identifier scoping for per-principal partitions.

Every persisted identifier has the form::

    {prefix}_{entityType}_{epochMillis}_{random}[_{index}]     (namespaced)
    {entityType}_{epochMillis}_{random}[_{index}]              (portable)

The namespace prefix is derived deterministically from the principal
identifier. Portable identifiers appear only in exported snapshots.

There is no explicit format stamp: the two layouts are told apart by the
position of the entity-type token, which must come from ENTITY_TYPES.
"""
import logging
import re
import time
import uuid
from typing import Optional

from matchstore.errors import InvalidArgument

logger = logging.getLogger("matchstore.identifiers")

ENTITY_TYPES = frozenset({
    "player",
    "team",
    "season",
    "tournament",
    "personnel",
    "game",
    "event",
    "adjustment",
    "warmup",
    "section",
    "series",
})

PREFIX_LENGTH = 12
MAX_PRINCIPAL_ID_LENGTH = 255

# Plausible millisecond-epoch window: 2000-01-01 .. 2100-01-01
MIN_PLAUSIBLE_MS = 946_684_800_000
MAX_PLAUSIBLE_MS = 4_102_444_800_000

_PRINCIPAL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


def validate_principal_id(principal_id) -> str:
    """Return the trimmed principal id or raise InvalidArgument."""
    if not principal_id or not isinstance(principal_id, str):
        raise InvalidArgument("principal_id is required")
    trimmed = principal_id.strip()
    if not trimmed:
        raise InvalidArgument("principal_id cannot be empty or whitespace")
    if len(trimmed) > MAX_PRINCIPAL_ID_LENGTH:
        raise InvalidArgument(f"principal_id exceeds maximum length of {MAX_PRINCIPAL_ID_LENGTH} characters")
    if not _PRINCIPAL_RE.match(trimmed):
        raise InvalidArgument("principal_id may only contain letters, digits, hyphens and underscores")
    return trimmed


def namespace_prefix(principal_id: str) -> str:
    """
    Derive the namespace prefix for a principal.

    Separators are removed and the first 12 characters kept, so a UUID
    principal maps to its first 12 hex digits.
    """
    trimmed = validate_principal_id(principal_id)
    prefix = _NON_ALNUM_RE.sub("", trimmed)[:PREFIX_LENGTH]
    if not prefix:
        raise InvalidArgument(f"principal_id '{principal_id}' yields an empty namespace prefix")
    if prefix in ENTITY_TYPES:
        # Positional format inference cannot distinguish this prefix from a type token
        logger.warning(f"Namespace prefix '{prefix}' collides with an entity-type token")
    return prefix


def scope_key(base_key: str, principal_id: str) -> str:
    """Scope a storage key to the principal's namespace."""
    if not base_key:
        raise InvalidArgument("base_key is required")
    return f"{namespace_prefix(principal_id)}_{base_key}"


def generate_id(entity_type: str, principal_id: str, index: Optional[int] = None) -> str:
    """
    Generate a namespaced entity identifier.

    Args:
        entity_type: One of ENTITY_TYPES
        principal_id: Owning principal
        index: Optional suffix for ids generated in a batch

    Returns:
        str: e.g. "f47ac10b58cc_player_1730000000000_9f86d081"
    """
    prefix = namespace_prefix(principal_id)
    if entity_type not in ENTITY_TYPES:
        raise InvalidArgument(f"Unknown entity type: {entity_type}")
    timestamp = int(time.time() * 1000)
    random_part = uuid.uuid4().hex[:8]
    identifier = f"{prefix}_{entity_type}_{timestamp}_{random_part}"
    if index is not None:
        identifier = f"{identifier}_{index}"
    return identifier


def ephemeral_id() -> str:
    """Identifier for transient, never-persisted objects. Not namespaced."""
    return uuid.uuid4().hex


def is_portable(identifier) -> bool:
    if not identifier or not isinstance(identifier, str):
        return False
    return identifier.split("_", 1)[0] in ENTITY_TYPES


def is_namespaced(identifier) -> bool:
    if not identifier or not isinstance(identifier, str):
        return False
    tokens = identifier.split("_")
    return len(tokens) > 1 and tokens[0] not in ENTITY_TYPES and tokens[1] in ENTITY_TYPES


def is_generated_id(identifier) -> bool:
    """True for identifiers produced by generate_id (either layout)."""
    return is_portable(identifier) or is_namespaced(identifier)


def entity_type_of(identifier) -> Optional[str]:
    if is_portable(identifier):
        return identifier.split("_", 1)[0]
    if is_namespaced(identifier):
        return identifier.split("_")[1]
    return None


def strip_prefix(identifier: str) -> str:
    """
    Return the portable form of an identifier.

    Portable input is returned unchanged. Identifiers in neither layout are
    also returned unchanged, with a warning.
    """
    if is_portable(identifier):
        return identifier
    if is_namespaced(identifier):
        return identifier.split("_", 1)[1]
    logger.warning(f"Identifier '{identifier}' has no recognizable entity type; leaving as-is")
    return identifier


def add_prefix(identifier: str, principal_id: str) -> str:
    """Namespace an identifier for a principal, replacing any existing prefix."""
    prefix = namespace_prefix(principal_id)
    if not identifier:
        raise InvalidArgument("identifier is required")
    if is_namespaced(identifier):
        identifier = identifier.split("_", 1)[1]
    return f"{prefix}_{identifier}"


def _plausible_ms(token: str) -> int:
    if not token.isdigit():
        return 0
    value = int(token)
    if MIN_PLAUSIBLE_MS <= value < MAX_PLAUSIBLE_MS:
        return value
    return 0


def extract_timestamp(identifier: str) -> int:
    """
    Extract the creation time (ms since epoch) embedded in an identifier.

    Tries the namespaced layout (token 2) and the portable layout (token 1).
    Returns 0 when neither yields a plausible timestamp.
    """
    if not identifier or not isinstance(identifier, str):
        return 0
    tokens = identifier.split("_")
    if len(tokens) > 2:
        value = _plausible_ms(tokens[2])
        if value:
            return value
    if len(tokens) > 1:
        return _plausible_ms(tokens[1])
    return 0
