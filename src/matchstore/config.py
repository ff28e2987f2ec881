"""
Configuration management for matchstore.

Uses environment variables with sensible defaults.
"""
import os


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class StoreConfig:
    """Configuration for the local store and sync engine."""

    # Local storage
    DATA_DIR = os.getenv("MATCHSTORE_DATA_DIR", "data")
    QUEUE_DB_PATH = os.getenv("MATCHSTORE_QUEUE_DB", os.path.join(DATA_DIR, "sync_queue.db"))
    LEGACY_DB_PATH = os.getenv("MATCHSTORE_LEGACY_DB", os.path.join(DATA_DIR, "legacy.db"))

    # Storage open retries
    OPEN_MAX_ATTEMPTS = int(os.getenv("MATCHSTORE_OPEN_MAX_ATTEMPTS", "5"))
    OPEN_INITIAL_BACKOFF = float(os.getenv("MATCHSTORE_OPEN_INITIAL_BACKOFF", "0.1"))
    OPEN_MAX_BACKOFF = float(os.getenv("MATCHSTORE_OPEN_MAX_BACKOFF", "2.0"))

    # Remote store
    REMOTE_URL = os.getenv("MATCHSTORE_REMOTE_URL", "http://localhost:8001")
    SYNC_ENABLED = _env_bool("MATCHSTORE_SYNC_ENABLED", False)

    # Sync engine
    SYNC_INTERVAL_SECONDS = float(os.getenv("MATCHSTORE_SYNC_INTERVAL", "30"))
    SYNC_MAX_RETRIES = int(os.getenv("MATCHSTORE_SYNC_MAX_RETRIES", "10"))
    SYNC_BACKOFF_BASE = float(os.getenv("MATCHSTORE_SYNC_BACKOFF_BASE", "1"))
    SYNC_BACKOFF_MAX = float(os.getenv("MATCHSTORE_SYNC_BACKOFF_MAX", "300"))
    SYNC_BATCH_SIZE = int(os.getenv("MATCHSTORE_SYNC_BATCH_SIZE", "10"))
    SYNC_OPERATION_TIMEOUT = float(os.getenv("MATCHSTORE_SYNC_OPERATION_TIMEOUT", "30"))
    REQUEST_TIMEOUT = float(os.getenv("MATCHSTORE_REQUEST_TIMEOUT", "10"))


class CloudConfig:
    """Configuration for the remote store simulator."""

    # Server
    HOST = os.getenv("CLOUD_HOST", "0.0.0.0")
    PORT = int(os.getenv("CLOUD_PORT", "8001"))

    # Database
    DB_PATH = os.getenv("CLOUD_DB_PATH", "cloud.db")

    # Session lifetime in seconds
    SESSION_TTL = int(os.getenv("CLOUD_SESSION_TTL", "3600"))


def get_store_config():
    """Get configuration for the local store."""
    return StoreConfig


def get_cloud_config():
    """Get configuration for the remote store simulator."""
    return CloudConfig


def print_config(config_class):
    """Print configuration for debugging."""
    print(f"\n{'='*60}")
    print(f"{config_class.__name__} Configuration:")
    print(f"{'='*60}")
    for attr in dir(config_class):
        if attr.isupper():
            value = getattr(config_class, attr)
            print(f"  {attr:24} = {value}")
    print(f"{'='*60}\n")
