"""
Storage quota lookups for the import pre-check.

A provider answers "how many bytes can still be written?" or None when it
cannot tell, in which case callers assume there is enough space.
"""
import logging
import shutil
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger("matchstore.quota")


class QuotaProvider(ABC):
    @abstractmethod
    async def available_bytes(self) -> Optional[int]:
        """Bytes available for new data, or None if unknown."""


class DiskQuotaProvider(QuotaProvider):
    """Free space of the filesystem holding the data directory."""

    def __init__(self, path):
        self.path = path

    async def available_bytes(self) -> Optional[int]:
        try:
            return shutil.disk_usage(self.path).free
        except OSError as e:
            logger.debug(f"Storage estimate unavailable for {self.path}: {e}")
            return None


class FixedQuotaProvider(QuotaProvider):
    def __init__(self, available: Optional[int]):
        self.available = available

    async def available_bytes(self) -> Optional[int]:
        return self.available
