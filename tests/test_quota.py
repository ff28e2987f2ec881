"""Tests for storage quota providers."""
from matchstore.quota import DiskQuotaProvider, FixedQuotaProvider


async def test_disk_quota_reports_free_space(tmp_path):
    """The data directory's filesystem reports a byte count."""
    available = await DiskQuotaProvider(tmp_path).available_bytes()
    assert isinstance(available, int)
    assert available > 0


async def test_disk_quota_unknown_for_missing_path(tmp_path):
    """A path that does not exist yields no estimate."""
    assert await DiskQuotaProvider(tmp_path / "missing" / "dir").available_bytes() is None


async def test_fixed_quota():
    """Fixed providers return exactly what they were given."""
    assert await FixedQuotaProvider(1024).available_bytes() == 1024
    assert await FixedQuotaProvider(None).available_bytes() is None
