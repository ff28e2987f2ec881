"""Tests for configuration helpers."""
from matchstore.config import CloudConfig, StoreConfig, _env_bool, get_cloud_config, get_store_config, print_config


def test_config_getters():
    """Getters return the configuration classes."""
    assert get_store_config() is StoreConfig
    assert get_cloud_config() is CloudConfig


def test_env_bool(monkeypatch):
    """Boolean environment flags accept the usual spellings."""
    monkeypatch.delenv("MATCHSTORE_TEST_FLAG", raising=False)
    assert _env_bool("MATCHSTORE_TEST_FLAG", True) is True

    for value in ("1", "true", "YES", " on "):
        monkeypatch.setenv("MATCHSTORE_TEST_FLAG", value)
        assert _env_bool("MATCHSTORE_TEST_FLAG", False) is True

    monkeypatch.setenv("MATCHSTORE_TEST_FLAG", "off")
    assert _env_bool("MATCHSTORE_TEST_FLAG", True) is False


def test_defaults_are_sane():
    """Retry and backoff settings are positive."""
    assert StoreConfig.SYNC_MAX_RETRIES > 0
    assert StoreConfig.SYNC_BACKOFF_MAX >= StoreConfig.SYNC_BACKOFF_BASE
    assert StoreConfig.OPEN_MAX_ATTEMPTS >= 1
    assert CloudConfig.SESSION_TTL > 0


def test_print_config(capsys):
    """print_config lists upper-case attributes only."""
    print_config(StoreConfig)
    out = capsys.readouterr().out
    assert "StoreConfig Configuration:" in out
    assert "DATA_DIR" in out
    assert "_env_bool" not in out
