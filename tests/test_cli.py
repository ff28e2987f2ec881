"""Tests for the matchstore command line interface."""
import asyncio
import json

import pytest

from matchstore.cli import build_parser, main
from matchstore.datastore import LocalDataStore
from matchstore.kvstore import PartitionedKeyValueStore


def seed(data_dir, principal_id, *names):
    """Create players for a principal outside the CLI."""
    async def run():
        store = LocalDataStore(PartitionedKeyValueStore(data_dir), principal_id)
        await store.initialize()
        for name in names:
            await store.create_player({"name": name})
        await store.close()
    asyncio.run(run())


def players_of(data_dir, principal_id):
    async def run():
        store = LocalDataStore(PartitionedKeyValueStore(data_dir), principal_id)
        await store.initialize()
        try:
            return await store.get_players()
        finally:
            await store.close()
    return asyncio.run(run())


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


def test_parser_requires_command():
    """A subcommand is mandatory."""
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_config_command(capsys):
    """config prints both configuration classes."""
    assert main(["config"]) == 0
    out = capsys.readouterr().out
    assert "StoreConfig Configuration" in out
    assert "CloudConfig Configuration" in out


def test_export_to_stdout(data_dir, capsys):
    """export writes a portable snapshot."""
    seed(data_dir, "alice", "Aino")

    assert main(["--data-dir", data_dir, "export", "--principal", "alice"]) == 0

    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["players"][0]["name"] == "Aino"
    assert snapshot["players"][0]["id"].startswith("player_")


def test_export_then_import_other_principal(data_dir, tmp_path, capsys):
    """A snapshot exported for one principal imports into another."""
    seed(data_dir, "alice", "Aino", "Eero")
    path = str(tmp_path / "backup.json")

    assert main(["--data-dir", data_dir, "export", "--principal", "alice", "-o", path]) == 0
    assert main(["--data-dir", data_dir, "import", "--principal", "bob", path]) == 0

    out = capsys.readouterr().out
    assert "Imported (merge)" in out
    players = players_of(data_dir, "bob")
    assert sorted(p.name for p in players) == ["Aino", "Eero"]
    assert all(p.id.startswith("bob_player_") for p in players)


def test_import_queues_resync(data_dir, tmp_path, capsys):
    """An import leaves one resync marker in the importing principal's queue."""
    seed(data_dir, "alice", "Aino")
    path = str(tmp_path / "backup.json")
    main(["--data-dir", data_dir, "export", "--principal", "alice", "-o", path])
    main(["--data-dir", data_dir, "import", "--principal", "bob", path])
    capsys.readouterr()

    assert main(["--data-dir", data_dir, "queue", "status", "--principal", "bob"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["pending"] == 1
    assert stats["total"] == 1


def test_import_invalid_file(data_dir, tmp_path, capsys):
    """A malformed snapshot is reported and exits non-zero."""
    path = tmp_path / "bad.json"
    path.write_text("not json")

    assert main(["--data-dir", data_dir, "import", "--principal", "bob", str(path)]) == 1
    assert "Error:" in capsys.readouterr().err


def test_import_missing_file(data_dir, tmp_path, capsys):
    """A missing snapshot file is an OS error."""
    assert main(["--data-dir", data_dir, "import", "--principal", "bob", str(tmp_path / "nope.json")]) == 2


def test_validate(data_dir, capsys):
    """validate reports a consistent partition as valid."""
    seed(data_dir, "alice", "Aino")
    assert main(["--data-dir", data_dir, "validate", "--principal", "alice"]) == 0
    assert "References valid" in capsys.readouterr().out


def test_queue_purge(data_dir, tmp_path, capsys):
    """purge drops the principal's queued operations."""
    seed(data_dir, "alice", "Aino")
    path = str(tmp_path / "backup.json")
    main(["--data-dir", data_dir, "export", "--principal", "alice", "-o", path])
    main(["--data-dir", data_dir, "import", "--principal", "bob", path])
    capsys.readouterr()

    assert main(["--data-dir", data_dir, "queue", "purge", "--principal", "bob"]) == 0
    assert "Purged 1 operation(s)" in capsys.readouterr().out


def test_invalid_principal(data_dir, capsys):
    """Argument errors from the store exit with status 1."""
    assert main(["--data-dir", data_dir, "validate", "--principal", "not valid!"]) == 1
    assert "Error:" in capsys.readouterr().err


def test_migrate_missing_legacy_db(data_dir, tmp_path, capsys):
    """Migrating from a missing legacy database fails cleanly."""
    args = ["--data-dir", data_dir, "migrate-legacy", "--principal", "alice", "--legacy-db", str(tmp_path / "x.db")]
    assert main(args) == 1
    assert "Legacy database not found" in capsys.readouterr().err
