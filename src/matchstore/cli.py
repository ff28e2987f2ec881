"""
Command line interface for matchstore.

Operator tooling around one principal's partition: backup export/import,
reference validation, queue inspection, a one-shot sync drain and legacy
migration.
"""
import argparse
import asyncio
import json
import logging
import sys

from matchstore.backup import BackupPipeline
from matchstore.config import CloudConfig, StoreConfig, print_config
from matchstore.datastore import LocalDataStore
from matchstore.engine import SyncEngine
from matchstore.errors import StoreError
from matchstore.kvstore import PartitionedKeyValueStore
from matchstore.log import init_logging
from matchstore.queue import SyncOperationQueue
from matchstore.quota import DiskQuotaProvider
from matchstore.remote import create_session
from matchstore.synced import SyncedDataStore

logger = logging.getLogger("matchstore.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="matchstore", description="Local-first match data store tools")
    parser.add_argument("--data-dir", default=StoreConfig.DATA_DIR, help="Directory holding partition databases")
    parser.add_argument("--queue-db", default=None, help="Sync queue database (default: <data-dir>/sync_queue.db)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = parser.add_subparsers(dest="command", required=True)

    export = sub.add_parser("export", help="Export a portable snapshot")
    export.add_argument("--principal", required=True)
    export.add_argument("--output", "-o", help="Write to file instead of stdout")

    imp = sub.add_parser("import", help="Import a snapshot file")
    imp.add_argument("--principal", required=True)
    imp.add_argument("file")
    imp.add_argument("--mode", choices=["merge", "replace"], default="merge")

    validate = sub.add_parser("validate", help="Check cross-entity references")
    validate.add_argument("--principal", required=True)

    queue = sub.add_parser("queue", help="Inspect or manage the sync queue")
    queue.add_argument("action", choices=["status", "retry", "purge"])
    queue.add_argument("--principal", required=True)

    sync = sub.add_parser("sync", help="Drain the sync queue once against the remote store")
    sync.add_argument("--principal", required=True)
    sync.add_argument("--remote", default=StoreConfig.REMOTE_URL)

    migrate = sub.add_parser("migrate-legacy", help="Import the unscoped legacy database")
    migrate.add_argument("--principal", required=True)
    migrate.add_argument("--legacy-db", default=StoreConfig.LEGACY_DB_PATH)

    sub.add_parser("config", help="Print effective configuration")
    return parser


def _queue_for(args) -> SyncOperationQueue:
    path = args.queue_db or f"{args.data_dir}/sync_queue.db"
    return SyncOperationQueue(path)


async def _open_store(args) -> LocalDataStore:
    kv = PartitionedKeyValueStore(args.data_dir)
    store = LocalDataStore(kv, args.principal)
    await store.initialize()
    return store


def _pipeline(args, store, queue=None) -> BackupPipeline:
    return BackupPipeline(store, queue=queue, quota=DiskQuotaProvider(args.data_dir))


async def cmd_export(args) -> int:
    store = await _open_store(args)
    try:
        text = await _pipeline(args, store).export_json()
    finally:
        await store.close()
    if args.output:
        with open(args.output, "w") as f:
            f.write(text)
        print(f"Snapshot written to {args.output}")
    else:
        print(text)
    return 0


async def cmd_import(args) -> int:
    with open(args.file) as f:
        text = f.read()
    store = await _open_store(args)
    queue = _queue_for(args)
    queue.set_active_principal(store.principal_id)
    try:
        result = await _pipeline(args, store, queue).import_json(text, mode=args.mode)
    finally:
        await store.close()
    print(f"Imported ({result.mode}):")
    for entity, count in result.counts.items():
        print(f"  {entity:18} {count}")
    for error in result.errors:
        print(f"  dangling: {error}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    return 0


async def cmd_validate(args) -> int:
    store = await _open_store(args)
    try:
        report = await _pipeline(args, store).validate_references()
    finally:
        await store.close()
    for error in report.errors:
        print(f"error: {error}")
    for warning in report.warnings:
        print(f"warning: {warning}")
    print("References valid" if report.valid else f"{len(report.errors)} reference error(s)")
    return 0 if report.valid else 1


async def cmd_queue(args) -> int:
    queue = _queue_for(args)
    queue.set_active_principal(args.principal)
    if args.action == "status":
        stats = await queue.stats()
        print(json.dumps(stats.to_json_dict(), indent=2))
        for op in await queue.failed():
            print(f"failed: {op.entity_type}/{op.entity_id} ({op.operation}): {op.last_error}")
    elif args.action == "retry":
        print(f"Re-queued {await queue.retry_failed()} operation(s)")
    else:
        print(f"Purged {await queue.purge_active_principal()} operation(s)")
    return 0


async def cmd_sync(args) -> int:
    store = await _open_store(args)
    queue = _queue_for(args)
    queue.set_active_principal(store.principal_id)
    try:
        remote = create_session(args.remote, store.principal_id)
        synced = SyncedDataStore(store, queue)
        engine = SyncEngine(queue, remote, synced.apply_remote, resync_handler=synced.expand_resync)
        await queue.reset_stale_syncing()
        result = await engine.process_queue()
        # A resync marker expands into new operations; drain those too
        if await queue.ready():
            follow_up = await engine.process_queue()
            result.synced += follow_up.synced
            result.requeued += follow_up.requeued
            result.failed += follow_up.failed
            result.skipped += follow_up.skipped
    finally:
        queue.clear_active_principal()
        await store.close()
    print(json.dumps(result.to_json_dict(), indent=2))
    return 0 if not result.failed else 1


async def cmd_migrate_legacy(args) -> int:
    store = await _open_store(args)
    queue = _queue_for(args)
    queue.set_active_principal(store.principal_id)
    try:
        result = await _pipeline(args, store, queue).migrate_legacy(args.legacy_db)
    finally:
        await store.close()
    print(f"Migrated legacy data: {result.counts}")
    return 0


async def cmd_config(_args) -> int:
    print_config(StoreConfig)
    print_config(CloudConfig)
    return 0


COMMANDS = {
    "export": cmd_export,
    "import": cmd_import,
    "validate": cmd_validate,
    "queue": cmd_queue,
    "sync": cmd_sync,
    "migrate-legacy": cmd_migrate_legacy,
    "config": cmd_config,
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    init_logging("cli", level=logging.INFO if args.verbose else logging.WARNING)
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
