"""
Backup pipeline: export, import and legacy migration of a principal's data.

Exports are portable (namespace prefixes stripped from every identifier and
reference). Imports regenerate every identifier for the importing principal
and rewrite all references before writing anything.

Imports are atomic: the new contents (the snapshot alone for replace, a
copy of the live data plus the snapshot for merge) are written to a
temporary namespace, checked, then swapped into the live namespace in one
transaction. Any failure discards the temporary namespace and leaves the
live partition untouched.
"""
import itertools
import json
import logging
import os
import sqlite3
from typing import Literal, Optional, Union

from pydantic import ValidationError

from matchstore.datastore import (
    APP_SETTINGS_KEY,
    MASTER_ROSTER_KEY,
    PERSONNEL_KEY,
    PLAYER_ADJUSTMENTS_KEY,
    SAVED_GAMES_KEY,
    SEASONS_LIST_KEY,
    TEAM_ROSTERS_KEY,
    TEAMS_INDEX_KEY,
    TOURNAMENTS_LIST_KEY,
    WARMUP_PLAN_KEY,
    LocalDataStore,
    now_iso,
)
from matchstore.errors import (
    InvalidArgument,
    InvalidFormat,
    NotFound,
    QuotaExceeded,
    ReferenceIntegrityError,
    StorageError,
)
from matchstore.identifiers import ephemeral_id, generate_id, validate_principal_id
from matchstore.models import (
    SNAPSHOT_FORMAT_VERSION,
    AppSettings,
    ImportResult,
    ReferenceReport,
    Snapshot,
    SyncOperationInput,
)
from matchstore.queue import SyncOperationQueue, now_ms
from matchstore.quota import QuotaProvider
from matchstore.references import check_references, remap_mapper, rewrite_references, strip_references

logger = logging.getLogger("matchstore.backup")

ImportMode = Literal["merge", "replace"]

RESYNC_ENTITY_ID = "all"
QUOTA_SAFETY_FACTOR = 1.5
REPLACE_QUOTA_FACTOR = 2

# Collections whose ids are regenerated, in dependency order
ID_COLLECTIONS = (
    ("players", "player"),
    ("teams", "team"),
    ("seasons", "season"),
    ("tournaments", "tournament"),
    ("personnel", "personnel"),
    ("playerAdjustments", "adjustment"),
    ("games", "game"),
)


async def collect_view(store: LocalDataStore) -> dict:
    """Read a whole namespace into a snapshot-shaped dict (identifiers as stored)."""
    games = await store.get_games()
    adjustments = await store.get_all_player_adjustments()
    plan = await store.get_warmup_plan()
    return {
        "formatVersion": SNAPSHOT_FORMAT_VERSION,
        "exportedAt": now_iso(),
        "players": [p.to_json_dict() for p in await store.get_players()],
        "teams": [t.to_json_dict() for t in await store.get_teams(include_archived=True)],
        "teamRosters": {
            team_id: [entry.to_json_dict() for entry in entries]
            for team_id, entries in (await store.get_all_team_rosters()).items()
        },
        "seasons": [s.to_json_dict() for s in await store.get_seasons(include_archived=True)],
        "tournaments": [t.to_json_dict() for t in await store.get_tournaments(include_archived=True)],
        "personnel": [m.to_json_dict() for m in await store.get_all_personnel()],
        "games": [game.to_json_dict() for game in games.values()],
        "playerAdjustments": [adj.to_json_dict() for items in adjustments.values() for adj in items],
        "warmupPlan": plan.to_json_dict() if plan is not None else None,
        "settings": (await store.get_settings()).to_json_dict(),
    }


def parse_snapshot(payload: Union[Snapshot, dict, str]) -> Snapshot:
    """
    Validate a snapshot payload.

    Raises:
        InvalidFormat: Not JSON, not an object, unsupported version or schema errors
    """
    if isinstance(payload, Snapshot):
        payload = payload.to_json_dict()
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise InvalidFormat(f"Snapshot is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise InvalidFormat("Snapshot must be a JSON object")

    version = payload.get("formatVersion")
    if version is None:
        raise InvalidFormat("Snapshot is missing formatVersion")
    if version != SNAPSHOT_FORMAT_VERSION:
        raise InvalidFormat(f"Unsupported snapshot format version {version!r} (expected {SNAPSHOT_FORMAT_VERSION})")

    try:
        return Snapshot.model_validate(payload)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        raise InvalidFormat("Malformed snapshot", problems)


class BackupPipeline:
    """
    Export/import for the principal owning `store`.

    Bulk imports write through the LocalDataStore and bypass the sync
    queue; when a queue is attached and its active principal owns the store,
    a single resync marker is queued after a successful import.
    """

    def __init__(
        self,
        store: LocalDataStore,
        queue: Optional[SyncOperationQueue] = None,
        quota: Optional[QuotaProvider] = None,
    ):
        self.store = store
        self.queue = queue
        self.quota = quota

    def _check_principal(self, principal_id: Optional[str]) -> str:
        if principal_id is None:
            return self.store.principal_id
        principal_id = validate_principal_id(principal_id)
        if principal_id != self.store.principal_id:
            raise InvalidArgument(f"Store is bound to another principal than {principal_id}")
        return principal_id

    # ---------- Export ----------

    async def export_snapshot(self, principal_id: Optional[str] = None) -> Snapshot:
        self._check_principal(principal_id)
        view = await collect_view(self.store)
        snapshot = Snapshot.model_validate(strip_references(view))
        logger.info(
            f"Exported snapshot: {len(snapshot.players)} player(s), {len(snapshot.games)} game(s), "
            f"{len(snapshot.teams)} team(s)"
        )
        return snapshot

    async def export_json(self, principal_id: Optional[str] = None, indent: Optional[int] = 2) -> str:
        snapshot = await self.export_snapshot(principal_id)
        return json.dumps(snapshot.to_json_dict(), indent=indent)

    # ---------- Import ----------

    def _regenerate(self, data: dict, principal_id: str) -> dict:
        """Give every entity a fresh namespaced id and rewrite all references."""
        counter = itertools.count()
        id_map: dict[str, str] = {}

        def fresh(entity_type: str) -> str:
            return generate_id(entity_type, principal_id, next(counter))

        for collection, entity_type in ID_COLLECTIONS:
            for record in data.get(collection) or []:
                old_id = record.get("id")
                if old_id and old_id not in id_map:
                    id_map[old_id] = fresh(entity_type)
                if collection == "tournaments":
                    for series in record.get("series") or []:
                        if series.get("id") and series["id"] not in id_map:
                            id_map[series["id"]] = fresh("series")

        plan = data.get("warmupPlan")
        if plan and plan.get("id"):
            id_map[plan["id"]] = fresh("warmup")

        return rewrite_references(data, remap_mapper(id_map, principal_id), fresh_id=fresh)

    async def _check_quota(self, data: dict, mode: ImportMode):
        if self.quota is None:
            return
        size = len(json.dumps(data).encode("utf-8"))
        required = int(size * QUOTA_SAFETY_FACTOR)
        if mode == "replace":
            required *= REPLACE_QUOTA_FACTOR
        else:
            # Merge stages a full copy of the live namespace
            required += await self.store.size()
        available = await self.quota.available_bytes()
        if available is None:
            logger.debug("Storage estimate unavailable, assuming enough space")
            return
        if required > available:
            logger.warning(f"Import needs {required} bytes, only {available} available")
            raise QuotaExceeded(required, available)

    async def import_snapshot(
        self,
        snapshot: Union[Snapshot, dict, str],
        mode: ImportMode = "merge",
        principal_id: Optional[str] = None,
    ) -> ImportResult:
        """
        Import a snapshot into the store's principal.

        Both modes stage the result in a temporary namespace and swap it in,
        so a failure at any step leaves the live partition as it was. Merge
        reports dangling references in the result; replace rejects them.

        Raises:
            InvalidFormat: Snapshot failed validation
            InvalidArgument: A record breaks a field rule (e.g. name too long)
            QuotaExceeded: Not enough storage for the import
            ReferenceIntegrityError: Replace mode only, imported references do not resolve
            StorageError: Underlying storage failed
        """
        principal_id = self._check_principal(principal_id)
        if mode not in ("merge", "replace"):
            raise InvalidArgument(f"Unknown import mode: {mode!r}")

        parsed = parse_snapshot(snapshot)
        data = self._regenerate(parsed.to_json_dict(), principal_id)
        await self._check_quota(data, mode)

        logger.info(f"Importing snapshot for {principal_id} ({mode} mode)")
        if mode == "replace":
            counts, report = await self._import_replace(data)
        else:
            counts, report = await self._import_merge(data)

        result = ImportResult(
            mode=mode,
            counts=counts,
            errors=list(report.errors),
            warnings=list(report.warnings),
            report=report,
        )
        result.resync_queued = await self._queue_resync(principal_id)
        logger.info(f"Import finished: {counts}")
        return result

    async def import_json(self, text: str, mode: ImportMode = "merge", principal_id: Optional[str] = None) -> ImportResult:
        return await self.import_snapshot(text, mode=mode, principal_id=principal_id)

    async def _import_merge(self, data: dict) -> tuple[dict[str, int], ReferenceReport]:
        """
        Upsert the snapshot on top of a copy of the live namespace, then swap.

        Dangling references are reported, not rejected: ordinary edits
        (deleting a player still listed in an old game) leave them behind.
        """
        store = self.store

        async def populate(temp: LocalDataStore) -> dict[str, int]:
            copied = await _copy_namespace(store, temp)
            logger.debug(f"Copied {copied} live key(s) into {temp.namespace!r}")
            return await _write_view(temp, data, merge=True)

        counts, report = await self._stage_and_swap(populate, require_valid=False)
        if not report.valid:
            logger.warning(f"Merge import left {len(report.errors)} dangling reference(s)")
        return counts, report

    async def _import_replace(self, data: dict) -> tuple[dict[str, int], ReferenceReport]:
        async def populate(temp: LocalDataStore) -> dict[str, int]:
            return await _write_view(temp, data, merge=False)

        return await self._stage_and_swap(populate, require_valid=True)

    async def _stage_and_swap(self, populate, require_valid: bool) -> tuple[dict[str, int], ReferenceReport]:
        """Build the new namespace contents aside and swap them in, or leave the live data untouched."""
        store = self.store
        namespace = f"{store.key_prefix[:-1]}.import-{ephemeral_id()[:8]}"
        temp = store.with_namespace(namespace)
        logger.debug(f"Writing import into temporary namespace {namespace!r}")
        try:
            counts = await populate(temp)
            report = check_references(await collect_view(temp))
            if require_valid and not report.valid:
                raise ReferenceIntegrityError(report)
            await store.kv.swap_prefix(store.handle, temp.key_prefix, store.key_prefix)
        except BaseException:
            logger.error("Import failed, discarding temporary namespace")
            try:
                await store.kv.clear_prefix(store.handle, temp.key_prefix)
            except StorageError as cleanup_error:
                logger.error(f"Could not discard temporary namespace {namespace!r}: {cleanup_error}")
            raise
        finally:
            temp.clear_cache()
            store.clear_cache()
        return counts, report

    async def _queue_resync(self, principal_id: str) -> bool:
        queue = self.queue
        if queue is None or queue.active_principal != principal_id:
            return False
        await queue.enqueue(SyncOperationInput(
            entity_type="resync",
            entity_id=RESYNC_ENTITY_ID,
            operation="update",
            timestamp=now_ms(),
        ))
        logger.info("Queued resync marker after import")
        return True

    # ---------- Validation ----------

    async def validate_references(self, principal_id: Optional[str] = None) -> ReferenceReport:
        self._check_principal(principal_id)
        return check_references(await collect_view(self.store))

    # ---------- Legacy migration ----------

    async def migrate_legacy(self, legacy_db_path, principal_id: Optional[str] = None) -> ImportResult:
        """
        Import the unscoped pre-partition database into the principal.

        Legacy identifiers are already portable, so the legacy data is
        packaged as a snapshot and merged through the normal import path.
        The legacy database itself is left untouched.
        """
        principal_id = self._check_principal(principal_id)
        snapshot = read_legacy_snapshot(legacy_db_path)
        logger.info(f"Migrating legacy data from {legacy_db_path} into {principal_id}")
        return await self.import_snapshot(snapshot, mode="merge", principal_id=principal_id)


async def _copy_namespace(source: LocalDataStore, target: LocalDataStore) -> int:
    """Copy every raw key of source's namespace under target's namespace."""
    items = await source.kv.items(source.handle, source.key_prefix)
    for key, value in items.items():
        await target.kv.set(target.handle, target.key_prefix + key[len(source.key_prefix):], value)
    return len(items)


async def _write_view(store: LocalDataStore, data: dict, merge: bool) -> dict[str, int]:
    """
    Write a regenerated snapshot dict into a store. Returns per-entity counts.

    In merge mode the incoming settings only replace settings still at
    their defaults; otherwise just an unset currentGameId is filled.
    """
    settings = data.get("settings") or {}
    if not merge or await store.get_settings() == AppSettings():
        await store.save_settings(settings)
    elif settings.get("currentGameId") and not (await store.get_settings()).current_game_id:
        await store.update_settings({"currentGameId": settings["currentGameId"]})

    for player in data.get("players") or []:
        await store.upsert_player(player)
    for team in data.get("teams") or []:
        await store.upsert_team(team)
    for team_id, entries in (data.get("teamRosters") or {}).items():
        await store.set_team_roster(team_id, entries)
    for season in data.get("seasons") or []:
        await store.upsert_season(season)
    for tournament in data.get("tournaments") or []:
        await store.upsert_tournament(tournament)
    for member in data.get("personnel") or []:
        await store.upsert_personnel_member(member)
    for adjustment in data.get("playerAdjustments") or []:
        await store.upsert_player_adjustment(adjustment)

    plan = data.get("warmupPlan")
    plan_written = 0
    if plan and (not merge or await store.get_warmup_plan() is None):
        await store.save_warmup_plan(plan)
        plan_written = 1

    games = {game["id"]: game for game in data.get("games") or []}
    if merge:
        for game_id, game in games.items():
            await store.save_game(game_id, game)
    else:
        await store.save_all_games(games)

    return {
        "players": len(data.get("players") or []),
        "teams": len(data.get("teams") or []),
        "teamRosters": len(data.get("teamRosters") or {}),
        "seasons": len(data.get("seasons") or []),
        "tournaments": len(data.get("tournaments") or []),
        "personnel": len(data.get("personnel") or []),
        "games": len(games),
        "playerAdjustments": len(data.get("playerAdjustments") or []),
        "warmupPlan": plan_written,
    }


# ---------- Legacy database ----------

def _legacy_value(db, key: str, default):
    row = db.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
    if row is None or not row["value"]:
        return default
    try:
        return json.loads(row["value"])
    except json.JSONDecodeError as e:
        logger.warning(f"Skipping corrupted legacy key {key}: {e}")
        return default


def read_legacy_snapshot(legacy_db_path) -> dict:
    """Package the unscoped legacy key/value database as a snapshot dict."""
    legacy_db_path = str(legacy_db_path)
    if not os.path.exists(legacy_db_path):
        raise NotFound(f"Legacy database not found: {legacy_db_path}")
    try:
        db = sqlite3.connect(legacy_db_path, timeout=10.0)
        db.row_factory = sqlite3.Row
    except sqlite3.Error as e:
        raise StorageError(f"Could not open legacy database {legacy_db_path}", e)
    try:
        games = _legacy_value(db, SAVED_GAMES_KEY, {})
        adjustments = _legacy_value(db, PLAYER_ADJUSTMENTS_KEY, {})
        snapshot = {
            "formatVersion": SNAPSHOT_FORMAT_VERSION,
            "exportedAt": now_iso(),
            "players": _legacy_value(db, MASTER_ROSTER_KEY, []),
            "teams": list(_legacy_value(db, TEAMS_INDEX_KEY, {}).values()),
            "teamRosters": _legacy_value(db, TEAM_ROSTERS_KEY, {}),
            "seasons": _legacy_value(db, SEASONS_LIST_KEY, []),
            "tournaments": _legacy_value(db, TOURNAMENTS_LIST_KEY, []),
            "personnel": list(_legacy_value(db, PERSONNEL_KEY, {}).values()),
            "games": [{**game, "id": game_id} for game_id, game in games.items()],
            "playerAdjustments": [adj for items in adjustments.values() for adj in items],
            "warmupPlan": _legacy_value(db, WARMUP_PLAN_KEY, None),
            "settings": _legacy_value(db, APP_SETTINGS_KEY, {}),
        }
    except sqlite3.Error as e:
        raise StorageError(f"Failed to read legacy database {legacy_db_path}", e)
    finally:
        db.close()
    return snapshot
