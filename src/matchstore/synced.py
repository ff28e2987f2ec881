"""
Synced façade over LocalDataStore.

Every mutation is applied locally first; when sync is enabled the change is
then queued for the sync engine. Reads go straight to the local store.
A failure to enqueue never undoes the local write: it is logged and
reported to queue-error listeners.
"""
import logging
from typing import Any, Callable, Optional

from matchstore.datastore import LocalDataStore
from matchstore.errors import StoreError
from matchstore.models import SyncOperationInput
from matchstore.queue import SyncOperationQueue, now_ms

logger = logging.getLogger("matchstore.synced")

SETTINGS_ENTITY_ID = "app"
WARMUP_PLAN_ENTITY_ID = "default"


class SyncedDataStore:
    """
    LocalDataStore wrapper that records every mutation in the sync queue.

    Attribute access falls through to the wrapped store, so reads such as
    get_players() behave exactly like the local store.
    """

    def __init__(self, local: LocalDataStore, queue: SyncOperationQueue, sync_enabled: bool = True):
        self.local = local
        self.queue = queue
        self.sync_enabled = sync_enabled
        self.on_enqueue: Optional[Callable[[], None]] = None
        self._queue_error_listeners: list[Callable[[str, str, Exception], None]] = []

    def __getattr__(self, name):
        return getattr(self.local, name)

    def add_queue_error_listener(self, listener: Callable[[str, str, Exception], None]):
        self._queue_error_listeners.append(listener)

    async def _queue(self, entity_type: str, entity_id: str, operation: str, payload: Any = None):
        if not self.sync_enabled:
            return
        try:
            await self.queue.enqueue(SyncOperationInput(
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                payload=payload,
                timestamp=now_ms(),
            ))
        except StoreError as e:
            logger.error(f"Local write of {entity_type}/{entity_id} succeeded but queueing failed: {e}")
            for listener in self._queue_error_listeners:
                try:
                    listener(entity_type, entity_id, e)
                except Exception as listener_error:
                    logger.warning(f"Queue error listener failed: {listener_error}")
            return
        if self.on_enqueue is not None:
            self.on_enqueue()

    # ---------- Players ----------

    async def create_player(self, data: dict):
        player = await self.local.create_player(data)
        await self._queue("player", player.id, "create", player.to_json_dict())
        return player

    async def update_player(self, player_id: str, updates: dict):
        player = await self.local.update_player(player_id, updates)
        if player is not None:
            await self._queue("player", player_id, "update", player.to_json_dict())
        return player

    async def delete_player(self, player_id: str) -> bool:
        deleted = await self.local.delete_player(player_id)
        if deleted:
            await self._queue("player", player_id, "delete")
        return deleted

    async def upsert_player(self, player):
        player = await self.local.upsert_player(player)
        await self._queue("player", player.id, "create", player.to_json_dict())
        return player

    # ---------- Teams ----------

    async def create_team(self, data: dict):
        team = await self.local.create_team(data)
        await self._queue("team", team.id, "create", team.to_json_dict())
        return team

    async def update_team(self, team_id: str, updates: dict):
        team = await self.local.update_team(team_id, updates)
        if team is not None:
            await self._queue("team", team_id, "update", team.to_json_dict())
        return team

    async def delete_team(self, team_id: str) -> bool:
        deleted = await self.local.delete_team(team_id)
        if deleted:
            await self._queue("team", team_id, "delete")
            await self._queue("teamRoster", team_id, "delete")
        return deleted

    async def upsert_team(self, team):
        team = await self.local.upsert_team(team)
        await self._queue("team", team.id, "create", team.to_json_dict())
        return team

    async def set_team_roster(self, team_id: str, roster: list):
        await self.local.set_team_roster(team_id, roster)
        entries = await self.local.get_team_roster(team_id)
        await self._queue("teamRoster", team_id, "update", [entry.to_json_dict() for entry in entries])

    # ---------- Seasons & tournaments ----------

    async def create_season(self, name: str, **extra):
        season = await self.local.create_season(name, **extra)
        await self._queue("season", season.id, "create", season.to_json_dict())
        return season

    async def update_season(self, season):
        updated = await self.local.update_season(season)
        if updated is not None:
            await self._queue("season", updated.id, "update", updated.to_json_dict())
        return updated

    async def delete_season(self, season_id: str) -> bool:
        deleted = await self.local.delete_season(season_id)
        if deleted:
            await self._queue("season", season_id, "delete")
        return deleted

    async def upsert_season(self, season):
        season = await self.local.upsert_season(season)
        await self._queue("season", season.id, "create", season.to_json_dict())
        return season

    async def create_tournament(self, name: str, **extra):
        tournament = await self.local.create_tournament(name, **extra)
        await self._queue("tournament", tournament.id, "create", tournament.to_json_dict())
        return tournament

    async def update_tournament(self, tournament):
        updated = await self.local.update_tournament(tournament)
        if updated is not None:
            await self._queue("tournament", updated.id, "update", updated.to_json_dict())
        return updated

    async def delete_tournament(self, tournament_id: str) -> bool:
        deleted = await self.local.delete_tournament(tournament_id)
        if deleted:
            await self._queue("tournament", tournament_id, "delete")
        return deleted

    async def upsert_tournament(self, tournament):
        tournament = await self.local.upsert_tournament(tournament)
        await self._queue("tournament", tournament.id, "create", tournament.to_json_dict())
        return tournament

    # ---------- Personnel ----------

    async def add_personnel_member(self, data: dict):
        member = await self.local.add_personnel_member(data)
        await self._queue("personnel", member.id, "create", member.to_json_dict())
        return member

    async def update_personnel_member(self, personnel_id: str, updates: dict):
        member = await self.local.update_personnel_member(personnel_id, updates)
        if member is not None:
            await self._queue("personnel", personnel_id, "update", member.to_json_dict())
        return member

    async def upsert_personnel_member(self, member):
        member = await self.local.upsert_personnel_member(member)
        await self._queue("personnel", member.id, "create", member.to_json_dict())
        return member

    async def remove_personnel_member(self, personnel_id: str) -> bool:
        changed_games = await self.local.remove_personnel_cascade(personnel_id)
        if changed_games is None:
            return False
        for game in changed_games:
            await self._queue("game", game.id, "update", game.to_json_dict())
        await self._queue("personnel", personnel_id, "delete")
        return True

    # ---------- Games ----------

    async def create_game(self, data: Optional[dict] = None):
        game = await self.local.create_game(data)
        await self._queue("game", game.id, "create", game.to_json_dict())
        return game

    async def save_game(self, game_id: str, game):
        saved = await self.local.save_game(game_id, game)
        await self._queue("game", game_id, "update", saved.to_json_dict())
        return saved

    async def save_all_games(self, games: dict):
        previous = set((await self.local.get_games()).keys())
        await self.local.save_all_games(games)
        current = await self.local.get_games()
        for game_id, game in current.items():
            await self._queue("game", game_id, "update", game.to_json_dict())
        for game_id in previous - set(current):
            await self._queue("game", game_id, "delete")

    async def delete_game(self, game_id: str) -> bool:
        deleted = await self.local.delete_game(game_id)
        if deleted:
            await self._queue("game", game_id, "delete")
        return deleted

    async def add_game_event(self, game_id: str, event):
        game = await self.local.add_game_event(game_id, event)
        if game is not None:
            await self._queue("game", game_id, "update", game.to_json_dict())
        return game

    async def update_game_event(self, game_id: str, event_index: int, event):
        game = await self.local.update_game_event(game_id, event_index, event)
        if game is not None:
            await self._queue("game", game_id, "update", game.to_json_dict())
        return game

    async def remove_game_event(self, game_id: str, event_index: int):
        game = await self.local.remove_game_event(game_id, event_index)
        if game is not None:
            await self._queue("game", game_id, "update", game.to_json_dict())
        return game

    # ---------- Settings ----------

    async def save_settings(self, settings):
        await self.local.save_settings(settings)
        saved = await self.local.get_settings()
        await self._queue("settings", SETTINGS_ENTITY_ID, "update", saved.to_json_dict())

    async def update_settings(self, updates: dict):
        settings = await self.local.update_settings(updates)
        await self._queue("settings", SETTINGS_ENTITY_ID, "update", settings.to_json_dict())
        return settings

    # ---------- Player adjustments ----------

    async def add_player_adjustment(self, data: dict):
        adjustment = await self.local.add_player_adjustment(data)
        await self._queue("playerAdjustment", adjustment.id, "create", adjustment.to_json_dict())
        return adjustment

    async def upsert_player_adjustment(self, adjustment):
        adjustment = await self.local.upsert_player_adjustment(adjustment)
        await self._queue("playerAdjustment", adjustment.id, "create", adjustment.to_json_dict())
        return adjustment

    async def update_player_adjustment(self, player_id: str, adjustment_id: str, patch: dict):
        adjustment = await self.local.update_player_adjustment(player_id, adjustment_id, patch)
        if adjustment is not None:
            await self._queue("playerAdjustment", adjustment_id, "update", adjustment.to_json_dict())
        return adjustment

    async def delete_player_adjustment(self, player_id: str, adjustment_id: str) -> bool:
        deleted = await self.local.delete_player_adjustment(player_id, adjustment_id)
        if deleted:
            await self._queue("playerAdjustment", adjustment_id, "delete", {"playerId": player_id})
        return deleted

    # ---------- Warmup plan ----------

    async def save_warmup_plan(self, plan):
        saved = await self.local.save_warmup_plan(plan)
        await self._queue("warmupPlan", WARMUP_PLAN_ENTITY_ID, "update", saved.to_json_dict())
        return saved

    async def delete_warmup_plan(self) -> bool:
        deleted = await self.local.delete_warmup_plan()
        if deleted:
            await self._queue("warmupPlan", WARMUP_PLAN_ENTITY_ID, "delete")
        return deleted

    # ---------- Remote → local ----------

    async def apply_remote(self, entity_type: str, entity_id: str, data: Any):
        """
        Write a remote winner into the local store without queueing it.

        data=None means the record no longer exists remotely.
        """
        local = self.local
        logger.debug(f"Applying remote {entity_type}/{entity_id}")
        if entity_type == "player":
            if data is None:
                await local.delete_player(entity_id)
            else:
                await local.upsert_player(data)
        elif entity_type == "team":
            if data is None:
                await local.delete_team(entity_id)
            else:
                await local.upsert_team(data)
        elif entity_type == "teamRoster":
            await local.set_team_roster(entity_id, data or [])
        elif entity_type == "season":
            if data is None:
                await local.delete_season(entity_id)
            else:
                await local.upsert_season(data)
        elif entity_type == "tournament":
            if data is None:
                await local.delete_tournament(entity_id)
            else:
                await local.upsert_tournament(data)
        elif entity_type == "personnel":
            if data is None:
                await local.remove_personnel_member(entity_id)
            else:
                await local.upsert_personnel_member(data)
        elif entity_type == "game":
            if data is None:
                await local.delete_game(entity_id)
            else:
                await local.save_game(entity_id, data)
        elif entity_type == "playerAdjustment":
            if data is None:
                for player_id, items in (await local.get_all_player_adjustments()).items():
                    if any(item.id == entity_id for item in items):
                        await local.delete_player_adjustment(player_id, entity_id)
            else:
                await local.upsert_player_adjustment(data)
        elif entity_type == "warmupPlan":
            if data is None:
                await local.delete_warmup_plan()
            else:
                await local.save_warmup_plan(data)
        elif entity_type == "settings":
            if data is not None:
                await local.save_settings(data)
        else:
            logger.warning(f"Ignoring remote record of unknown type {entity_type}/{entity_id}")

    async def expand_resync(self) -> int:
        """Queue an update for every entity in the partition. Returns the count."""
        if not self.sync_enabled:
            return 0
        local = self.local
        ops: list[tuple[str, str, Any]] = []
        ops += [("player", p.id, p.to_json_dict()) for p in await local.get_players()]
        ops += [("team", t.id, t.to_json_dict()) for t in await local.get_teams(include_archived=True)]
        ops += [
            ("teamRoster", team_id, [entry.to_json_dict() for entry in entries])
            for team_id, entries in (await local.get_all_team_rosters()).items()
        ]
        ops += [("season", s.id, s.to_json_dict()) for s in await local.get_seasons(include_archived=True)]
        ops += [("tournament", t.id, t.to_json_dict()) for t in await local.get_tournaments(include_archived=True)]
        ops += [("personnel", m.id, m.to_json_dict()) for m in await local.get_all_personnel()]
        ops += [("game", game_id, g.to_json_dict()) for game_id, g in (await local.get_games()).items()]
        for items in (await local.get_all_player_adjustments()).values():
            ops += [("playerAdjustment", a.id, a.to_json_dict()) for a in items]
        plan = await local.get_warmup_plan()
        if plan is not None:
            ops.append(("warmupPlan", WARMUP_PLAN_ENTITY_ID, plan.to_json_dict()))
        ops.append(("settings", SETTINGS_ENTITY_ID, (await local.get_settings()).to_json_dict()))

        for entity_type, entity_id, payload in ops:
            await self._queue(entity_type, entity_id, "update", payload)
        logger.info(f"Resync queued {len(ops)} operation(s)")
        return len(ops)
