"""
Principal-scoped CRUD over the partitioned key/value store.

Each entity collection lives under one base key, scoped to the principal's
namespace (e.g. "f47ac10b58cc_masterRoster"). Read-modify-write sequences
hold a per-key asyncio.Lock; writes invalidate the key's cache entry.
"""
import asyncio
import copy
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from matchstore.errors import AlreadyExists, InvalidArgument, NotInitialized
from matchstore.identifiers import generate_id, namespace_prefix, scope_key, validate_principal_id
from matchstore.kvstore import KeyValueHandle, PartitionedKeyValueStore
from matchstore.models import (
    AppSettings,
    Game,
    GameEvent,
    Personnel,
    Player,
    PlayerAdjustment,
    Season,
    Team,
    TeamPlayer,
    TimerState,
    Tournament,
    WarmupPlan,
)

logger = logging.getLogger("matchstore.datastore")

# Base storage keys
MASTER_ROSTER_KEY = "masterRoster"
TEAMS_INDEX_KEY = "teamsIndex"
TEAM_ROSTERS_KEY = "teamRosters"
SEASONS_LIST_KEY = "seasons"
TOURNAMENTS_LIST_KEY = "tournaments"
PERSONNEL_KEY = "personnel"
SAVED_GAMES_KEY = "savedGames"
PLAYER_ADJUSTMENTS_KEY = "playerAdjustments"
WARMUP_PLAN_KEY = "warmupPlan"
APP_SETTINGS_KEY = "appSettings"
TIMER_STATE_KEY = "timerState"

BASE_KEYS = (
    MASTER_ROSTER_KEY,
    TEAMS_INDEX_KEY,
    TEAM_ROSTERS_KEY,
    SEASONS_LIST_KEY,
    TOURNAMENTS_LIST_KEY,
    PERSONNEL_KEY,
    SAVED_GAMES_KEY,
    PLAYER_ADJUSTMENTS_KEY,
    WARMUP_PLAN_KEY,
    APP_SETTINGS_KEY,
    TIMER_STATE_KEY,
)

# Validation limits
NAME_MAX = 100
NOTES_MAX = 1000


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def club_season_for_date(date_str: str, start_date: str = "2000-10-01", end_date: str = "2000-05-01") -> str:
    """
    Club season label for a date.

    Only month and day of start_date/end_date are used. A window that wraps
    the new year yields labels like "24/25"; a window inside one calendar
    year yields "2024". Dates outside the window are "off-season".
    """
    day = date.fromisoformat(date_str[:10])
    start_month, start_day = (int(part) for part in start_date.split("-")[1:3])
    end_month, end_day = (int(part) for part in end_date.split("-")[1:3])
    current = (day.month, day.day)
    start = (start_month, start_day)
    end = (end_month, end_day)

    if start <= end:
        if start <= current <= end:
            return str(day.year)
        return "off-season"

    if current >= start:
        return f"{str(day.year)[2:]}/{str(day.year + 1)[2:]}"
    if current <= end:
        return f"{str(day.year - 1)[2:]}/{str(day.year)[2:]}"
    return "off-season"


def normalize_name(name: Optional[str]) -> str:
    return " ".join((name or "").split())


def _compare_name(name: Optional[str]) -> str:
    return normalize_name(name).lower()


def _normalize_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def team_composite_key(name, bound_season_id=None, bound_tournament_id=None, bound_series_id=None, game_type=None) -> str:
    parts = [_compare_name(name)]
    if bound_season_id:
        parts.append(f"season:{bound_season_id}")
    if bound_tournament_id:
        parts.append(f"tournament:{bound_tournament_id}")
    if bound_series_id:
        parts.append(f"series:{bound_series_id}")
    if game_type:
        parts.append(f"type:{game_type}")
    return "::".join(parts)


def season_composite_key(season) -> str:
    return "::".join([
        _compare_name(season.name),
        f"clubSeason:{season.club_season or 'none'}",
        f"gameType:{season.game_type or 'none'}",
        f"gender:{season.gender or 'none'}",
        f"ageGroup:{season.age_group or 'none'}",
        f"leagueId:{season.league_id or 'none'}",
    ])


def tournament_composite_key(tournament) -> str:
    return "::".join([
        _compare_name(tournament.name),
        f"clubSeason:{tournament.club_season or 'none'}",
        f"gameType:{tournament.game_type or 'none'}",
        f"gender:{tournament.gender or 'none'}",
        f"ageGroup:{tournament.age_group or 'none'}",
    ])


def camel_keys(data: dict) -> dict:
    """Accept either snake_case or camelCase field names."""
    return {to_camel(key) if "_" in key else key: value for key, value in data.items()}


def _coerce(model_cls, value):
    if isinstance(value, model_cls):
        return value
    return model_cls.model_validate(camel_keys(dict(value)))


def _merge(model, updates: dict):
    return type(model).model_validate({**model.to_json_dict(), **camel_keys(updates)})


def _game_with_id(game, game_id: str) -> Game:
    data = game.to_json_dict() if isinstance(game, Game) else camel_keys(dict(game))
    return Game.model_validate({**data, "id": game_id})


def _check_name(entity: str, name: Optional[str]) -> str:
    trimmed = normalize_name(name)
    if not trimmed:
        raise InvalidArgument(f"{entity} name cannot be empty")
    if len(trimmed) > NAME_MAX:
        raise InvalidArgument(f"{entity} name cannot exceed {NAME_MAX} characters (got {len(trimmed)})")
    return trimmed


def _check_notes(entity: str, notes: Optional[str]):
    if notes and len(notes) > NOTES_MAX:
        raise InvalidArgument(f"{entity} notes cannot exceed {NOTES_MAX} characters (got {len(notes)})")


class LocalDataStore:
    """
    CRUD façade over one principal's partition.

    Usage:
        store = LocalDataStore(kv, principal_id)
        await store.initialize()
        player = await store.create_player({"name": "Aino"})
    """

    def __init__(self, kv: PartitionedKeyValueStore, principal_id: str, namespace: Optional[str] = None):
        """
        Args:
            kv: Key/value store holding the principal's partition
            principal_id: Owning principal (required)
            namespace: Explicit key namespace; defaults to the principal's prefix
        """
        self.kv = kv
        self.principal_id = validate_principal_id(principal_id)
        self.namespace = namespace
        self._handle: Optional[KeyValueHandle] = None
        self._owns_handle = True
        self._cache: dict[str, Any] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ---------- Lifecycle ----------

    async def initialize(self):
        if self.is_initialized():
            return
        self._handle = await self.kv.open(self.principal_id)
        logger.info(f"Local store ready for namespace {self.key_prefix!r}")

    async def close(self):
        self.clear_cache()
        if self._handle is not None and self._owns_handle:
            await self.kv.close(self._handle)
        self._handle = None

    def is_initialized(self) -> bool:
        return self._handle is not None and not self._handle.closed

    def _ensure_initialized(self):
        if not self.is_initialized():
            raise NotInitialized("LocalDataStore is not initialized")

    def with_namespace(self, namespace: str) -> "LocalDataStore":
        """Store sharing this store's handle but writing under another namespace."""
        self._ensure_initialized()
        other = LocalDataStore(self.kv, self.principal_id, namespace=namespace)
        other._handle = self._handle
        other._owns_handle = False
        return other

    @property
    def handle(self) -> Optional[KeyValueHandle]:
        return self._handle

    @property
    def key_prefix(self) -> str:
        return f"{self.namespace or namespace_prefix(self.principal_id)}_"

    def key(self, base_key: str) -> str:
        if self.namespace is None:
            return scope_key(base_key, self.principal_id)
        return f"{self.namespace}_{base_key}"

    def clear_cache(self):
        self._cache.clear()

    def _lock(self, base_key: str) -> asyncio.Lock:
        if base_key not in self._locks:
            self._locks[base_key] = asyncio.Lock()
        return self._locks[base_key]

    # ---------- Raw access ----------

    async def _load(self, base_key: str, default):
        self._ensure_initialized()
        if base_key in self._cache:
            return copy.deepcopy(self._cache[base_key])
        raw = await self.kv.get(self._handle, self.key(base_key))
        if not raw:
            return default
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted JSON under {base_key}, using empty value: {e}")
            return default
        self._cache[base_key] = value
        return copy.deepcopy(value)

    async def _save(self, base_key: str, value):
        self._ensure_initialized()
        self._cache.pop(base_key, None)
        await self.kv.set(self._handle, self.key(base_key), json.dumps(value))

    async def _remove(self, base_key: str) -> bool:
        self._ensure_initialized()
        self._cache.pop(base_key, None)
        return await self.kv.remove(self._handle, self.key(base_key))

    def _parse_list(self, model_cls, items, label: str) -> list:
        parsed = []
        for item in items or []:
            try:
                parsed.append(model_cls.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid {label} record: {e.error_count()} error(s)")
        return parsed

    # ---------- Players ----------

    async def _load_players(self) -> list[Player]:
        return self._parse_list(Player, await self._load(MASTER_ROSTER_KEY, []), "player")

    async def _save_players(self, players: list[Player]):
        await self._save(MASTER_ROSTER_KEY, [p.to_json_dict() for p in players])

    async def get_players(self) -> list[Player]:
        return await self._load_players()

    async def create_player(self, data: dict) -> Player:
        self._ensure_initialized()
        data = camel_keys(data)
        name = _check_name("Player", data.get("name"))
        _check_notes("Player", data.get("notes"))
        async with self._lock(MASTER_ROSTER_KEY):
            players = await self._load_players()
            player = Player.model_validate({
                **data,
                "id": generate_id("player", self.principal_id),
                "name": name,
                "nickname": _normalize_optional(data.get("nickname")),
            })
            players.append(player)
            await self._save_players(players)
        logger.debug(f"Created player {player.id}")
        return player

    async def update_player(self, player_id: str, updates: dict) -> Optional[Player]:
        self._ensure_initialized()
        updates = camel_keys(updates)
        if "name" in updates:
            updates["name"] = _check_name("Player", updates["name"])
        if "nickname" in updates:
            updates["nickname"] = _normalize_optional(updates["nickname"])
        _check_notes("Player", updates.get("notes"))
        async with self._lock(MASTER_ROSTER_KEY):
            players = await self._load_players()
            for index, existing in enumerate(players):
                if existing.id == player_id:
                    updated = _merge(existing, {**updates, "id": player_id})
                    players[index] = updated
                    await self._save_players(players)
                    return updated
        return None

    async def delete_player(self, player_id: str) -> bool:
        self._ensure_initialized()
        async with self._lock(MASTER_ROSTER_KEY):
            players = await self._load_players()
            remaining = [p for p in players if p.id != player_id]
            if len(remaining) == len(players):
                return False
            await self._save_players(remaining)
        return True

    async def upsert_player(self, player) -> Player:
        self._ensure_initialized()
        player = _coerce(Player, player)
        player = player.model_copy(update={"name": _check_name("Player", player.name)})
        async with self._lock(MASTER_ROSTER_KEY):
            players = await self._load_players()
            for index, existing in enumerate(players):
                if existing.id == player.id:
                    players[index] = player
                    break
            else:
                players.append(player)
            await self._save_players(players)
        return player

    # ---------- Teams ----------

    async def _load_teams(self) -> dict[str, Team]:
        raw = await self._load(TEAMS_INDEX_KEY, {})
        teams = self._parse_list(Team, list(raw.values()), "team")
        return {team.id: team for team in teams}

    async def _save_teams(self, teams: dict[str, Team]):
        await self._save(TEAMS_INDEX_KEY, {team_id: team.to_json_dict() for team_id, team in teams.items()})

    def _check_team_fields(self, data: dict):
        _check_notes("Team", _normalize_optional(data.get("notes")))
        if data.get("boundSeriesId") and not data.get("boundTournamentId"):
            raise InvalidArgument("Cannot bind to tournament series without binding to tournament")

    @staticmethod
    def _team_key(team: Team) -> str:
        return team_composite_key(
            team.name, team.bound_season_id, team.bound_tournament_id, team.bound_series_id, team.game_type
        )

    async def get_teams(self, include_archived: bool = False) -> list[Team]:
        teams = list((await self._load_teams()).values())
        if include_archived:
            return teams
        return [team for team in teams if not team.archived]

    async def get_team_by_id(self, team_id: str) -> Optional[Team]:
        return (await self._load_teams()).get(team_id)

    async def create_team(self, data: dict) -> Team:
        self._ensure_initialized()
        data = camel_keys(data)
        name = _check_name("Team", data.get("name"))
        self._check_team_fields(data)
        async with self._lock(TEAMS_INDEX_KEY):
            teams = await self._load_teams()
            now = now_iso()
            team = Team.model_validate({
                **data,
                "id": generate_id("team", self.principal_id),
                "name": name,
                "notes": _normalize_optional(data.get("notes")),
                "ageGroup": _normalize_optional(data.get("ageGroup")),
                "createdAt": now,
                "updatedAt": now,
            })
            key = self._team_key(team)
            if any(self._team_key(existing) == key for existing in teams.values()):
                raise AlreadyExists("team", name)
            teams[team.id] = team
            await self._save_teams(teams)
        logger.debug(f"Created team {team.id}")
        return team

    async def update_team(self, team_id: str, updates: dict) -> Optional[Team]:
        self._ensure_initialized()
        updates = camel_keys(updates)
        if "name" in updates:
            updates["name"] = _check_name("Team", updates["name"])
        if "notes" in updates:
            updates["notes"] = _normalize_optional(updates["notes"])
        async with self._lock(TEAMS_INDEX_KEY):
            teams = await self._load_teams()
            existing = teams.get(team_id)
            if existing is None:
                return None
            merged = {**existing.to_json_dict(), **updates}
            self._check_team_fields(merged)
            updated = Team.model_validate({
                **merged,
                "id": team_id,
                "createdAt": existing.created_at,
                "updatedAt": now_iso(),
            })
            key = self._team_key(updated)
            if any(other.id != team_id and self._team_key(other) == key for other in teams.values()):
                raise AlreadyExists("team", updated.name)
            teams[team_id] = updated
            await self._save_teams(teams)
        return updated

    async def delete_team(self, team_id: str) -> bool:
        """Delete a team and its roster."""
        self._ensure_initialized()
        async with self._lock(TEAMS_INDEX_KEY):
            teams = await self._load_teams()
            if teams.pop(team_id, None) is None:
                return False
            await self._save_teams(teams)
        async with self._lock(TEAM_ROSTERS_KEY):
            rosters = await self._load(TEAM_ROSTERS_KEY, {})
            if rosters.pop(team_id, None) is not None:
                await self._save(TEAM_ROSTERS_KEY, rosters)
        return True

    async def upsert_team(self, team) -> Team:
        self._ensure_initialized()
        team = _coerce(Team, team)
        team = team.model_copy(update={"name": _check_name("Team", team.name)})
        async with self._lock(TEAMS_INDEX_KEY):
            teams = await self._load_teams()
            teams[team.id] = team
            await self._save_teams(teams)
        return team

    # ---------- Team rosters ----------

    async def get_team_roster(self, team_id: str) -> list[TeamPlayer]:
        rosters = await self._load(TEAM_ROSTERS_KEY, {})
        return self._parse_list(TeamPlayer, rosters.get(team_id, []), "roster entry")

    async def set_team_roster(self, team_id: str, roster: list):
        self._ensure_initialized()
        if not team_id:
            raise InvalidArgument("team_id is required")
        entries = [_coerce(TeamPlayer, entry) for entry in roster]
        async with self._lock(TEAM_ROSTERS_KEY):
            rosters = await self._load(TEAM_ROSTERS_KEY, {})
            rosters[team_id] = [entry.to_json_dict() for entry in entries]
            await self._save(TEAM_ROSTERS_KEY, rosters)

    async def get_all_team_rosters(self) -> dict[str, list[TeamPlayer]]:
        rosters = await self._load(TEAM_ROSTERS_KEY, {})
        return {
            team_id: self._parse_list(TeamPlayer, entries, "roster entry")
            for team_id, entries in rosters.items()
        }

    # ---------- Seasons & tournaments ----------

    async def _season_window(self) -> tuple[str, str]:
        settings = await self.get_settings()
        return settings.club_season_start_date, settings.club_season_end_date

    async def _club_season(self, start_date: Optional[str]) -> Optional[str]:
        if not start_date:
            return None
        window_start, window_end = await self._season_window()
        try:
            return club_season_for_date(start_date, window_start, window_end)
        except ValueError:
            raise InvalidArgument(f"Invalid start date: {start_date!r}")

    async def _load_seasons(self) -> list[Season]:
        return self._parse_list(Season, await self._load(SEASONS_LIST_KEY, []), "season")

    async def _save_seasons(self, seasons: list[Season]):
        await self._save(SEASONS_LIST_KEY, [s.to_json_dict() for s in seasons])

    async def get_seasons(self, include_archived: bool = False) -> list[Season]:
        seasons = await self._load_seasons()
        if include_archived:
            return seasons
        return [season for season in seasons if not season.archived]

    async def get_season_by_id(self, season_id: str) -> Optional[Season]:
        for season in await self._load_seasons():
            if season.id == season_id:
                return season
        return None

    async def create_season(self, name: str, **extra) -> Season:
        self._ensure_initialized()
        trimmed = _check_name("Season", name)
        extra = camel_keys(extra)
        _check_notes("Season", extra.get("notes"))
        club_season = await self._club_season(extra.get("startDate"))
        async with self._lock(SEASONS_LIST_KEY):
            seasons = await self._load_seasons()
            season = Season.model_validate({
                **extra,
                "id": generate_id("season", self.principal_id),
                "name": trimmed,
                "ageGroup": _normalize_optional(extra.get("ageGroup")),
                "clubSeason": club_season,
            })
            key = season_composite_key(season)
            if any(season_composite_key(existing) == key for existing in seasons):
                raise AlreadyExists("season", trimmed)
            seasons.append(season)
            await self._save_seasons(seasons)
        logger.debug(f"Created season {season.id}")
        return season

    async def update_season(self, season) -> Optional[Season]:
        self._ensure_initialized()
        season = _coerce(Season, season)
        name = _check_name("Season", season.name)
        _check_notes("Season", season.notes)
        club_season = await self._club_season(season.start_date)
        season = season.model_copy(update={"name": name, "club_season": club_season})
        async with self._lock(SEASONS_LIST_KEY):
            seasons = await self._load_seasons()
            index = next((i for i, s in enumerate(seasons) if s.id == season.id), None)
            if index is None:
                return None
            key = season_composite_key(season)
            if any(s.id != season.id and season_composite_key(s) == key for s in seasons):
                raise AlreadyExists("season", name)
            seasons[index] = season
            await self._save_seasons(seasons)
        return season

    async def delete_season(self, season_id: str) -> bool:
        self._ensure_initialized()
        async with self._lock(SEASONS_LIST_KEY):
            seasons = await self._load_seasons()
            remaining = [s for s in seasons if s.id != season_id]
            if len(remaining) == len(seasons):
                return False
            await self._save_seasons(remaining)
        return True

    async def upsert_season(self, season) -> Season:
        self._ensure_initialized()
        season = _coerce(Season, season)
        club_season = await self._club_season(season.start_date) or season.club_season
        season = season.model_copy(update={"name": _check_name("Season", season.name), "club_season": club_season})
        async with self._lock(SEASONS_LIST_KEY):
            seasons = await self._load_seasons()
            for index, existing in enumerate(seasons):
                if existing.id == season.id:
                    seasons[index] = season
                    break
            else:
                seasons.append(season)
            await self._save_seasons(seasons)
        return season

    async def _load_tournaments(self) -> list[Tournament]:
        return self._parse_list(Tournament, await self._load(TOURNAMENTS_LIST_KEY, []), "tournament")

    async def _save_tournaments(self, tournaments: list[Tournament]):
        await self._save(TOURNAMENTS_LIST_KEY, [t.to_json_dict() for t in tournaments])

    def _with_series_ids(self, data: dict) -> dict:
        series = []
        for index, entry in enumerate(data.get("series") or []):
            entry = camel_keys(dict(entry))
            if not entry.get("id"):
                entry["id"] = generate_id("series", self.principal_id, index)
            series.append(entry)
        return {**data, "series": series}

    async def get_tournaments(self, include_archived: bool = False) -> list[Tournament]:
        tournaments = await self._load_tournaments()
        if include_archived:
            return tournaments
        return [tournament for tournament in tournaments if not tournament.archived]

    async def get_tournament_by_id(self, tournament_id: str) -> Optional[Tournament]:
        for tournament in await self._load_tournaments():
            if tournament.id == tournament_id:
                return tournament
        return None

    async def create_tournament(self, name: str, **extra) -> Tournament:
        self._ensure_initialized()
        trimmed = _check_name("Tournament", name)
        extra = self._with_series_ids(camel_keys(extra))
        _check_notes("Tournament", extra.get("notes"))
        club_season = await self._club_season(extra.get("startDate"))
        async with self._lock(TOURNAMENTS_LIST_KEY):
            tournaments = await self._load_tournaments()
            tournament = Tournament.model_validate({
                **extra,
                "id": generate_id("tournament", self.principal_id),
                "name": trimmed,
                "ageGroup": _normalize_optional(extra.get("ageGroup")),
                "clubSeason": club_season,
            })
            key = tournament_composite_key(tournament)
            if any(tournament_composite_key(existing) == key for existing in tournaments):
                raise AlreadyExists("tournament", trimmed)
            tournaments.append(tournament)
            await self._save_tournaments(tournaments)
        logger.debug(f"Created tournament {tournament.id}")
        return tournament

    async def update_tournament(self, tournament) -> Optional[Tournament]:
        self._ensure_initialized()
        tournament = _coerce(Tournament, tournament)
        name = _check_name("Tournament", tournament.name)
        _check_notes("Tournament", tournament.notes)
        club_season = await self._club_season(tournament.start_date)
        tournament = Tournament.model_validate(self._with_series_ids({
            **tournament.to_json_dict(), "name": name, "clubSeason": club_season,
        }))
        async with self._lock(TOURNAMENTS_LIST_KEY):
            tournaments = await self._load_tournaments()
            index = next((i for i, t in enumerate(tournaments) if t.id == tournament.id), None)
            if index is None:
                return None
            key = tournament_composite_key(tournament)
            if any(t.id != tournament.id and tournament_composite_key(t) == key for t in tournaments):
                raise AlreadyExists("tournament", name)
            tournaments[index] = tournament
            await self._save_tournaments(tournaments)
        return tournament

    async def delete_tournament(self, tournament_id: str) -> bool:
        self._ensure_initialized()
        async with self._lock(TOURNAMENTS_LIST_KEY):
            tournaments = await self._load_tournaments()
            remaining = [t for t in tournaments if t.id != tournament_id]
            if len(remaining) == len(tournaments):
                return False
            await self._save_tournaments(remaining)
        return True

    async def upsert_tournament(self, tournament) -> Tournament:
        self._ensure_initialized()
        tournament = _coerce(Tournament, tournament)
        club_season = await self._club_season(tournament.start_date) or tournament.club_season
        tournament = tournament.model_copy(update={
            "name": _check_name("Tournament", tournament.name),
            "club_season": club_season,
        })
        async with self._lock(TOURNAMENTS_LIST_KEY):
            tournaments = await self._load_tournaments()
            for index, existing in enumerate(tournaments):
                if existing.id == tournament.id:
                    tournaments[index] = tournament
                    break
            else:
                tournaments.append(tournament)
            await self._save_tournaments(tournaments)
        return tournament

    # ---------- Personnel ----------

    async def _load_personnel(self) -> dict[str, Personnel]:
        raw = await self._load(PERSONNEL_KEY, {})
        members = self._parse_list(Personnel, list(raw.values()), "personnel")
        return {member.id: member for member in members}

    async def _save_personnel(self, collection: dict[str, Personnel]):
        await self._save(PERSONNEL_KEY, {pid: member.to_json_dict() for pid, member in collection.items()})

    async def get_all_personnel(self) -> list[Personnel]:
        """All personnel, newest first."""
        members = list((await self._load_personnel()).values())
        return sorted(members, key=lambda member: member.created_at, reverse=True)

    async def get_personnel_by_id(self, personnel_id: str) -> Optional[Personnel]:
        return (await self._load_personnel()).get(personnel_id)

    async def add_personnel_member(self, data: dict) -> Personnel:
        self._ensure_initialized()
        data = camel_keys(data)
        name = _check_name("Personnel", data.get("name"))
        _check_notes("Personnel", data.get("notes"))
        async with self._lock(PERSONNEL_KEY):
            collection = await self._load_personnel()
            if any(_compare_name(member.name) == _compare_name(name) for member in collection.values()):
                raise AlreadyExists("personnel", name)
            now = now_iso()
            member = Personnel.model_validate({
                **data,
                "id": generate_id("personnel", self.principal_id),
                "name": name,
                "createdAt": now,
                "updatedAt": now,
            })
            collection[member.id] = member
            await self._save_personnel(collection)
        return member

    async def update_personnel_member(self, personnel_id: str, updates: dict) -> Optional[Personnel]:
        self._ensure_initialized()
        updates = camel_keys(updates)
        async with self._lock(PERSONNEL_KEY):
            collection = await self._load_personnel()
            existing = collection.get(personnel_id)
            if existing is None:
                return None
            if "name" in updates:
                name = _check_name("Personnel", updates["name"])
                if any(
                    member.id != personnel_id and _compare_name(member.name) == _compare_name(name)
                    for member in collection.values()
                ):
                    raise AlreadyExists("personnel", name)
                updates["name"] = name
            _check_notes("Personnel", updates.get("notes"))
            updated = _merge(existing, {
                **updates,
                "id": personnel_id,
                "createdAt": existing.created_at,
                "updatedAt": now_iso(),
            })
            collection[personnel_id] = updated
            await self._save_personnel(collection)
        return updated

    async def upsert_personnel_member(self, member) -> Personnel:
        self._ensure_initialized()
        member = _coerce(Personnel, member)
        name = _check_name("Personnel", member.name)
        async with self._lock(PERSONNEL_KEY):
            collection = await self._load_personnel()
            existing = collection.get(member.id)
            member = member.model_copy(update={
                "name": name,
                "created_at": existing.created_at if existing else member.created_at,
            })
            collection[member.id] = member
            await self._save_personnel(collection)
        return member

    async def remove_personnel_member(self, personnel_id: str) -> bool:
        """Remove a personnel member. Cascades: strips the id from every game."""
        changed = await self.remove_personnel_cascade(personnel_id)
        return changed is not None

    async def remove_personnel_cascade(self, personnel_id: str) -> Optional[list[Game]]:
        """
        Remove a personnel member and return the games whose personnel list
        changed, or None when the member does not exist.

        Locks personnel before games. If writing the personnel collection
        fails after the games were rewritten, the games key is restored.
        """
        self._ensure_initialized()
        async with self._lock(PERSONNEL_KEY):
            async with self._lock(SAVED_GAMES_KEY):
                collection = await self._load_personnel()
                if personnel_id not in collection:
                    return None
                games_backup = await self._load(SAVED_GAMES_KEY, {})
                games = await self._load_games()

                changed = []
                for game in games.values():
                    if personnel_id in game.personnel_ids:
                        game.personnel_ids = [pid for pid in game.personnel_ids if pid != personnel_id]
                        changed.append(game)

                if changed:
                    await self._save_games(games)
                del collection[personnel_id]
                try:
                    await self._save_personnel(collection)
                except Exception:
                    if changed:
                        logger.error(f"Removing personnel {personnel_id} failed; restoring games")
                        await self._save(SAVED_GAMES_KEY, games_backup)
                    raise
        logger.info(f"Removed personnel {personnel_id} ({len(changed)} game(s) updated)")
        return changed

    # ---------- Games ----------

    async def _load_games(self) -> dict[str, Game]:
        raw = await self._load(SAVED_GAMES_KEY, {})
        games = {}
        for game_id, data in raw.items():
            try:
                games[game_id] = Game.model_validate({"id": game_id, **data})
            except ValidationError as e:
                logger.warning(f"Skipping invalid game {game_id}: {e.error_count()} error(s)")
        return games

    async def _save_games(self, games: dict[str, Game]):
        await self._save(SAVED_GAMES_KEY, {game_id: game.to_json_dict() for game_id, game in games.items()})

    @staticmethod
    def _validate_game(game: Game):
        _check_notes("Game", game.game_notes)
        if not game.game_date:
            raise InvalidArgument(f"Game {game.id} is missing gameDate")

    async def get_games(self) -> dict[str, Game]:
        return await self._load_games()

    async def get_game_by_id(self, game_id: str) -> Optional[Game]:
        return (await self._load_games()).get(game_id)

    async def create_game(self, data: Optional[dict] = None) -> Game:
        self._ensure_initialized()
        data = camel_keys(data or {})
        now = now_iso()
        game = Game.model_validate({
            "gameDate": date.today().isoformat(),
            "tacticalBallPosition": {"relX": 0.5, "relY": 0.5},
            **data,
            "id": generate_id("game", self.principal_id),
            "createdAt": now,
            "updatedAt": now,
        })
        return await self.save_game(game.id, game)

    async def save_game(self, game_id: str, game) -> Game:
        self._ensure_initialized()
        game = _game_with_id(game, game_id)
        self._validate_game(game)
        async with self._lock(SAVED_GAMES_KEY):
            games = await self._load_games()
            games[game_id] = game
            await self._save_games(games)
        return game

    async def save_all_games(self, games: dict):
        """Replace the whole games collection."""
        self._ensure_initialized()
        if not isinstance(games, dict):
            raise InvalidArgument("games must be a mapping of id to game")
        parsed = {}
        for game_id, game in games.items():
            game = _game_with_id(game, game_id)
            self._validate_game(game)
            parsed[game_id] = game
        async with self._lock(SAVED_GAMES_KEY):
            await self._save_games(parsed)

    async def delete_game(self, game_id: str) -> bool:
        self._ensure_initialized()
        async with self._lock(SAVED_GAMES_KEY):
            games = await self._load_games()
            if games.pop(game_id, None) is None:
                return False
            await self._save_games(games)
        return True

    async def add_game_event(self, game_id: str, event) -> Optional[Game]:
        self._ensure_initialized()
        event = _coerce(GameEvent, event)
        async with self._lock(SAVED_GAMES_KEY):
            games = await self._load_games()
            game = games.get(game_id)
            if game is None:
                return None
            game.game_events = [*game.game_events, event]
            await self._save_games(games)
        return game

    async def update_game_event(self, game_id: str, event_index: int, event) -> Optional[Game]:
        self._ensure_initialized()
        event = _coerce(GameEvent, event)
        async with self._lock(SAVED_GAMES_KEY):
            games = await self._load_games()
            game = games.get(game_id)
            if game is None or not 0 <= event_index < len(game.game_events):
                return None
            events = list(game.game_events)
            events[event_index] = event
            game.game_events = events
            await self._save_games(games)
        return game

    async def remove_game_event(self, game_id: str, event_index: int) -> Optional[Game]:
        self._ensure_initialized()
        async with self._lock(SAVED_GAMES_KEY):
            games = await self._load_games()
            game = games.get(game_id)
            if game is None or not 0 <= event_index < len(game.game_events):
                return None
            events = list(game.game_events)
            del events[event_index]
            game.game_events = events
            await self._save_games(games)
        return game

    # ---------- Settings ----------

    async def get_settings(self) -> AppSettings:
        raw = await self._load(APP_SETTINGS_KEY, None)
        if not isinstance(raw, dict):
            return AppSettings()
        try:
            return AppSettings.model_validate(raw)
        except ValidationError:
            logger.warning("Invalid settings structure, using defaults")
            return AppSettings()

    async def save_settings(self, settings):
        self._ensure_initialized()
        settings = _coerce(AppSettings, settings)
        async with self._lock(APP_SETTINGS_KEY):
            await self._save(APP_SETTINGS_KEY, settings.to_json_dict())

    async def update_settings(self, updates: dict) -> AppSettings:
        self._ensure_initialized()
        if not updates:
            raise InvalidArgument("Cannot update settings with an empty object")
        async with self._lock(APP_SETTINGS_KEY):
            updated = _merge(await self.get_settings(), updates)
            await self._save(APP_SETTINGS_KEY, updated.to_json_dict())
        return updated

    # ---------- Player adjustments ----------

    async def _load_adjustments(self) -> dict[str, list[PlayerAdjustment]]:
        raw = await self._load(PLAYER_ADJUSTMENTS_KEY, {})
        return {
            player_id: self._parse_list(PlayerAdjustment, items, "adjustment")
            for player_id, items in raw.items()
        }

    async def _save_adjustments(self, adjustments: dict[str, list[PlayerAdjustment]]):
        await self._save(PLAYER_ADJUSTMENTS_KEY, {
            player_id: [adj.to_json_dict() for adj in items]
            for player_id, items in adjustments.items()
        })

    def _build_adjustment(self, data: dict) -> PlayerAdjustment:
        data = camel_keys(data)
        _check_notes("Adjustment", data.get("note"))
        if not data.get("playerId"):
            raise InvalidArgument("Adjustment playerId is required")
        return PlayerAdjustment.model_validate({
            **data,
            "id": data.get("id") or generate_id("adjustment", self.principal_id),
            "appliedAt": data.get("appliedAt") or now_iso(),
        })

    async def get_player_adjustments(self, player_id: str) -> list[PlayerAdjustment]:
        return (await self._load_adjustments()).get(player_id, [])

    async def get_all_player_adjustments(self) -> dict[str, list[PlayerAdjustment]]:
        return await self._load_adjustments()

    async def add_player_adjustment(self, data: dict) -> PlayerAdjustment:
        self._ensure_initialized()
        adjustment = self._build_adjustment({**data, "id": None})
        async with self._lock(PLAYER_ADJUSTMENTS_KEY):
            adjustments = await self._load_adjustments()
            adjustments.setdefault(adjustment.player_id, []).append(adjustment)
            await self._save_adjustments(adjustments)
        return adjustment

    async def upsert_player_adjustment(self, adjustment) -> PlayerAdjustment:
        self._ensure_initialized()
        if isinstance(adjustment, PlayerAdjustment):
            adjustment = adjustment.to_json_dict()
        adjustment = self._build_adjustment(adjustment)
        async with self._lock(PLAYER_ADJUSTMENTS_KEY):
            adjustments = await self._load_adjustments()
            items = adjustments.setdefault(adjustment.player_id, [])
            for index, existing in enumerate(items):
                if existing.id == adjustment.id:
                    items[index] = adjustment
                    break
            else:
                items.append(adjustment)
            await self._save_adjustments(adjustments)
        return adjustment

    async def update_player_adjustment(self, player_id: str, adjustment_id: str, patch: dict) -> Optional[PlayerAdjustment]:
        self._ensure_initialized()
        patch = camel_keys(patch)
        _check_notes("Adjustment", patch.get("note"))
        async with self._lock(PLAYER_ADJUSTMENTS_KEY):
            adjustments = await self._load_adjustments()
            items = adjustments.get(player_id, [])
            for index, existing in enumerate(items):
                if existing.id == adjustment_id:
                    updated = _merge(existing, {**patch, "id": adjustment_id, "playerId": player_id})
                    items[index] = updated
                    await self._save_adjustments(adjustments)
                    return updated
        return None

    async def delete_player_adjustment(self, player_id: str, adjustment_id: str) -> bool:
        self._ensure_initialized()
        async with self._lock(PLAYER_ADJUSTMENTS_KEY):
            adjustments = await self._load_adjustments()
            items = adjustments.get(player_id, [])
            remaining = [adj for adj in items if adj.id != adjustment_id]
            if len(remaining) == len(items):
                return False
            adjustments[player_id] = remaining
            await self._save_adjustments(adjustments)
        return True

    # ---------- Warmup plan ----------

    async def get_warmup_plan(self) -> Optional[WarmupPlan]:
        raw = await self._load(WARMUP_PLAN_KEY, None)
        if not raw:
            return None
        try:
            return WarmupPlan.model_validate(raw)
        except ValidationError:
            logger.error("Invalid warmup plan structure")
            return None

    async def save_warmup_plan(self, plan) -> WarmupPlan:
        self._ensure_initialized()
        plan = _coerce(WarmupPlan, plan)
        plan = plan.model_copy(update={"last_modified": now_iso(), "is_default": False})
        async with self._lock(WARMUP_PLAN_KEY):
            await self._save(WARMUP_PLAN_KEY, plan.to_json_dict())
        return plan

    async def delete_warmup_plan(self) -> bool:
        self._ensure_initialized()
        async with self._lock(WARMUP_PLAN_KEY):
            return await self._remove(WARMUP_PLAN_KEY)

    # ---------- Timer state ----------

    async def get_timer_state(self) -> Optional[TimerState]:
        raw = await self._load(TIMER_STATE_KEY, None)
        if not raw:
            return None
        try:
            return TimerState.model_validate(raw)
        except ValidationError:
            logger.debug("Discarding invalid timer state")
            return None

    async def save_timer_state(self, state):
        self._ensure_initialized()
        await self._save(TIMER_STATE_KEY, _coerce(TimerState, state).to_json_dict())

    async def clear_timer_state(self):
        self._ensure_initialized()
        await self._remove(TIMER_STATE_KEY)

    # ---------- Data management ----------

    async def clear_all_user_data(self) -> int:
        """Delete every key in this store's namespace."""
        self._ensure_initialized()
        removed = await self.kv.clear_prefix(self._handle, self.key_prefix)
        self.clear_cache()
        logger.info(f"Cleared {removed} key(s) under {self.key_prefix!r}")
        return removed

    async def size(self) -> int:
        """Approximate bytes stored in this namespace."""
        self._ensure_initialized()
        return await self.kv.size_of(self._handle, self.key_prefix)
