"""Shared Pydantic models for the local store, sync engine and cloud simulator.

Attributes are snake_case; persisted and exported JSON uses camelCase aliases.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StoreModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OpenModel(StoreModel):
    """Keeps unknown fields so records round-trip without loss."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


GameType = Literal["soccer", "futsal"]
Gender = Literal["boys", "girls"]


# ---------- Roster Models ----------

class Player(OpenModel):
    """Master roster player. Also used for on-field/available entries in games."""
    id: str
    name: str
    nickname: Optional[str] = None
    jersey_number: Optional[str] = None
    notes: Optional[str] = None
    is_goalie: bool = False
    received_fair_play_card: bool = False
    color: Optional[str] = None
    rel_x: Optional[float] = None
    rel_y: Optional[float] = None


class TeamPlayer(StoreModel):
    """Team roster membership entry."""
    player_id: str
    name: str
    nickname: Optional[str] = None
    jersey_number: Optional[str] = None
    is_goalie: bool = False
    notes: Optional[str] = None


class Team(StoreModel):
    """Team, optionally bound to a season or tournament (and series)."""
    id: str
    name: str
    color: Optional[str] = None
    notes: Optional[str] = None
    age_group: Optional[str] = None
    game_type: Optional[GameType] = None
    bound_season_id: Optional[str] = None
    bound_tournament_id: Optional[str] = None
    bound_series_id: Optional[str] = None
    archived: bool = False
    created_at: str
    updated_at: str


# ---------- Competition Models ----------

class TeamPlacement(StoreModel):
    placement: int
    award: Optional[str] = None
    note: Optional[str] = None


class TournamentSeries(StoreModel):
    """Level within a tournament (e.g., Elite, Kilpa)."""
    id: str
    level: str


class Season(StoreModel):
    id: str
    name: str
    location: Optional[str] = None
    period_count: Optional[int] = None
    period_duration: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    game_type: Optional[GameType] = None
    gender: Optional[Gender] = None
    age_group: Optional[str] = None
    league_id: Optional[str] = None
    custom_league_name: Optional[str] = None
    club_season: Optional[str] = None
    notes: Optional[str] = None
    color: Optional[str] = None
    archived: bool = False
    team_placements: dict[str, TeamPlacement] = Field(default_factory=dict)


class Tournament(StoreModel):
    id: str
    name: str
    location: Optional[str] = None
    period_count: Optional[int] = None
    period_duration: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    game_type: Optional[GameType] = None
    gender: Optional[Gender] = None
    age_group: Optional[str] = None
    club_season: Optional[str] = None
    notes: Optional[str] = None
    color: Optional[str] = None
    archived: bool = False
    series: list[TournamentSeries] = Field(default_factory=list)
    awarded_player_id: Optional[str] = None
    team_placements: dict[str, TeamPlacement] = Field(default_factory=dict)


class Personnel(StoreModel):
    """Coach, trainer or other staff member."""
    id: str
    name: str
    role: str = "other"
    phone: Optional[str] = None
    email: Optional[str] = None
    certifications: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: str
    updated_at: str


# ---------- Game Models ----------

class GameEvent(StoreModel):
    """Goal, substitution, period end, etc. Ordered within a game."""
    id: str
    type: Literal["goal", "opponentGoal", "substitution", "periodEnd", "gameEnd", "fairPlayCard"]
    time: float
    scorer_id: Optional[str] = None
    assister_id: Optional[str] = None
    entity_id: Optional[str] = None


class PlayerAssessment(OpenModel):
    overall_rating: Optional[float] = None
    sliders: dict[str, float] = Field(default_factory=dict)
    notes: str = ""
    minutes_played: Optional[int] = None
    created_at: Optional[int] = None
    created_by: Optional[str] = None


class Game(OpenModel):
    """
    Saved game. UI-only fields (drawings, tactical discs, ...) are kept as
    extra fields.
    """
    id: str
    team_name: str = "My Team"
    opponent_name: str = "Opponent"
    game_date: str
    game_time: str = ""
    game_location: str = ""
    home_or_away: Literal["home", "away"] = "home"
    home_score: int = 0
    away_score: int = 0
    game_notes: str = ""
    number_of_periods: int = 2
    period_duration_minutes: float = 10
    current_period: int = 1
    game_status: Literal["notStarted", "inProgress", "periodEnd", "gameEnd"] = "notStarted"
    is_played: bool = True
    team_id: Optional[str] = None
    season_id: str = ""
    tournament_id: str = ""
    tournament_series_id: Optional[str] = None
    tournament_level: str = ""
    league_id: Optional[str] = None
    age_group: str = ""
    game_type: Optional[GameType] = None
    gender: Optional[Gender] = None
    players_on_field: list[Player] = Field(default_factory=list)
    available_players: list[Player] = Field(default_factory=list)
    selected_player_ids: list[str] = Field(default_factory=list)
    game_events: list[GameEvent] = Field(default_factory=list)
    personnel_ids: list[str] = Field(default_factory=list)
    assessments: dict[str, PlayerAssessment] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PlayerAdjustment(StoreModel):
    """Manual stat adjustment for games played outside the app."""
    id: str
    player_id: str
    season_id: Optional[str] = None
    team_id: Optional[str] = None
    tournament_id: Optional[str] = None
    external_team_name: Optional[str] = None
    opponent_name: Optional[str] = None
    score_for: Optional[int] = None
    score_against: Optional[int] = None
    game_date: Optional[str] = None
    home_or_away: Optional[Literal["home", "away", "neutral"]] = None
    include_in_season_tournament: Optional[bool] = None
    games_played_delta: int = 0
    goals_delta: int = 0
    assists_delta: int = 0
    fair_play_cards_delta: Optional[int] = None
    note: Optional[str] = None
    created_by: Optional[str] = None
    applied_at: str


class WarmupPlanSection(StoreModel):
    id: str
    title: str
    content: str = ""


class WarmupPlan(StoreModel):
    id: str
    version: int = 1
    last_modified: str
    is_default: bool = False
    sections: list[WarmupPlanSection] = Field(default_factory=list)


class AppSettings(OpenModel):
    current_game_id: Optional[str] = None
    last_home_team_name: str = ""
    language: str = "fi"
    has_seen_app_guide: bool = False
    use_demand_correction: bool = False
    has_configured_season_dates: bool = False
    club_season_start_date: str = "2000-10-01"
    club_season_end_date: str = "2000-05-01"


class TimerState(StoreModel):
    """Running game clock. Local only: never synced, never exported."""
    game_id: str
    time_elapsed_in_seconds: float
    timestamp: int
    was_running: bool = True


# ---------- Sync Models ----------

SyncEntityType = Literal[
    "player", "team", "teamRoster", "season", "tournament", "personnel",
    "game", "playerAdjustment", "warmupPlan", "settings", "resync",
]
SyncOperationType = Literal["create", "update", "delete"]
SyncOperationStatus = Literal["pending", "syncing", "failed"]


class SyncOperationInput(StoreModel):
    """Mutation to enqueue. The owning principal is stamped by the queue."""
    entity_type: SyncEntityType
    entity_id: str
    operation: SyncOperationType
    payload: Any = None
    timestamp: int


class SyncOperation(StoreModel):
    """Persisted queue entry."""
    id: str
    principal_id: str
    entity_type: SyncEntityType
    entity_id: str
    operation: SyncOperationType
    payload: Any = None
    timestamp: int
    status: SyncOperationStatus = "pending"
    retry_count: int = 0
    max_retries: int = 10
    last_error: Optional[str] = None
    last_attempt: Optional[int] = None
    created_at: int


class SyncQueueStats(StoreModel):
    pending: int = 0
    syncing: int = 0
    failed: int = 0
    total: int = 0
    oldest_timestamp: Optional[int] = None


class SyncStatusInfo(StoreModel):
    state: Literal["synced", "syncing", "pending", "error", "offline"]
    pending_count: int = 0
    failed_count: int = 0
    last_synced_at: Optional[int] = None
    is_online: bool = True


class SyncRunResult(StoreModel):
    synced: int = 0
    requeued: int = 0
    failed: int = 0
    skipped: int = 0


class RemoteRecord(StoreModel):
    """Row in the remote store, keyed by (principal, entity type, entity id)."""
    entity_type: str
    entity_id: str
    principal_id: str
    data: Any = None
    updated_at: int


class ConflictResolution(StoreModel):
    entity_type: str
    entity_id: str
    winner: Literal["local", "remote"]
    local_timestamp: int
    remote_timestamp: Optional[int] = None
    action_taken: Literal["pushed", "deleted", "pulled", "skipped"]


# ---------- Backup Models ----------

SNAPSHOT_FORMAT_VERSION = 1


class Snapshot(StoreModel):
    """Portable export of one principal's partition."""
    format_version: int
    exported_at: str
    players: list[Player] = Field(default_factory=list)
    teams: list[Team] = Field(default_factory=list)
    team_rosters: dict[str, list[TeamPlayer]] = Field(default_factory=dict)
    seasons: list[Season] = Field(default_factory=list)
    tournaments: list[Tournament] = Field(default_factory=list)
    personnel: list[Personnel] = Field(default_factory=list)
    games: list[Game] = Field(default_factory=list)
    player_adjustments: list[PlayerAdjustment] = Field(default_factory=list)
    warmup_plan: Optional[WarmupPlan] = None
    settings: AppSettings = Field(default_factory=AppSettings)

    def to_json_dict(self) -> dict:
        data = super().to_json_dict()
        data.setdefault("warmupPlan", None)
        return data


class ReferenceReport(StoreModel):
    valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ImportResult(StoreModel):
    mode: Literal["merge", "replace"]
    counts: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    report: Optional[ReferenceReport] = None
    resync_queued: bool = False


# ---------- Cloud API Models ----------

class CreateSessionRequest(StoreModel):
    principal_id: str


class SessionResponse(StoreModel):
    access_token: str
    principal_id: str
    expires_at: int


class UpsertRecordRequest(StoreModel):
    data: Any = None
    updated_at: int
