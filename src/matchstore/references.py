"""
Reference Matrix: every field holding a cross-entity identifier.

The same walker serves export (strip namespace prefixes), import (remap to
regenerated identifiers) and validation (confirm each reference resolves).
All functions operate on snapshot-shaped JSON dicts (camelCase keys).
"""
import copy
import logging
from typing import Callable, Iterator, Optional

from matchstore.identifiers import add_prefix, is_generated_id, strip_prefix
from matchstore.models import ReferenceReport

logger = logging.getLogger("matchstore.references")

IdMapper = Callable[[str], str]

# (collection, field, target, required)
# target names the collection the identifier must resolve in.
SCALAR_REFERENCES = (
    ("teams", "boundSeasonId", "seasons", False),
    ("teams", "boundTournamentId", "tournaments", False),
    ("teams", "boundSeriesId", "series", False),
    ("tournaments", "awardedPlayerId", "players", False),
    ("games", "teamId", "teams", False),
    ("games", "seasonId", "seasons", False),
    ("games", "tournamentId", "tournaments", False),
    ("games", "tournamentSeriesId", "series", False),
    ("playerAdjustments", "playerId", "players", True),
    ("playerAdjustments", "seasonId", "seasons", False),
    ("playerAdjustments", "teamId", "teams", False),
    ("playerAdjustments", "tournamentId", "tournaments", False),
)


def _map_value(value, mapper: IdMapper):
    if not value or not isinstance(value, str):
        return value
    return mapper(value)


def _map_list(values, mapper: IdMapper) -> list:
    return [_map_value(value, mapper) for value in values or []]


def _map_keys(mapping, mapper: IdMapper) -> dict:
    return {_map_value(key, mapper): value for key, value in (mapping or {}).items()}


def rewrite_references(
    snapshot: dict,
    mapper: IdMapper,
    fresh_id: Optional[Callable[[str], str]] = None,
) -> dict:
    """
    Return a copy of a snapshot dict with every Reference Matrix field
    passed through mapper.

    Args:
        snapshot: Snapshot-shaped dict (camelCase)
        mapper: Identifier rewrite applied to ids and references
        fresh_id: When given, game event ids and warmup section ids are
            replaced with fresh_id(entity_type) instead of mapped
    """
    data = copy.deepcopy(snapshot)

    for collection in ("players", "personnel"):
        for record in data.get(collection) or []:
            record["id"] = _map_value(record.get("id"), mapper)

    for collection, field, _target, _required in SCALAR_REFERENCES:
        for record in data.get(collection) or []:
            if field in record:
                record[field] = _map_value(record[field], mapper)

    for team in data.get("teams") or []:
        team["id"] = _map_value(team.get("id"), mapper)

    rosters = {}
    for team_id, entries in (data.get("teamRosters") or {}).items():
        for entry in entries or []:
            entry["playerId"] = _map_value(entry.get("playerId"), mapper)
        rosters[_map_value(team_id, mapper)] = entries
    data["teamRosters"] = rosters

    for season in data.get("seasons") or []:
        season["id"] = _map_value(season.get("id"), mapper)
        season["teamPlacements"] = _map_keys(season.get("teamPlacements"), mapper)

    for tournament in data.get("tournaments") or []:
        tournament["id"] = _map_value(tournament.get("id"), mapper)
        for series in tournament.get("series") or []:
            series["id"] = _map_value(series.get("id"), mapper)
        tournament["teamPlacements"] = _map_keys(tournament.get("teamPlacements"), mapper)

    for game in data.get("games") or []:
        game["id"] = _map_value(game.get("id"), mapper)
        for field in ("playersOnField", "availablePlayers"):
            for player in game.get(field) or []:
                player["id"] = _map_value(player.get("id"), mapper)
        game["selectedPlayerIds"] = _map_list(game.get("selectedPlayerIds"), mapper)
        game["personnelIds"] = _map_list(game.get("personnelIds"), mapper)
        game["assessments"] = _map_keys(game.get("assessments"), mapper)
        for event in game.get("gameEvents") or []:
            event["id"] = fresh_id("event") if fresh_id else _map_value(event.get("id"), mapper)
            for field in ("scorerId", "assisterId", "entityId"):
                if field in event:
                    event[field] = _map_value(event[field], mapper)

    for adjustment in data.get("playerAdjustments") or []:
        adjustment["id"] = _map_value(adjustment.get("id"), mapper)

    plan = data.get("warmupPlan")
    if plan:
        plan["id"] = _map_value(plan.get("id"), mapper)
        for section in plan.get("sections") or []:
            section["id"] = fresh_id("section") if fresh_id else _map_value(section.get("id"), mapper)

    settings = data.get("settings")
    if settings and settings.get("currentGameId"):
        settings["currentGameId"] = _map_value(settings["currentGameId"], mapper)

    return data


def portable_mapper(identifier: str) -> str:
    """Export rewrite: strip the namespace prefix of generated identifiers."""
    if is_generated_id(identifier):
        return strip_prefix(identifier)
    return identifier


def strip_references(snapshot: dict) -> dict:
    return rewrite_references(snapshot, portable_mapper)


def remap_mapper(id_map: dict[str, str], principal_id: str) -> IdMapper:
    """
    Import rewrite: generated identifiers found in id_map get their new id;
    generated identifiers absent from the snapshot are namespaced in place so
    validation can report them. Constant references are left untouched.
    """
    def mapper(identifier: str) -> str:
        if identifier in id_map:
            return id_map[identifier]
        if not is_generated_id(identifier):
            return identifier
        portable = strip_prefix(identifier)
        if portable in id_map:
            return id_map[portable]
        return add_prefix(identifier, principal_id)
    return mapper


# ---------- Validation ----------

def _known_ids(view: dict) -> dict[str, set]:
    series = {
        item.get("id")
        for tournament in view.get("tournaments") or []
        for item in tournament.get("series") or []
    }
    return {
        "players": {p.get("id") for p in view.get("players") or []},
        "teams": {t.get("id") for t in view.get("teams") or []},
        "seasons": {s.get("id") for s in view.get("seasons") or []},
        "tournaments": {t.get("id") for t in view.get("tournaments") or []},
        "series": series,
        "personnel": {p.get("id") for p in view.get("personnel") or []},
        "games": {g.get("id") for g in view.get("games") or []},
    }


def _game_references(game: dict) -> Iterator[tuple[str, str, str, bool]]:
    """Yield (field, identifier, target, required) for one game."""
    for player in game.get("playersOnField") or []:
        yield "playersOnField[].id", player.get("id"), "players", True
    for player in game.get("availablePlayers") or []:
        yield "availablePlayers[].id", player.get("id"), "players", False
    for player_id in game.get("selectedPlayerIds") or []:
        yield "selectedPlayerIds[]", player_id, "players", True
    for personnel_id in game.get("personnelIds") or []:
        yield "personnelIds[]", personnel_id, "personnel", True
    for player_id in (game.get("assessments") or {}):
        yield "assessments", player_id, "players", False
    for event in game.get("gameEvents") or []:
        yield "gameEvents[].scorerId", event.get("scorerId"), "players", True
        yield "gameEvents[].assisterId", event.get("assisterId"), "players", True
        yield "gameEvents[].entityId", event.get("entityId"), "players", False


def check_references(view: dict) -> ReferenceReport:
    """
    Confirm every Reference Matrix field of a snapshot-shaped view resolves.

    Missing required references are errors; missing advisory references
    (bindings, placements, competition links) are warnings.
    """
    known = _known_ids(view)
    report = ReferenceReport()

    def check(location: str, identifier, target: str, required: bool):
        if not identifier:
            return
        if identifier in known[target]:
            return
        message = f"{location} references missing {target} '{identifier}'"
        (report.errors if required else report.warnings).append(message)

    for collection, field, target, required in SCALAR_REFERENCES:
        for record in view.get(collection) or []:
            check(f"{collection}[{record.get('id')}].{field}", record.get(field), target, required)

    for team_id, entries in (view.get("teamRosters") or {}).items():
        check(f"teamRosters[{team_id}]", team_id, "teams", True)
        for entry in entries or []:
            check(f"teamRosters[{team_id}].playerId", entry.get("playerId"), "players", True)

    for collection in ("seasons", "tournaments"):
        for record in view.get(collection) or []:
            for team_id in (record.get("teamPlacements") or {}):
                check(f"{collection}[{record.get('id')}].teamPlacements", team_id, "teams", False)

    for game in view.get("games") or []:
        for field, identifier, target, required in _game_references(game):
            check(f"games[{game.get('id')}].{field}", identifier, target, required)

    current_game_id = (view.get("settings") or {}).get("currentGameId")
    check("settings.currentGameId", current_game_id, "games", False)

    report.valid = not report.errors
    if report.errors:
        logger.warning(f"Reference check found {len(report.errors)} error(s), {len(report.warnings)} warning(s)")
    elif report.warnings:
        logger.info(f"Reference check passed with {len(report.warnings)} warning(s)")
    return report
