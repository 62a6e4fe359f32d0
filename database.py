"""
MongoDB persistence for HyeneScores

Collections:
  managers   {_id: manager id, name}
  seasons    {championship, season_number, standings, played_matchdays, exempt_team}
  matches    one document per game {championship, season, matchday, home_team,
             away_team, home_score, away_score, exempt_team}
  champions  {championship, season, champion_name, runner_up_name}
  pantheon   {manager_name, titles, breakdown}
  penalties  {championship, season, team_name, points}

Connection settings come from DATABASE_URL and DATABASE_NAME. Without them
``db`` is None: reads return an empty dataset and writes raise.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pymongo import ASCENDING, MongoClient

_log = logging.getLogger("hyenescores.database")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
MATCHES_PAGE_SIZE = 1000

_client = MongoClient(DATABASE_URL) if DATABASE_URL and DATABASE_NAME else None
db = _client[DATABASE_NAME] if _client is not None else None


def _collection(name: str):
    if db is None:
        raise RuntimeError("Database not configured")
    return db[name]


def _now():
    return datetime.now(timezone.utc)


def create_documents(collection_name: str, rows: List[dict]) -> int:
    """Insert ``rows`` stamped with created_at/updated_at; returns how many were written."""
    if not rows:
        return 0
    now = _now()
    result = _collection(collection_name).insert_many(
        [{**row, "created_at": now, "updated_at": now} for row in rows]
    )
    return len(result.inserted_ids)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = _collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _upsert(collection_name: str, match: dict, values: dict):
    _collection(collection_name).update_one(
        match,
        {"$set": {**values, "updated_at": _now()}, "$setOnInsert": {"created_at": _now()}},
        upsert=True,
    )


def empty_dataset() -> dict:
    return {
        "version": "2.0",
        "entities": {"managers": {}, "seasons": {}, "matches": []},
        "penalties": {},
    }


# ═══════════════════════════════════════════════════════════════
# READ
# ═══════════════════════════════════════════════════════════════

def _fetch_all_matches() -> List[dict]:
    games = []
    offset = 0
    while True:
        page = list(
            _collection("matches").find({})
            .sort([("matchday", ASCENDING), ("_id", ASCENDING)])
            .skip(offset).limit(MATCHES_PAGE_SIZE)
        )
        games.extend(page)
        if len(page) < MATCHES_PAGE_SIZE:
            return games
        offset += MATCHES_PAGE_SIZE


def fetch_dataset() -> dict:
    """Read every collection back into the v2.0 document shape."""
    if db is None:
        _log.info("Database not configured, starting with an empty league")
        return empty_dataset()

    managers = {
        str(m["_id"]): {"id": str(m["_id"]), "name": m.get("name")}
        for m in get_documents("managers")
    }

    seasons = {}
    for s in get_documents("seasons"):
        key = f"{s['championship']}_s{s['season_number']}"
        seasons[key] = {
            "championship": s["championship"],
            "season": s["season_number"],
            "standings": s.get("standings") or [],
            "playedMatchdays": s.get("played_matchdays") or 0,
        }
        if s.get("exempt_team"):
            seasons[key]["exemptTeam"] = s["exempt_team"]

    blocks: Dict[tuple, dict] = {}
    for m in _fetch_all_matches():
        key = (m["championship"], m["season"], m["matchday"])
        if key not in blocks:
            blocks[key] = {
                "championship": m["championship"],
                "season": m["season"],
                "matchday": m["matchday"],
                "exempt": m.get("exempt_team") or "",
                "games": [],
            }
        blocks[key]["games"].append({
            "id": str(m["_id"]),
            "homeTeam": m.get("home_team"),
            "awayTeam": m.get("away_team"),
            "homeScore": m.get("home_score"),
            "awayScore": m.get("away_score"),
        })

    penalties = {
        f"{p['championship']}_{p['season']}_{p['team_name']}": p.get("points", 0)
        for p in get_documents("penalties")
    }

    _log.info(f"Loaded {len(managers)} managers, {len(seasons)} seasons, {len(blocks)} matchdays")
    return {
        "version": "2.0",
        "entities": {"managers": managers, "seasons": seasons, "matches": list(blocks.values())},
        "penalties": penalties,
    }


# ═══════════════════════════════════════════════════════════════
# WRITE
# ═══════════════════════════════════════════════════════════════

def save_manager(manager_id: str, name: str):
    _upsert("managers", {"_id": manager_id}, {"name": name})
    _log.debug(f"Saved manager {manager_id}")


def delete_manager(manager_id: str):
    _collection("managers").delete_one({"_id": manager_id})


def rename_manager(manager_id: str, old_name: str, new_name: str):
    """Rename and cascade to every collection that stores the name."""
    _collection("managers").update_one({"_id": manager_id}, {"$set": {"name": new_name, "updated_at": _now()}})
    cascade = [
        ("matches", "home_team"),
        ("matches", "away_team"),
        ("matches", "exempt_team"),
        ("seasons", "exempt_team"),
        ("champions", "champion_name"),
        ("champions", "runner_up_name"),
        ("pantheon", "manager_name"),
        ("penalties", "team_name"),
    ]
    for collection_name, field_name in cascade:
        db[collection_name].update_many({field_name: old_name}, {"$set": {field_name: new_name}})
    _log.debug(f"Renamed manager {manager_id}: {old_name} -> {new_name}")


def save_season(championship: str, season_number: int, standings: list,
                played_matchdays: int = 0, exempt_team: Optional[str] = None):
    values = {"standings": standings, "played_matchdays": played_matchdays}
    if exempt_team is not None:
        values["exempt_team"] = exempt_team
    _upsert("seasons", {"championship": championship, "season_number": season_number}, values)


def update_season_exempt(season: int, exempt_team: Optional[str]):
    _collection("matches").update_many({"season": season}, {"$set": {"exempt_team": exempt_team}})
    db["seasons"].update_many({"season_number": season, "championship": {"$ne": "ligue_hyenes"}},
                              {"$set": {"exempt_team": exempt_team}})


def save_matches(championship: str, season: int, matchday: int, games: list,
                 exempt_team: Optional[str] = None) -> int:
    """Replace the games of one matchday. Rows without both teams are not stored."""
    _collection("matches").delete_many({"championship": championship, "season": season, "matchday": matchday})
    saved = create_documents("matches", [
        {
            "championship": championship,
            "season": season,
            "matchday": matchday,
            "home_team": g.get("homeTeam"),
            "away_team": g.get("awayTeam"),
            "home_score": g.get("homeScore"),
            "away_score": g.get("awayScore"),
            "exempt_team": exempt_team,
        }
        for g in games if g.get("homeTeam") and g.get("awayTeam")
    ])
    _log.debug(f"Saved {saved} games for {championship} S{season} J{matchday}")
    return saved


def save_penalty(championship: str, season: int, team_name: str, points: int):
    _upsert("penalties", {"championship": championship, "season": season, "team_name": team_name},
            {"points": points})


def delete_penalty(championship: str, season: int, team_name: str):
    _collection("penalties").delete_one({"championship": championship, "season": season, "team_name": team_name})


def save_champion(championship: str, season: int, champion_name: str, runner_up_name: Optional[str] = None):
    _upsert("champions", {"championship": championship, "season": season},
            {"champion_name": champion_name, "runner_up_name": runner_up_name})


def update_pantheon(manager_name: str, titles: int, breakdown: Optional[dict] = None):
    _upsert("pantheon", {"manager_name": manager_name}, {"titles": titles, "breakdown": breakdown or {}})


def import_dataset(document: dict):
    """Upsert a whole v2.0 document. Failing matchday blocks are logged and skipped."""
    entities = document.get("entities") or {}

    for manager_id, m in (entities.get("managers") or {}).items():
        save_manager(m.get("id") or manager_id, m.get("name"))

    for s in (entities.get("seasons") or {}).values():
        save_season(s.get("championship"), s.get("season"), s.get("standings") or [],
                    s.get("playedMatchdays") or 0, s.get("exemptTeam"))

    blocks = entities.get("matches") or []
    failed = 0
    for block in blocks:
        try:
            save_matches(block["championship"], block["season"], block["matchday"],
                         block.get("games") or [], block.get("exempt") or None)
        except Exception as e:
            failed += 1
            _log.error(f"Import {block.get('championship')} S{block.get('season')} "
                       f"J{block.get('matchday')} failed: {e}")

    for key, points in (document.get("penalties") or {}).items():
        championship, season, team_name = key.split("_", 2)
        save_penalty(championship, int(season), team_name, points)

    _log.info(f"Imported {len(blocks) - failed}/{len(blocks)} matchday blocks")
