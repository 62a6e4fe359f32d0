"""
League state
============

The whole league lives in one immutable ``Dataset`` snapshot. Admin actions
are functions from snapshot to snapshot; ``recompute`` rebuilds every
derived table (standings, champions, pantheon) from a snapshot in one pass.

``League`` holds the current snapshot and its derived views and is the only
place a new snapshot replaces the old one. Write-backs to the database are
published to a ``SyncQueue`` and sent later by a background task.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from championships import (
    Championship, ExceptionTable, MATCHES_PER_MATCHDAY, MAX_MANAGER_NAME_LENGTH,
    STANDARD_MATCHDAYS, SUB_CHAMPIONSHIPS, parse_penalty_key, parse_season_key,
    penalty_key, season_key,
)
from honours import build_pantheon, entry_played_matchdays, resolve_all_champions, season_progress
from schemas import ChampionEntry, Manager, PantheonEntry, SeasonProgress, StandingRow
from standings import (
    AWAY_TEAM_KEYS, HOME_TEAM_KEYS, accumulate_team_stats, aggregate_meta, blocks_for,
    normalize_game, parse_score, played_matchdays, rank_standings,
)

_log = logging.getLogger("hyenescores.league")

DOCUMENT_VERSION = "2.0"


class LeagueError(ValueError):
    """An admin action was refused. The message is shown to the user."""


class ManagerNameError(LeagueError):
    pass


class DuplicateManagerError(ManagerNameError):
    pass


class ManagerNotFound(LeagueError):
    pass


class SeasonError(LeagueError):
    pass


class SeasonExistsError(SeasonError):
    pass


class PenaltyError(LeagueError):
    pass


class MatchdayError(LeagueError):
    pass


# ═══════════════════════════════════════════════════════════════
# SNAPSHOT
# ═══════════════════════════════════════════════════════════════

def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _row_document(row) -> dict:
    return row.model_dump() if isinstance(row, StandingRow) else dict(row)


@dataclass(frozen=True)
class MatchdayBlock:
    championship: str
    season: int
    matchday: int
    games: Tuple[dict, ...] = ()
    exempt: str = ""

    @classmethod
    def from_document(cls, doc) -> Optional["MatchdayBlock"]:
        if not isinstance(doc, Mapping):
            return None
        season, matchday = _as_int(doc.get("season")), _as_int(doc.get("matchday"))
        if season is None or matchday is None:
            return None
        games = doc.get("games")
        return cls(
            championship=str(doc.get("championship") or ""),
            season=season,
            matchday=matchday,
            games=tuple(g for g in games) if isinstance(games, list) else (),
            exempt=doc.get("exempt") or "",
        )

    def to_document(self) -> dict:
        doc = {
            "championship": self.championship,
            "season": self.season,
            "matchday": self.matchday,
            "games": [dict(g) if isinstance(g, Mapping) else g for g in self.games],
        }
        if self.exempt:
            doc["exempt"] = self.exempt
        return doc


@dataclass(frozen=True)
class SeasonEntry:
    championship: str
    season: int
    standings: Tuple = ()
    played_matchdays: int = 0
    exempt_team: str = ""

    def to_document(self) -> dict:
        doc = {
            "championship": self.championship,
            "season": self.season,
            "standings": [_row_document(r) for r in self.standings],
            "playedMatchdays": self.played_matchdays,
        }
        if self.exempt_team:
            doc["exemptTeam"] = self.exempt_team
        return doc


@dataclass(frozen=True)
class Dataset:
    managers: Mapping[str, Manager] = field(default_factory=dict)
    seasons: Mapping[str, SeasonEntry] = field(default_factory=dict)
    matches: Tuple[MatchdayBlock, ...] = ()
    penalties: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "Dataset":
        return cls()

    @classmethod
    def from_document(cls, doc: Mapping) -> "Dataset":
        """Read the v2.0 document shape, dropping what cannot be understood."""
        entities = doc.get("entities") or {}

        managers = {}
        for key, raw in (entities.get("managers") or {}).items():
            if not isinstance(raw, Mapping) or not raw.get("name"):
                continue
            manager_id = str(raw.get("id") or key)
            managers[manager_id] = Manager(id=manager_id, name=str(raw["name"]))

        seasons = {}
        for key, raw in (entities.get("seasons") or {}).items():
            if not isinstance(raw, Mapping):
                continue
            parsed = parse_season_key(key)
            season = _as_int(raw.get("season"))
            if season is None and parsed is not None:
                season = parsed[1]
            if season is None:
                continue
            standings = raw.get("standings")
            seasons[key] = SeasonEntry(
                championship=str(raw.get("championship") or key.rsplit("_s", 1)[0]),
                season=season,
                standings=tuple(r for r in standings if isinstance(r, Mapping))
                if isinstance(standings, list) else (),
                played_matchdays=_as_int(raw.get("playedMatchdays")) or 0,
                exempt_team=raw.get("exemptTeam") or "",
            )

        matches = tuple(
            block for block in (MatchdayBlock.from_document(b) for b in entities.get("matches") or [])
            if block is not None
        )

        penalties = {}
        for key, points in (doc.get("penalties") or {}).items():
            points = parse_score(points)
            if points is not None and points >= 0 and parse_penalty_key(key) is not None:
                penalties[key] = points

        return cls(managers=managers, seasons=seasons, matches=matches, penalties=penalties)

    def to_document(self) -> dict:
        return {
            "version": DOCUMENT_VERSION,
            "entities": {
                "managers": {mid: m.model_dump() for mid, m in self.managers.items()},
                "seasons": {key: entry.to_document() for key, entry in self.seasons.items()},
                "matches": [block.to_document() for block in self.matches],
            },
            "penalties": dict(self.penalties),
        }

    @property
    def roster(self) -> List[str]:
        return [m.name for m in self.managers.values() if m.name and m.name != "?"]

    def manager_by_name(self, name: str) -> Optional[Manager]:
        for manager in self.managers.values():
            if manager.name == name:
                return manager
        return None

    def penalty_for(self, championship: Championship, season: int, team_name: str) -> int:
        return self.penalties.get(penalty_key(championship, season, team_name), 0)

    def penalties_for(self, championship: Championship, season: int) -> Dict[str, int]:
        found = {}
        for key, points in self.penalties.items():
            parsed = parse_penalty_key(key)
            if parsed and parsed[0] is championship and parsed[1] == int(season):
                found[parsed[2]] = points
        return found

    def entry(self, championship: Championship, season: int) -> Optional[SeasonEntry]:
        return self.seasons.get(season_key(championship, season))

    def season_numbers(self) -> List[int]:
        numbers = {block.season for block in self.matches}
        for key in self.seasons:
            parsed = parse_season_key(key)
            if parsed is not None:
                numbers.add(parsed[1])
        return sorted(numbers)

    def exempt_team_for(self, season: int) -> str:
        """The bye team is shared by every championship of a season."""
        season = int(season)
        for sub in SUB_CHAMPIONSHIPS:
            entry = self.entry(sub, season)
            if entry is not None and entry.exempt_team:
                return entry.exempt_team
        for entry in self.seasons.values():
            if entry.season == season and entry.exempt_team:
                return entry.exempt_team
        return ""

    def find_block(self, championship: Championship, season: int, matchday: int) -> Optional[MatchdayBlock]:
        for block in blocks_for(self.matches, championship, season):
            if block.matchday == int(matchday):
                return block
        return None


# ═══════════════════════════════════════════════════════════════
# DERIVED VIEWS
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LeagueViews:
    champions: Tuple[ChampionEntry, ...] = ()
    pantheon: Tuple[PantheonEntry, ...] = ()
    meta_breakdown: Mapping[int, Dict[str, Dict[str, int]]] = field(default_factory=dict)

    def palmares(self, championship: Championship) -> List[ChampionEntry]:
        found = [c for c in self.champions if c.championship == championship.external_id]
        return sorted(found, key=lambda c: c.season, reverse=True)


def _pantheon_counts(entry: PantheonEntry) -> Dict[str, int]:
    return {c.pantheon_field: getattr(entry, c.pantheon_field) for c in Championship}


def recompute(dataset: Dataset, exceptions: Optional[ExceptionTable] = None) -> Tuple[Dataset, LeagueViews]:
    """Rebuild standings for every season with matches, then the honours.

    Entries without any match keep the standings they were loaded with.
    """
    roster = dataset.roster
    seasons = dict(dataset.seasons)
    match_seasons = sorted({block.season for block in dataset.matches})

    for sub in SUB_CHAMPIONSHIPS:
        for season in match_seasons:
            blocks = blocks_for(dataset.matches, sub, season)
            if not blocks:
                continue
            stats = accumulate_team_stats(blocks, roster)
            rows = rank_standings(stats, lambda name, c=sub, s=season: dataset.penalty_for(c, s, name))
            key = season_key(sub, season)
            entry = seasons.get(key) or SeasonEntry(sub.storage_key, season)
            seasons[key] = replace(entry, standings=tuple(rows),
                                   played_matchdays=played_matchdays(blocks, sub, season))

    breakdowns = {}
    for season in match_seasons:
        meta = aggregate_meta(
            dataset.matches, season, roster,
            lambda name, s=season: dataset.penalty_for(Championship.HYENES, s, name),
        )
        breakdowns[season] = meta.breakdown
        if not meta.rows:
            continue
        key = season_key(Championship.HYENES, season)
        entry = seasons.get(key) or SeasonEntry(Championship.HYENES.storage_key, season)
        seasons[key] = replace(entry, standings=tuple(meta.rows), played_matchdays=meta.played_matchdays)

    updated = replace(dataset, seasons=seasons)
    views = LeagueViews(
        champions=tuple(resolve_all_champions(seasons, updated.penalty_for, exceptions)),
        pantheon=tuple(build_pantheon(seasons, roster, updated.penalty_for, exceptions)),
        meta_breakdown=breakdowns,
    )
    return updated, views


def progress_for(dataset: Dataset, championship: Championship, season: int,
                 exceptions: Optional[ExceptionTable] = None) -> SeasonProgress:
    entry = dataset.entry(championship, season)
    played = entry_played_matchdays(entry) if entry is not None else 0
    return season_progress(championship, season, played, exceptions)


def empty_game() -> dict:
    return {"homeTeam": "", "awayTeam": "", "homeScore": None, "awayScore": None}


def matchday_games(dataset: Dataset, championship: Championship, season: int, matchday: int) -> List[dict]:
    """The games of one matchday as the score sheet shows them: five rows."""
    block = dataset.find_block(championship, season, matchday)
    games = clean_games(block.games) if block is not None else []
    while len(games) < MATCHES_PER_MATCHDAY:
        games.append(empty_game())
    return games


# ═══════════════════════════════════════════════════════════════
# ADMIN ACTIONS
# ═══════════════════════════════════════════════════════════════

def _name_is_allowed(name: str) -> bool:
    return all(ch.isalnum() or ch.isspace() or ch in "-'." for ch in name)


def validate_manager_name(dataset: Dataset, name: str, ignore_id: Optional[str] = None) -> str:
    name = (name or "").strip()
    if not name:
        raise ManagerNameError("Le nom ne peut pas être vide")
    if len(name) > MAX_MANAGER_NAME_LENGTH:
        raise ManagerNameError(f"Le nom ne peut pas dépasser {MAX_MANAGER_NAME_LENGTH} caractères")
    if not _name_is_allowed(name):
        raise ManagerNameError("Le nom contient des caractères non autorisés")
    for manager_id, manager in dataset.managers.items():
        if manager_id != ignore_id and manager.name.lower() == name.lower():
            raise DuplicateManagerError("Ce manager existe déjà")
    return name


def make_manager_id(name: str, taken: Iterable[str] = ()) -> str:
    slug = re.sub(r"\s+", "_", name.strip().lower())
    slug = re.sub(r"[^a-z0-9_]", "", slug) or "manager"
    taken = set(taken)
    candidate, suffix = slug, 2
    while candidate in taken:
        candidate = f"{slug}_{suffix}"
        suffix += 1
    return candidate


def add_manager(dataset: Dataset, name: str) -> Dataset:
    name = validate_manager_name(dataset, name)
    manager_id = make_manager_id(name, dataset.managers)
    managers = dict(dataset.managers)
    managers[manager_id] = Manager(id=manager_id, name=name)
    return replace(dataset, managers=managers)


def _get_manager(dataset: Dataset, manager_id: str) -> Manager:
    manager = dataset.managers.get(manager_id)
    if manager is None:
        raise ManagerNotFound("Manager introuvable")
    return manager


def _rename_in_game(game, old: str, new: str):
    if not isinstance(game, Mapping):
        return game
    renamed = dict(game)
    for key in HOME_TEAM_KEYS + AWAY_TEAM_KEYS:
        if renamed.get(key) == old:
            renamed[key] = new
    return renamed


def rename_manager(dataset: Dataset, manager_id: str, new_name: str) -> Dataset:
    """Rename a manager everywhere the name is used as a reference."""
    old = _get_manager(dataset, manager_id).name
    new = validate_manager_name(dataset, new_name, ignore_id=manager_id)
    if new == old:
        return dataset

    managers = dict(dataset.managers)
    managers[manager_id] = Manager(id=manager_id, name=new)

    matches = tuple(
        replace(block,
                games=tuple(_rename_in_game(g, old, new) for g in block.games),
                exempt=new if block.exempt == old else block.exempt)
        for block in dataset.matches
    )

    seasons = {
        key: replace(entry, exempt_team=new) if entry.exempt_team == old else entry
        for key, entry in dataset.seasons.items()
    }

    penalties = {}
    for key, points in dataset.penalties.items():
        prefix, _, team = key.partition("_")
        season, _, team = team.partition("_")
        if team == old:
            key = f"{prefix}_{season}_{new}"
        penalties[key] = points

    return replace(dataset, managers=managers, matches=matches, seasons=seasons, penalties=penalties)


def delete_manager(dataset: Dataset, manager_id: str) -> Dataset:
    """Remove a manager. Past games and penalties naming it are kept."""
    name = _get_manager(dataset, manager_id).name
    managers = {mid: m for mid, m in dataset.managers.items() if mid != manager_id}
    seasons = {
        key: replace(entry, exempt_team="") if entry.exempt_team == name else entry
        for key, entry in dataset.seasons.items()
    }
    return replace(dataset, managers=managers, seasons=seasons)


def clean_games(games: Iterable) -> List[dict]:
    """Normalize games and keep at most one appearance per team.

    The first game involving a team wins; later ones are dropped, as are
    games beyond the five a matchday holds. Empty rows are kept.
    """
    seen = set()
    kept = []
    for raw in games:
        game = normalize_game(raw)
        teams = [t for t in (game["homeTeam"], game["awayTeam"]) if t]
        if len(set(teams)) != len(teams) or seen.intersection(teams):
            _log.warning(f"Dropping duplicate game {game['homeTeam']!r} - {game['awayTeam']!r}")
            continue
        seen.update(teams)
        kept.append(game)
    if len(kept) > MATCHES_PER_MATCHDAY:
        _log.warning(f"Matchday holds {len(kept)} games, keeping the first {MATCHES_PER_MATCHDAY}")
    return kept[:MATCHES_PER_MATCHDAY]


def save_matchday(dataset: Dataset, championship: Championship, season: int,
                  matchday: int, games: Iterable) -> Dataset:
    if championship.is_meta:
        raise MatchdayError("La Ligue des Hyènes n'a pas de matchs propres")
    if int(season) < 1:
        raise MatchdayError("Numéro de saison invalide")
    if not 1 <= int(matchday) <= STANDARD_MATCHDAYS:
        raise MatchdayError(f"La journée doit être comprise entre 1 et {STANDARD_MATCHDAYS}")

    block = MatchdayBlock(
        championship=championship.storage_key,
        season=int(season),
        matchday=int(matchday),
        games=tuple(clean_games(games)),
        exempt=dataset.exempt_team_for(season),
    )

    matches = list(dataset.matches)
    existing = dataset.find_block(championship, season, matchday)
    if existing is not None:
        matches[matches.index(existing)] = block
    else:
        matches.append(block)
    return replace(dataset, matches=tuple(matches))


def set_penalty(dataset: Dataset, championship: Championship, season: int,
                team_name: str, points) -> Dataset:
    points = parse_score(points)
    if points is None or points < 0:
        raise PenaltyError("Veuillez entrer un nombre de points valide (positif)")
    if not team_name:
        raise PenaltyError("Équipe manquante")
    penalties = dict(dataset.penalties)
    penalties[penalty_key(championship, season, team_name)] = points
    return replace(dataset, penalties=penalties)


def remove_penalty(dataset: Dataset, championship: Championship, season: int, team_name: str) -> Dataset:
    key = penalty_key(championship, season, team_name)
    if key not in dataset.penalties:
        return dataset
    penalties = {k: v for k, v in dataset.penalties.items() if k != key}
    return replace(dataset, penalties=penalties)


def create_season(dataset: Dataset, number) -> Dataset:
    number = _as_int(number)
    if number is None or number < 1:
        raise SeasonError("Veuillez entrer un numéro de saison valide (nombre positif).")
    if number in dataset.season_numbers():
        raise SeasonExistsError(f"La Saison {number} existe déjà.")
    seasons = dict(dataset.seasons)
    for championship in Championship:
        seasons.setdefault(season_key(championship, number), SeasonEntry(championship.storage_key, number))
    return replace(dataset, seasons=seasons)


def set_exempt_team(dataset: Dataset, season: int, team_name: Optional[str]) -> Dataset:
    team_name = team_name or ""
    if team_name and team_name not in dataset.roster:
        raise ManagerNotFound("Manager introuvable")
    seasons = dict(dataset.seasons)
    for sub in SUB_CHAMPIONSHIPS:
        key = season_key(sub, season)
        entry = seasons.get(key) or SeasonEntry(sub.storage_key, int(season))
        seasons[key] = replace(entry, exempt_team=team_name)
    return replace(dataset, seasons=seasons)


# ═══════════════════════════════════════════════════════════════
# CURRENT STATE
# ═══════════════════════════════════════════════════════════════

class League:
    """The current snapshot, its derived views, and the write-back queue.

    Write-backs are published while the lock is held, so the queue sees
    snapshots in the order they replaced each other.
    """

    def __init__(self, dataset: Optional[Dataset] = None, queue=None,
                 exceptions: Optional[ExceptionTable] = None):
        self.queue = queue
        self.exceptions = exceptions
        self._lock = threading.RLock()
        self._dataset, self._views = recompute(dataset or Dataset.empty(), exceptions)

    @property
    def dataset(self) -> Dataset:
        return self._dataset

    @property
    def views(self) -> LeagueViews:
        return self._views

    def snapshot(self) -> Tuple[Dataset, LeagueViews]:
        with self._lock:
            return self._dataset, self._views

    def apply(self, update, *args, publish: bool = True) -> Tuple[Dataset, LeagueViews]:
        """Run ``update(dataset, *args)`` and swap in the recomputed result.

        A LeagueError from ``update`` leaves the current state untouched.
        """
        with self._lock:
            previous, previous_views = self._dataset, self._views
            dataset, views = recompute(update(previous, *args), self.exceptions)
            self._dataset, self._views = dataset, views
            if publish:
                self._publish_derived(previous, previous_views, dataset, views)
            return dataset, views

    def _publish(self, operation: str, *args, key=None):
        if self.queue is not None:
            self.queue.publish(operation, *args, key=key)

    def _publish_derived(self, previous: Dataset, previous_views: LeagueViews,
                         dataset: Dataset, views: LeagueViews):
        for key, entry in dataset.seasons.items():
            if previous.seasons.get(key) != entry:
                self._publish("save_season", entry.championship, entry.season,
                              [_row_document(r) for r in entry.standings],
                              entry.played_matchdays, entry.exempt_team or None,
                              key=("season", key))
        for champion in views.champions:
            storage = Championship.parse(champion.championship).storage_key
            self._publish("save_champion", storage, champion.season, champion.champion,
                          champion.runner_up, key=("champion", storage, champion.season))

        # A manager losing their last title is written back with zero
        before = {e.name: _pantheon_counts(e) for e in previous_views.pantheon}
        for entry in views.pantheon:
            counts = _pantheon_counts(entry)
            if entry.total > 0 or before.get(entry.name, counts) != counts:
                self._publish("update_pantheon", entry.name, entry.total, counts,
                              key=("pantheon", entry.name))
            before.pop(entry.name, None)
        for name, counts in before.items():
            if any(counts.values()):
                self._publish("update_pantheon", name, 0, {field: 0 for field in counts},
                              key=("pantheon", name))

    # Admin actions with their write-backs

    def load(self, dataset: Dataset, publish: bool = False):
        """Replace the whole state. Only imports write the derived tables back."""
        self.apply(lambda _: dataset, publish=publish)
        _log.info(f"Loaded {len(dataset.managers)} managers and {len(dataset.matches)} matchday blocks")

    def add_manager(self, name: str) -> Manager:
        with self._lock:
            dataset, _ = self.apply(add_manager, name)
            manager = dataset.manager_by_name(name.strip())
            self._publish("save_manager", manager.id, manager.name, key=("manager", manager.id))
            return manager

    def rename_manager(self, manager_id: str, new_name: str) -> Manager:
        with self._lock:
            old = _get_manager(self._dataset, manager_id).name
            dataset, _ = self.apply(rename_manager, manager_id, new_name)
            manager = dataset.managers[manager_id]
            if manager.name != old:
                self._publish("rename_manager", manager_id, old, manager.name)
            return manager

    def delete_manager(self, manager_id: str) -> Manager:
        with self._lock:
            manager = _get_manager(self._dataset, manager_id)
            self.apply(delete_manager, manager_id)
            self._publish("delete_manager", manager_id, key=("manager", manager_id))
            return manager

    def save_matchday(self, championship: Championship, season: int, matchday: int, games) -> MatchdayBlock:
        with self._lock:
            dataset, _ = self.apply(save_matchday, championship, season, matchday, list(games))
            block = dataset.find_block(championship, season, matchday)
            self._publish("save_matches", block.championship, block.season, block.matchday,
                          [dict(g) for g in block.games], block.exempt or None,
                          key=("matches", block.championship, block.season, block.matchday))
            return block

    def set_penalty(self, championship: Championship, season: int, team_name: str, points) -> int:
        with self._lock:
            dataset, _ = self.apply(set_penalty, championship, season, team_name, points)
            points = dataset.penalty_for(championship, season, team_name)
            self._publish("save_penalty", championship.external_id, int(season), team_name, points,
                          key=("penalty", penalty_key(championship, season, team_name)))
            return points

    def remove_penalty(self, championship: Championship, season: int, team_name: str):
        with self._lock:
            self.apply(remove_penalty, championship, season, team_name)
            self._publish("delete_penalty", championship.external_id, int(season), team_name,
                          key=("penalty", penalty_key(championship, season, team_name)))

    def create_season(self, number: int):
        self.apply(create_season, number)

    def set_exempt_team(self, season: int, team_name: Optional[str]):
        with self._lock:
            self.apply(set_exempt_team, season, team_name)
            self._publish("update_season_exempt", int(season), team_name or None,
                          key=("exempt", int(season)))
