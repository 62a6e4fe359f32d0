"""
Standings engine
================

Turns matchday blocks into ranked tables.

  normalize_game         raw game in any known field layout -> canonical game
  accumulate_team_stats  matchday blocks -> per-team TeamStats
  rank_standings         TeamStats + penalties -> ordered StandingRow list
  aggregate_meta         the four sub-championships of a season -> one table

Everything here is pure. Malformed games are skipped, never raised on:
legacy exports mix several field layouts and score types.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from championships import Championship, SUB_CHAMPIONSHIPS
from schemas import StandingRow

PenaltyLookup = Callable[[str], int]

# Field names by schema generation, current first.
HOME_TEAM_KEYS = ("homeTeam", "home", "h", "equipe1")
AWAY_TEAM_KEYS = ("awayTeam", "away", "a", "equipe2")
HOME_SCORE_KEYS = ("homeScore", "hs", "scoreHome")
AWAY_SCORE_KEYS = ("awayScore", "as", "scoreAway")

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def no_penalty(team_name: str) -> int:
    return 0


def _first_team(raw: Mapping, keys: Sequence[str]) -> str:
    for key in keys:
        value = raw.get(key)
        if value:
            return value
    return ""


def _first_score(raw: Mapping, keys: Sequence[str]):
    # A present key wins even when it holds None ("not played yet")
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def normalize_game(raw) -> dict:
    """Map a raw game onto {homeTeam, awayTeam, homeScore, awayScore}."""
    if not isinstance(raw, Mapping):
        raw = {}
    return {
        "homeTeam": _first_team(raw, HOME_TEAM_KEYS),
        "awayTeam": _first_team(raw, AWAY_TEAM_KEYS),
        "homeScore": _first_score(raw, HOME_SCORE_KEYS),
        "awayScore": _first_score(raw, AWAY_SCORE_KEYS),
    }


def parse_score(value) -> Optional[int]:
    """Lenient integer parsing: 2, 2.0, "2" and " 2 buts" all give 2."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        m = _LEADING_INT_RE.match(value)
        return int(m.group(1)) if m else None
    return None


def get_field(obj, name, default=None):
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class TeamStats:
    """Running totals for one team in one competition-instance"""
    name: str
    pts: int = 0
    j: int = 0
    g: int = 0
    n: int = 0
    p: int = 0
    bp: int = 0
    bc: int = 0
    diff: int = 0

    def record(self, scored: int, conceded: int):
        self.j += 1
        self.bp += scored
        self.bc += conceded
        if scored > conceded:
            self.pts += 3
            self.g += 1
        elif scored < conceded:
            self.p += 1
        else:
            self.pts += 1
            self.n += 1
        self.diff = self.bp - self.bc

    def absorb(self, other: "TeamStats"):
        self.pts += other.pts
        self.j += other.j
        self.g += other.g
        self.n += other.n
        self.p += other.p
        self.bp += other.bp
        self.bc += other.bc
        self.diff = self.bp - self.bc


def accumulate_team_stats(blocks: Iterable, teams: Iterable[str]) -> Dict[str, TeamStats]:
    stats: Dict[str, TeamStats] = {name: TeamStats(name) for name in teams}

    for block in blocks:
        games = get_field(block, "games")
        if not isinstance(games, (list, tuple)):
            continue
        for raw in games:
            game = normalize_game(raw)
            home_score = parse_score(game["homeScore"])
            away_score = parse_score(game["awayScore"])
            if home_score is None or away_score is None:
                continue

            home, away = game["homeTeam"], game["awayTeam"]
            if home not in stats:
                stats[home] = TeamStats(home)
            if away not in stats:
                stats[away] = TeamStats(away)

            stats[home].record(home_score, away_score)
            stats[away].record(away_score, home_score)

    return stats


def rank_standings(stats: Mapping[str, TeamStats],
                   penalty: PenaltyLookup = no_penalty) -> List[StandingRow]:
    """Order teams by effective points, goal difference, then goals scored.

    Teams without a game are left out. Rows carry raw points; the penalty
    only moves teams around. Full ties keep the order of ``stats``.
    """
    entered = [team for team in stats.values() if team.j > 0]
    effective = {team.name: team.pts - penalty(team.name) for team in entered}
    entered.sort(key=lambda t: (-effective[t.name], -t.diff, -t.bp))
    return [
        StandingRow(pos=i, mgr=t.name, pts=t.pts, j=t.j, g=t.g, n=t.n, p=t.p,
                    bp=t.bp, bc=t.bc, diff=t.diff)
        for i, t in enumerate(entered, start=1)
    ]


def blocks_for(blocks: Iterable, championship: Championship, season: int) -> list:
    """Blocks filed under ``championship`` for ``season``, any key casing."""
    season = int(season)
    return [
        b for b in blocks
        if Championship.parse(get_field(b, "championship")) is championship
        and _as_int(get_field(b, "season")) == season
    ]


def played_matchdays(blocks: Iterable, championship: Championship, season: int) -> int:
    """Highest matchday recorded, which is what completion is measured on."""
    matchdays = [_as_int(get_field(b, "matchday")) for b in blocks_for(blocks, championship, season)]
    matchdays = [m for m in matchdays if m is not None]
    return max(matchdays) if matchdays else 0


def compute_standings(blocks: Iterable, championship: Championship, season: int,
                      teams: Iterable[str], penalty: PenaltyLookup = no_penalty) -> List[StandingRow]:
    stats = accumulate_team_stats(blocks_for(blocks, championship, season), teams)
    return rank_standings(stats, penalty)


@dataclass
class MetaStandings:
    rows: List[StandingRow]
    stats: Dict[str, TeamStats]
    breakdown: Dict[str, Dict[str, int]] = field(default_factory=dict)
    played_matchdays: int = 0


def aggregate_meta(blocks: Sequence, season: int, teams: Iterable[str],
                   penalty: PenaltyLookup = no_penalty) -> MetaStandings:
    """Build the Ligue des Hyènes table for one season.

    Each sub-championship is accumulated on its own and the totals are summed
    per team. Progress is the sum of the sub-championships' own matchday
    counts.
    """
    teams = list(teams)
    totals: Dict[str, TeamStats] = {name: TeamStats(name) for name in teams}
    breakdown: Dict[str, Dict[str, int]] = {}
    played = 0

    for sub in SUB_CHAMPIONSHIPS:
        sub_blocks = blocks_for(blocks, sub, season)
        played += played_matchdays(sub_blocks, sub, season)
        for name, sub_stats in accumulate_team_stats(sub_blocks, teams).items():
            if name not in totals:
                totals[name] = TeamStats(name)
            totals[name].absorb(sub_stats)
            breakdown.setdefault(name, {})[sub.external_id] = sub_stats.pts

    return MetaStandings(
        rows=rank_standings(totals, penalty),
        stats=totals,
        breakdown={name: pts for name, pts in breakdown.items() if totals[name].j > 0},
        played_matchdays=played,
    )
