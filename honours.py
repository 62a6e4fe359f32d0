"""
Season completion, champions and the pantheon.

Champions are never cached: every call re-derives them from the current
standings and penalties, so a penalty added after the last matchday can
still change the title holder.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, List, Mapping, Optional

from championships import (
    Championship, ExceptionTable, parse_season_key, season_exception, total_matchdays,
)
from schemas import ChampionEntry, PantheonEntry, SeasonProgress
from standings import PenaltyLookup, get_field, no_penalty, parse_score

# (championship, season, team name) -> points deducted
SeasonPenaltyLookup = Callable[[Championship, int, str], int]


def _no_season_penalty(championship: Championship, season: int, team_name: str) -> int:
    return 0


def _round_half_up(value: float, digits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def is_season_complete(championship: Championship, season: int, played: int,
                       exceptions: Optional[ExceptionTable] = None) -> bool:
    """``played`` is the highest matchday recorded, not games per team."""
    exc = season_exception(championship, season, exceptions)
    if exc is not None and exc.always_complete:
        return True
    return played >= total_matchdays(championship, season, exceptions)


def season_progress(championship: Championship, season: int, played: int,
                    exceptions: Optional[ExceptionTable] = None) -> SeasonProgress:
    total = total_matchdays(championship, season, exceptions)
    ratio = played / total * 100 if total > 0 else 0
    # The meta-championship shows whole percents, the others one decimal
    percentage = _round_half_up(ratio, 0 if championship.is_meta else 1)
    return SeasonProgress(
        current_matchday=played,
        total_matchdays=total,
        percentage=percentage,
        complete=is_season_complete(championship, season, played, exceptions),
    )


# Cached standings may come from older exports: names under "mgr" or
# "name", points under "pts" or "points", diff as 3 or "+3".

def _row_name(row) -> str:
    return get_field(row, "mgr") or get_field(row, "name") or "?"


def _row_points(row) -> int:
    return parse_score(get_field(row, "pts") or get_field(row, "points") or 0) or 0


def _row_diff(row) -> int:
    return parse_score(get_field(row, "diff")) or 0


def resolve_champion(championship: Championship, season: int, rows: Iterable,
                     penalty: PenaltyLookup = no_penalty,
                     exceptions: Optional[ExceptionTable] = None) -> Optional[ChampionEntry]:
    rows = list(rows or [])
    if not rows:
        return None

    exc = season_exception(championship, season, exceptions)
    if exc is not None and exc.co_champions:
        return ChampionEntry(
            championship=championship.external_id,
            season=int(season),
            champion=exc.shared_title,
            points=_row_points(rows[0]),
            co_champions=list(exc.co_champions),
        )

    # Re-sort: the cached order may predate the latest penalty
    table = [(_row_name(r), _row_points(r) - penalty(_row_name(r)), _row_diff(r)) for r in rows]
    table.sort(key=lambda t: (-t[1], -t[2]))

    name, points, _ = table[0]
    return ChampionEntry(
        championship=championship.external_id,
        season=int(season),
        champion=name,
        runner_up=table[1][0] if len(table) > 1 else None,
        points=points,
    )


def entry_played_matchdays(entry) -> int:
    played = get_field(entry, "played_matchdays") or get_field(entry, "playedMatchdays")
    if played:
        return int(played)
    rows = get_field(entry, "standings") or []
    # Legacy entries only know games played by the leader
    return (parse_score(get_field(rows[0], "j")) or 0) if rows else 0


def resolve_all_champions(entries: Mapping[str, object],
                          penalty: SeasonPenaltyLookup = _no_season_penalty,
                          exceptions: Optional[ExceptionTable] = None) -> List[ChampionEntry]:
    """One ChampionEntry per completed season entry, keyed "{storage}_s{n}"."""
    found = []
    for key in sorted(entries):
        parsed = parse_season_key(key)
        if parsed is None or parsed[0] is None:
            continue
        championship, season = parsed
        entry = entries[key]
        rows = get_field(entry, "standings") or []
        if not rows:
            continue
        if not is_season_complete(championship, season, entry_played_matchdays(entry), exceptions):
            continue

        champion = resolve_champion(
            championship, season, rows,
            lambda name, c=championship, s=season: penalty(c, s, name),
            exceptions,
        )
        if champion is not None:
            found.append(champion)
    return found


def build_pantheon(entries: Mapping[str, object], roster: Iterable[str],
                   penalty: SeasonPenaltyLookup = _no_season_penalty,
                   exceptions: Optional[ExceptionTable] = None) -> List[PantheonEntry]:
    """Count titles per manager across every completed season entry.

    A full recompute each time. A shared title counts once for each holder.
    """
    counts = {name: PantheonEntry(name=name) for name in roster}

    for champion in resolve_all_champions(entries, penalty, exceptions):
        category = Championship.parse(champion.championship).pantheon_field
        for name in champion.co_champions or [champion.champion]:
            if name not in counts:
                counts[name] = PantheonEntry(name=name)
            entry = counts[name]
            setattr(entry, category, getattr(entry, category) + 1)
            entry.total += 1

    ordered = sorted(counts.values(), key=lambda e: -e.total)
    for rank, entry in enumerate(ordered, start=1):
        entry.rank = rank
    return ordered
