"""
Championship catalogue for the Ligue des Hyènes

Five competitions run every season: four national sub-championships with
their own fixtures, and the Ligue des Hyènes which has no fixtures and
aggregates the other four.

Each championship has two names. The external id is what clients and the
penalty keys use; the storage key is what season entries and match blocks
are filed under.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

META_MATCHDAYS = 72
STANDARD_MATCHDAYS = 18
MATCHES_PER_MATCHDAY = 5
MIN_SCORE = 0
MAX_SCORE = 99
MAX_MANAGER_NAME_LENGTH = 50


class Championship(str, Enum):
    HYENES = "hyenes"
    FRANCE = "france"
    SPAIN = "spain"
    ITALY = "italy"
    ENGLAND = "england"

    @property
    def external_id(self) -> str:
        return self.value

    @property
    def storage_key(self) -> str:
        return _STORAGE_KEYS[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def is_meta(self) -> bool:
        return self is Championship.HYENES

    @property
    def pantheon_field(self) -> str:
        return "trophies" if self.is_meta else self.value

    @classmethod
    def parse(cls, value) -> Optional["Championship"]:
        """Resolve an external id or a storage key, ignoring case."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        return _LOOKUP.get(value.strip().lower())


_STORAGE_KEYS: Dict[Championship, str] = {
    Championship.HYENES: "ligue_hyenes",
    Championship.FRANCE: "france",
    Championship.SPAIN: "espagne",
    Championship.ITALY: "italie",
    Championship.ENGLAND: "angleterre",
}

_DISPLAY_NAMES: Dict[Championship, str] = {
    Championship.HYENES: "Ligue des Hyènes",
    Championship.FRANCE: "France",
    Championship.SPAIN: "Espagne",
    Championship.ITALY: "Italie",
    Championship.ENGLAND: "Angleterre",
}

for _mapping in (_STORAGE_KEYS, _DISPLAY_NAMES):
    _missing = set(Championship) - set(_mapping)
    if _missing:
        raise RuntimeError(f"Championship mapping incomplete: {sorted(c.value for c in _missing)}")

_LOOKUP: Dict[str, Championship] = {}
for _champ in Championship:
    _LOOKUP[_champ.external_id] = _champ
    _LOOKUP[_champ.storage_key] = _champ

SUB_CHAMPIONSHIPS: Tuple[Championship, ...] = (
    Championship.FRANCE,
    Championship.SPAIN,
    Championship.ITALY,
    Championship.ENGLAND,
)


@dataclass(frozen=True)
class SeasonException:
    """Historical irregularity for one (championship, season)."""
    championship: Championship
    season: int
    total_matchdays: Optional[int] = None
    always_complete: bool = False
    co_champions: Tuple[str, ...] = ()

    @property
    def shared_title(self) -> Optional[str]:
        if not self.co_champions:
            return None
        return " / ".join(self.co_champions)


ExceptionTable = Mapping[Tuple[Championship, int], SeasonException]

# Season 6: France stopped after 8 matchdays with two managers level at the
# top, so the Ligue des Hyènes that season totals 8 + 18 + 18 + 18.
SEASON_EXCEPTIONS: Dict[Tuple[Championship, int], SeasonException] = {
    (Championship.FRANCE, 6): SeasonException(
        Championship.FRANCE, 6,
        total_matchdays=8,
        always_complete=True,
        co_champions=("BimBam", "Warnaque"),
    ),
    (Championship.HYENES, 6): SeasonException(
        Championship.HYENES, 6,
        total_matchdays=62,
    ),
}


def season_exception(championship: Championship, season: int,
                     exceptions: Optional[ExceptionTable] = None) -> Optional[SeasonException]:
    table = SEASON_EXCEPTIONS if exceptions is None else exceptions
    return table.get((championship, int(season)))


def total_matchdays(championship: Championship, season: int,
                    exceptions: Optional[ExceptionTable] = None) -> int:
    exc = season_exception(championship, season, exceptions)
    if exc is not None and exc.total_matchdays is not None:
        return exc.total_matchdays
    return META_MATCHDAYS if championship.is_meta else STANDARD_MATCHDAYS


# Keys

_SEASON_KEY_RE = re.compile(r"^(.+)_s(\d+)$")


def season_key(championship: Championship, season: int) -> str:
    return f"{championship.storage_key}_s{int(season)}"


def parse_season_key(key: str) -> Optional[Tuple[Optional[Championship], int]]:
    """Split "france_s7" into (Championship.FRANCE, 7).

    The championship is None when the prefix is not a known championship;
    the whole result is None when the key has no season suffix.
    """
    m = _SEASON_KEY_RE.match(key or "")
    if not m:
        return None
    return Championship.parse(m.group(1)), int(m.group(2))


def penalty_key(championship: Championship, season: int, team_name: str) -> str:
    return f"{championship.external_id}_{int(season)}_{team_name}"


def parse_penalty_key(key: str) -> Optional[Tuple[Optional[Championship], int, str]]:
    # Team names may contain underscores, only the first two separate fields
    parts = (key or "").split("_", 2)
    if len(parts) != 3 or not parts[1].isdigit():
        return None
    return Championship.parse(parts[0]), int(parts[1]), parts[2]
