"""
Schemas for the HyeneScores league backend

Pydantic models below cover both the derived tables produced by the
standings engine and the request bodies accepted by the API. Collection
names used in MongoDB are listed in database.py.
"""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional, List, Dict

from championships import MAX_SCORE, MIN_SCORE


class Manager(BaseModel):
    id: str = Field(..., description="Slug generated from the first name given")
    name: str = Field(..., description="Display name, unique across managers")


class StandingRow(BaseModel):
    pos: int = Field(..., description="Dense 1-based position")
    mgr: str = Field(..., description="Manager name")
    pts: int = Field(..., description="Raw points, before penalties")
    j: int = Field(0, description="Games played")
    g: int = Field(0, description="Wins")
    n: int = Field(0, description="Draws")
    p: int = Field(0, description="Losses")
    bp: int = Field(0, description="Goals for")
    bc: int = Field(0, description="Goals against")
    diff: int = Field(0, description="Goal difference")


class SeasonProgress(BaseModel):
    current_matchday: int
    total_matchdays: int
    percentage: float
    complete: bool = False


class ChampionEntry(BaseModel):
    championship: str = Field(..., description="Championship external id")
    season: int
    champion: str
    runner_up: Optional[str] = None
    points: int = 0
    co_champions: List[str] = Field(default_factory=list)


class PantheonEntry(BaseModel):
    rank: int = 0
    name: str
    trophies: int = Field(0, description="Ligue des Hyènes titles")
    france: int = 0
    spain: int = 0
    italy: int = 0
    england: int = 0
    total: int = 0


class StandingsOut(BaseModel):
    championship: str
    season: int
    standings: List[StandingRow]
    progress: SeasonProgress
    penalties: Dict[str, int] = Field(default_factory=dict)
    breakdown: Optional[Dict[str, Dict[str, int]]] = None


# Request bodies

class ManagerIn(BaseModel):
    name: str = Field(..., max_length=200)


class SeasonIn(BaseModel):
    number: int = Field(..., ge=1)


class ExemptIn(BaseModel):
    team: Optional[str] = None


class GameIn(BaseModel):
    home_team: str = ""
    away_team: str = ""
    home_score: Optional[int] = Field(None, ge=MIN_SCORE, le=MAX_SCORE)
    away_score: Optional[int] = Field(None, ge=MIN_SCORE, le=MAX_SCORE)

    def to_document(self) -> dict:
        return {
            "homeTeam": self.home_team.strip(),
            "awayTeam": self.away_team.strip(),
            "homeScore": self.home_score,
            "awayScore": self.away_score,
        }


class MatchdayIn(BaseModel):
    games: List[GameIn] = Field(default_factory=list)


class PenaltyIn(BaseModel):
    points: int = Field(..., ge=0)
