import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import BackgroundTasks, FastAPI, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

import database
from championships import Championship
from league import (
    Dataset, DuplicateManagerError, League, LeagueError, ManagerNotFound, SeasonExistsError,
    matchday_games, progress_for,
)
from schemas import (
    ChampionEntry, ExemptIn, Manager, ManagerIn, MatchdayIn, PantheonEntry, PenaltyIn,
    SeasonIn, StandingRow, StandingsOut,
)
from standings import get_field, parse_score
from sync import SyncQueue
from transfer import ImportValidationError, dataset_from_import, export_document, parse_import

_log = logging.getLogger("hyenescores.api")

AUTO_REFRESH_INTERVAL_S = int(os.getenv("AUTO_REFRESH_INTERVAL_S", "30"))

queue = SyncQueue(database)
league = League(queue=queue)


def refresh_from_database() -> bool:
    """Reload the league unless local edits are still waiting to be written."""
    if queue.pending():
        _log.debug(f"Refresh skipped, {queue.pending()} write-backs pending")
        return False
    try:
        document = database.fetch_dataset()
    except Exception as e:
        _log.error(f"Loading from the database failed: {e}")
        return False
    league.load(Dataset.from_document(document))
    return True


async def _auto_refresh():
    while True:
        await asyncio.sleep(AUTO_REFRESH_INTERVAL_S)
        await run_in_threadpool(queue.drain)
        await run_in_threadpool(refresh_from_database)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await run_in_threadpool(refresh_from_database)
    task = asyncio.create_task(_auto_refresh()) if AUTO_REFRESH_INTERVAL_S > 0 else None
    yield
    if task is not None:
        task.cancel()
    queue.drain(force=True)


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Helpers

def championship_or_404(championship_id: str) -> Championship:
    championship = Championship.parse(championship_id)
    if championship is None:
        raise HTTPException(status_code=404, detail="Championnat introuvable")
    return championship


def league_error(e: LeagueError) -> HTTPException:
    if isinstance(e, ManagerNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (DuplicateManagerError, SeasonExistsError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def as_standing_row(row, pos: int) -> StandingRow:
    # Entries loaded without matches keep whatever row layout they were saved with
    if isinstance(row, StandingRow):
        return row
    stat = lambda name: parse_score(get_field(row, name)) or 0
    return StandingRow(
        pos=stat("pos") or pos,
        mgr=get_field(row, "mgr") or get_field(row, "name") or "?",
        pts=stat("pts") or stat("points"),
        j=stat("j"), g=stat("g"), n=stat("n"), p=stat("p"),
        bp=stat("bp"), bc=stat("bc"), diff=stat("diff"),
    )


@app.get("/")
def read_root():
    return {"message": "HyeneScores API running"}


# Public: championships
@app.get("/api/championships")
def list_championships():
    return [
        {"id": c.external_id, "storage_key": c.storage_key, "name": c.display_name, "meta": c.is_meta}
        for c in Championship
    ]


# Public: managers
@app.get("/api/managers", response_model=List[Manager])
def list_managers():
    managers = list(league.dataset.managers.values())
    return sorted(managers, key=lambda m: m.name.lower())


# Admin: add a manager
@app.post("/api/managers", response_model=Manager)
def create_manager(payload: ManagerIn, background_tasks: BackgroundTasks):
    try:
        manager = league.add_manager(payload.name)
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return manager


# Admin: rename a manager, cascading to games, byes and penalties
@app.patch("/api/managers/{manager_id}", response_model=Manager)
def update_manager(manager_id: str, payload: ManagerIn, background_tasks: BackgroundTasks):
    try:
        manager = league.rename_manager(manager_id, payload.name)
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return manager


# Admin: remove a manager
@app.delete("/api/managers/{manager_id}")
def remove_manager(manager_id: str, background_tasks: BackgroundTasks):
    try:
        manager = league.delete_manager(manager_id)
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return {"deleted": manager.id}


# Public: seasons
@app.get("/api/seasons")
def list_seasons():
    dataset = league.dataset
    return [
        {"number": n, "exempt_team": dataset.exempt_team_for(n) or None}
        for n in dataset.season_numbers()
    ]


# Admin: open a new season in every championship
@app.post("/api/seasons")
def create_season(payload: SeasonIn, background_tasks: BackgroundTasks):
    try:
        league.create_season(payload.number)
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return {"number": payload.number}


# Admin: set the bye team of a season
@app.put("/api/seasons/{season}/exempt")
def set_exempt(season: int, payload: ExemptIn, background_tasks: BackgroundTasks):
    try:
        league.set_exempt_team(season, payload.team)
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return {"season": season, "exempt_team": payload.team or None}


# Public: score sheet of one matchday
@app.get("/api/championships/{championship_id}/seasons/{season}/matchdays/{matchday}")
def get_matchday(championship_id: str, season: int, matchday: int):
    championship = championship_or_404(championship_id)
    if championship.is_meta:
        raise HTTPException(status_code=400, detail="La Ligue des Hyènes n'a pas de matchs propres")
    dataset = league.dataset
    return {
        "championship": championship.external_id,
        "season": season,
        "matchday": matchday,
        "exempt": dataset.exempt_team_for(season) or None,
        "games": matchday_games(dataset, championship, season, matchday),
    }


# Admin: save the games of one matchday
@app.put("/api/championships/{championship_id}/seasons/{season}/matchdays/{matchday}")
def save_matchday(championship_id: str, season: int, matchday: int, payload: MatchdayIn,
                  background_tasks: BackgroundTasks):
    championship = championship_or_404(championship_id)
    try:
        block = league.save_matchday(championship, season, matchday, [g.to_document() for g in payload.games])
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return {"saved": len(block.games), "games": list(block.games)}


# Public: standings (computed on every edit, never on read)
@app.get("/api/championships/{championship_id}/seasons/{season}/standings", response_model=StandingsOut)
def get_standings(championship_id: str, season: int):
    championship = championship_or_404(championship_id)
    dataset, views = league.snapshot()
    entry = dataset.entry(championship, season)
    rows = entry.standings if entry is not None else ()
    return StandingsOut(
        championship=championship.external_id,
        season=season,
        standings=[as_standing_row(r, i) for i, r in enumerate(rows, start=1)],
        progress=progress_for(dataset, championship, season, league.exceptions),
        penalties=dataset.penalties_for(championship, season),
        breakdown=views.meta_breakdown.get(season) if championship.is_meta else None,
    )


# Public: penalties of a season
@app.get("/api/championships/{championship_id}/seasons/{season}/penalties")
def list_penalties(championship_id: str, season: int):
    championship = championship_or_404(championship_id)
    return league.dataset.penalties_for(championship, season)


# Admin: set a penalty (points deducted)
@app.put("/api/championships/{championship_id}/seasons/{season}/penalties/{team_name}")
def set_penalty(championship_id: str, season: int, team_name: str, payload: PenaltyIn,
                background_tasks: BackgroundTasks):
    championship = championship_or_404(championship_id)
    try:
        points = league.set_penalty(championship, season, team_name, payload.points)
    except LeagueError as e:
        raise league_error(e)
    background_tasks.add_task(queue.flush_later)
    return {"team": team_name, "points": points}


# Admin: lift a penalty
@app.delete("/api/championships/{championship_id}/seasons/{season}/penalties/{team_name}")
def remove_penalty(championship_id: str, season: int, team_name: str, background_tasks: BackgroundTasks):
    championship = championship_or_404(championship_id)
    league.remove_penalty(championship, season, team_name)
    background_tasks.add_task(queue.flush_later)
    return {"team": team_name, "points": 0}


# Public: past champions of one championship, latest season first
@app.get("/api/championships/{championship_id}/palmares", response_model=List[ChampionEntry])
def get_palmares(championship_id: str):
    championship = championship_or_404(championship_id)
    return league.views.palmares(championship)


# Public: titles per manager
@app.get("/api/pantheon", response_model=List[PantheonEntry])
def get_pantheon():
    return list(league.views.pantheon)


# Admin: restore a JSON backup
@app.post("/api/import")
async def import_backup(background_tasks: BackgroundTasks, file: UploadFile = File(...)):
    content = await file.read()
    try:
        data = parse_import(content)
    except ImportValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    dataset = dataset_from_import(data)
    league.load(dataset, publish=True)
    queue.publish("import_dataset", league.dataset.to_document(), key="import")
    background_tasks.add_task(queue.flush_later)
    return {
        "managers": len(dataset.managers),
        "seasons": len(dataset.seasons),
        "matchdays": len(dataset.matches),
        "penalties": len(dataset.penalties),
    }


# Public: JSON backup of the whole league
@app.get("/api/export")
def export_backup():
    return export_document(league.dataset)


# Admin: send pending writes and reload from the database
@app.post("/api/refresh")
def refresh():
    report = queue.drain(force=True)
    return {"sent": report.sent, "failed": report.failed, "refreshed": refresh_from_database()}


@app.get("/test")
def test_database():
    """Backend and MongoDB status, plus how many write-backs are waiting."""
    db = database.db
    response = {
        "backend": "✅ Running",
        "database": "⚠️  Available but not initialized",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
        "pending_writes": queue.pending(),
    }
    if db is not None:
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
