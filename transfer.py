"""
JSON backup import and export

Uploaded files are untrusted: ``parse_import`` checks size, shape, version,
script-like strings and nesting depth before anything reaches the league.
Two layouts are accepted:

  1.0  flat legacy export of one screen (classement, matches, palmares, ...)
  2.0  entity document (entities.managers / seasons / matches + penalties)

Only the first validation error is reported to the user.
"""
import json
import logging
import re
from datetime import datetime, timezone
from typing import List, Mapping, Optional

from championships import Championship, season_key
from league import Dataset, MatchdayBlock, SeasonEntry, make_manager_id
from standings import normalize_game

_log = logging.getLogger("hyenescores.transfer")

MAX_IMPORT_FILE_SIZE = 10 * 1024 * 1024
MAX_NESTING_DEPTH = 10
SUPPORTED_VERSIONS = ("1.0", "2.0")

DENIED_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"Function\s*\(", re.IGNORECASE),
)


class ImportValidationError(ValueError):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(self.errors[0] if self.errors else "Fichier invalide")


def _has_denied_string(value, depth: int = 0) -> bool:
    # Only values are inspected, keys are free text. Below the depth limit
    # the document is rejected anyway.
    if depth > MAX_NESTING_DEPTH + 1:
        return False
    if isinstance(value, str):
        return any(p.search(value) for p in DENIED_PATTERNS)
    if isinstance(value, list):
        return any(_has_denied_string(v, depth + 1) for v in value)
    if isinstance(value, dict):
        return any(_has_denied_string(v, depth + 1) for v in value.values())
    return False


def _too_deep(value, depth: int = 0) -> bool:
    if depth > MAX_NESTING_DEPTH:
        return True
    if isinstance(value, list):
        return any(_too_deep(v, depth + 1) for v in value)
    if isinstance(value, dict):
        return any(_too_deep(v, depth + 1) for v in value.values())
    return False


def validate_payload(data, size: int = 0) -> List[str]:
    errors = []
    if size > MAX_IMPORT_FILE_SIZE:
        errors.append("Fichier trop volumineux (max 10 MB)")

    if not isinstance(data, dict):
        errors.append("Format invalide")
        return errors

    version = data.get("version")
    if version and version not in SUPPORTED_VERSIONS:
        errors.append("Version non supportée")

    if version == "2.0":
        entities = data.get("entities")
        if not isinstance(entities, dict):
            errors.append("Structure entities manquante")
        else:
            if entities.get("managers") and not isinstance(entities["managers"], dict):
                errors.append("Format managers invalide")
            if entities.get("seasons") and not isinstance(entities["seasons"], dict):
                errors.append("Format seasons invalide")
            if entities.get("matches") and not isinstance(entities["matches"], list):
                errors.append("Format matches invalide")

    if _has_denied_string(data):
        errors.append("Contenu non autorisé détecté")
    if _too_deep(data):
        errors.append(f"Structure trop profonde (max {MAX_NESTING_DEPTH} niveaux)")
    return errors


def parse_import(raw: bytes) -> dict:
    """Decode and validate an uploaded backup, raising ImportValidationError."""
    if len(raw) > MAX_IMPORT_FILE_SIZE:
        raise ImportValidationError(["Fichier trop volumineux (max 10 MB)"])
    try:
        data = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ImportValidationError(["Fichier JSON invalide"])
    except RecursionError:
        raise ImportValidationError([f"Structure trop profonde (max {MAX_NESTING_DEPTH} niveaux)"])

    errors = validate_payload(data, len(raw))
    if errors:
        _log.info(f"Import rejected: {errors}")
        raise ImportValidationError(errors)
    return data


def _legacy_context(data: Mapping):
    context = data.get("context") if isinstance(data.get("context"), dict) else {}
    championship = Championship.parse(context.get("championship")) or Championship.FRANCE
    try:
        season = int(context.get("season"))
    except (TypeError, ValueError):
        season = 1
    try:
        matchday = int(context.get("journee"))
    except (TypeError, ValueError):
        matchday = 1
    return championship, season, matchday


def _from_legacy(data: Mapping) -> Dataset:
    """Convert a 1.0 screen export: one table, one matchday, penalties."""
    championship, season, matchday = _legacy_context(data)
    classement = [r for r in data.get("classement") or [] if isinstance(r, dict)]

    managers = {}
    for row in classement:
        name = row.get("name") or row.get("mgr")
        if name and all(m["name"] != name for m in managers.values()):
            manager_id = make_manager_id(name, managers)
            managers[manager_id] = {"id": manager_id, "name": name}

    seasons = {}
    if classement:
        seasons[season_key(championship, season)] = SeasonEntry(
            championship=championship.storage_key, season=season, standings=tuple(classement),
        ).to_document()

    matches = []
    games = [normalize_game(g) for g in data.get("matches") or [] if isinstance(g, dict)]
    if games and not championship.is_meta:
        matches.append(MatchdayBlock(championship.storage_key, season, matchday, tuple(games)).to_document())

    return Dataset.from_document({
        "entities": {"managers": managers, "seasons": seasons, "matches": matches},
        "penalties": data.get("penalties") if isinstance(data.get("penalties"), dict) else {},
    })


def dataset_from_import(data: Mapping) -> Dataset:
    version = data.get("version") or "1.0"
    if version == "2.0":
        return Dataset.from_document(data)
    return _from_legacy(data)


def export_document(dataset: Dataset, now: Optional[datetime] = None) -> dict:
    doc = dataset.to_document()
    doc["exportDate"] = (now or datetime.now(timezone.utc)).isoformat()
    return doc
