"""
Backup import and export tests
"""

import json
from datetime import datetime, timezone

import pytest

from championships import Championship
from league import Dataset, add_manager, save_matchday
from transfer import (
    MAX_IMPORT_FILE_SIZE, ImportValidationError, dataset_from_import, export_document,
    parse_import, validate_payload,
)


def encode(data) -> bytes:
    return json.dumps(data).encode("utf-8")


def v2(**entities):
    return {"version": "2.0", "entities": {"managers": {}, "seasons": {}, "matches": [], **entities}}


class TestValidation:
    def test_script_rejected(self):
        data = v2(managers={"a": {"id": "a", "name": "<script>alert(1)</script>"}})
        with pytest.raises(ImportValidationError) as exc:
            parse_import(encode(data))
        assert str(exc.value) == "Contenu non autorisé détecté"

    @pytest.mark.parametrize("value", ["javascript:void(0)", "eval (x)", "new Function(x)", "<SCRIPT src=x>"])
    def test_other_denied_strings(self, value):
        assert "Contenu non autorisé détecté" in validate_payload({"version": "1.0", "note": [value]})

    def test_keys_are_not_inspected(self):
        assert validate_payload({"version": "1.0", "penalties": {"france_1_<script>": 1}}) == []

    def test_depth_limit(self):
        nested = "leaf"
        for _ in range(12):
            nested = {"n": nested}
        errors = validate_payload({"version": "1.0", "deep": nested})
        assert errors == ["Structure trop profonde (max 10 niveaux)"]

    def test_nesting_beyond_the_parser_rejected(self):
        raw = b'{"version": "2.0", "x": ' + b"[" * 100000 + b"]" * 100000 + b"}"
        with pytest.raises(ImportValidationError) as exc:
            parse_import(raw)
        assert str(exc.value) == "Structure trop profonde (max 10 niveaux)"

        raw = b'{"version": "2.0", "x": ' + b"[" * 500 + b"]" * 500 + b"}"
        assert validate_payload(json.loads(raw)) == [
            "Structure entities manquante", "Structure trop profonde (max 10 niveaux)",
        ]

    def test_size_limit(self):
        with pytest.raises(ImportValidationError) as exc:
            parse_import(b" " * (MAX_IMPORT_FILE_SIZE + 1))
        assert str(exc.value) == "Fichier trop volumineux (max 10 MB)"

    def test_invalid_json(self):
        with pytest.raises(ImportValidationError) as exc:
            parse_import(b"{not json")
        assert str(exc.value) == "Fichier JSON invalide"

    def test_not_an_object(self):
        with pytest.raises(ImportValidationError) as exc:
            parse_import(b"[1, 2]")
        assert str(exc.value) == "Format invalide"

    def test_unknown_version(self):
        assert validate_payload({"version": "3.0"}) == ["Version non supportée"]

    def test_v2_shape(self):
        assert validate_payload({"version": "2.0"}) == ["Structure entities manquante"]
        errors = validate_payload({"version": "2.0", "entities": {"managers": ["a"], "matches": {"x": 1}}})
        assert errors == ["Format managers invalide", "Format matches invalide"]

    def test_every_error_kept_first_shown(self):
        data = {"version": "3.0", "x": "javascript:alert(1)"}
        with pytest.raises(ImportValidationError) as exc:
            parse_import(encode(data))
        assert exc.value.errors == ["Version non supportée", "Contenu non autorisé détecté"]
        assert str(exc.value) == "Version non supportée"

    def test_bom_accepted(self):
        assert parse_import(b"\xef\xbb\xbf" + encode(v2()))["version"] == "2.0"


class TestImport:
    def test_v2(self):
        data = v2(
            managers={"a": {"id": "a", "name": "Alpha"}, "b": {"id": "b", "name": "Beta"}},
            matches=[{"championship": "france", "season": 1, "matchday": 1,
                      "games": [{"homeTeam": "Alpha", "awayTeam": "Beta", "homeScore": 1, "awayScore": 0}]}],
        )
        data["penalties"] = {"france_1_Beta": 2}
        dataset = dataset_from_import(parse_import(encode(data)))
        assert dataset.roster == ["Alpha", "Beta"]
        assert len(dataset.matches) == 1
        assert dataset.penalty_for(Championship.FRANCE, 1, "Beta") == 2

    def test_v1_screen_export(self):
        data = {
            "version": "1.0",
            "context": {"championship": "italy", "season": "4", "journee": "7"},
            "classement": [{"name": "Alpha", "pts": 12}, {"name": "Beta", "pts": 9}],
            "matches": [{"h": "Alpha", "a": "Beta", "hs": 2, "as": 2}],
            "penalties": {"italy_4_Beta": 1},
        }
        dataset = dataset_from_import(parse_import(encode(data)))
        assert dataset.roster == ["Alpha", "Beta"]
        entry = dataset.entry(Championship.ITALY, 4)
        assert [r["name"] for r in entry.standings] == ["Alpha", "Beta"]
        block = dataset.find_block(Championship.ITALY, 4, 7)
        assert block.games[0]["homeTeam"] == "Alpha"
        assert block.games[0]["awayScore"] == 2
        assert dataset.penalty_for(Championship.ITALY, 4, "Beta") == 1

    def test_v1_without_context(self):
        data = {"classement": [{"mgr": "Alpha", "pts": 3}]}
        dataset = dataset_from_import(data)
        assert dataset.entry(Championship.FRANCE, 1) is not None
        assert dataset.matches == ()


class TestExport:
    def test_export_document(self):
        dataset = add_manager(Dataset.empty(), "Alpha")
        dataset = save_matchday(dataset, Championship.ENGLAND, 2, 1, [])
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        doc = export_document(dataset, now)
        assert doc["version"] == "2.0"
        assert doc["exportDate"] == "2024-05-01T12:00:00+00:00"
        assert doc["entities"]["managers"]["alpha"] == {"id": "alpha", "name": "Alpha"}
        assert doc["entities"]["matches"][0]["championship"] == "angleterre"

    def test_export_reimports(self):
        dataset = add_manager(Dataset.empty(), "Alpha")
        doc = export_document(dataset)
        assert dataset_from_import(parse_import(encode(doc))) == dataset
