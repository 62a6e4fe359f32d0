"""
HTTP API tests
==============

Runs against the module-level league with the database replaced by a
recording backend. The app's lifespan is not entered, so nothing is
loaded from MongoDB.
"""

import json

import pytest
from fastapi.testclient import TestClient

import main
from league import Dataset


class RecordingBackend:
    def __init__(self):
        self.calls = []

    def __getattr__(self, operation):
        def call(*args):
            self.calls.append((operation, args))
        return call

    def operations(self):
        return [op for op, _ in self.calls]


@pytest.fixture
def backend():
    recording = RecordingBackend()
    main.queue.backend = recording
    main.queue.debounce_seconds = 0
    main.queue.drain(force=True)
    main.league.load(Dataset.empty())
    recording.calls.clear()
    return recording


@pytest.fixture
def client(backend):
    return TestClient(main.app)


def matchday(*games):
    return {"games": [
        {"home_team": h, "away_team": a, "home_score": hs, "away_score": as_}
        for h, a, hs, as_ in games
    ]}


class TestManagersApi:
    def test_add_list_rename_delete(self, client, backend):
        assert client.post("/api/managers", json={"name": "Alpha"}).json() == {"id": "alpha", "name": "Alpha"}
        client.post("/api/managers", json={"name": "Beta"})
        assert [m["name"] for m in client.get("/api/managers").json()] == ["Alpha", "Beta"]

        renamed = client.patch("/api/managers/alpha", json={"name": "Gamma"})
        assert renamed.status_code == 200
        assert renamed.json()["name"] == "Gamma"

        assert client.delete("/api/managers/beta").status_code == 200
        assert [m["name"] for m in client.get("/api/managers").json()] == ["Gamma"]
        assert {"save_manager", "rename_manager", "delete_manager"} <= set(backend.operations())

    def test_errors(self, client):
        client.post("/api/managers", json={"name": "Alpha"})
        assert client.post("/api/managers", json={"name": "alpha"}).status_code == 409
        assert client.post("/api/managers", json={"name": "  "}).status_code == 400
        assert client.patch("/api/managers/ghost", json={"name": "X"}).status_code == 404


class TestMatchdaysApi:
    def test_save_then_standings(self, client, backend):
        for name in ("A", "B", "C", "D"):
            client.post("/api/managers", json={"name": name})
        response = client.put(
            "/api/championships/france/seasons/1/matchdays/1",
            json=matchday(("A", "B", 2, 1), ("C", "D", 0, 0)),
        )
        assert response.status_code == 200
        assert response.json()["saved"] == 2

        sheet = client.get("/api/championships/france/seasons/1/matchdays/1").json()
        assert len(sheet["games"]) == 5

        standings = client.get("/api/championships/france/seasons/1/standings").json()
        assert [r["mgr"] for r in standings["standings"]] == ["A", "C", "D", "B"]
        assert standings["progress"] == {
            "current_matchday": 1, "total_matchdays": 18, "percentage": 5.6, "complete": False,
        }
        assert "save_matches" in backend.operations()

    def test_meta_standings_breakdown(self, client):
        client.put("/api/championships/spain/seasons/2/matchdays/1", json=matchday(("A", "B", 0, 3)))
        standings = client.get("/api/championships/hyenes/seasons/2/standings").json()
        assert standings["standings"][0]["mgr"] == "B"
        assert standings["breakdown"]["B"]["spain"] == 3
        assert standings["progress"]["total_matchdays"] == 72

    def test_rejections(self, client):
        assert client.put("/api/championships/hyenes/seasons/1/matchdays/1", json=matchday()).status_code == 400
        assert client.put("/api/championships/france/seasons/1/matchdays/30", json=matchday()).status_code == 400
        assert client.get("/api/championships/bundesliga/seasons/1/standings").status_code == 404
        bad_score = matchday(("A", "B", 100, 0))
        assert client.put("/api/championships/france/seasons/1/matchdays/1", json=bad_score).status_code == 422


class TestPenaltiesApi:
    def test_penalty_changes_order(self, client):
        client.put("/api/championships/italy/seasons/1/matchdays/1", json=matchday(("A", "B", 1, 0)))
        assert client.put("/api/championships/italy/seasons/1/penalties/A", json={"points": 4}).status_code == 200
        assert client.get("/api/championships/italy/seasons/1/penalties").json() == {"A": 4}

        standings = client.get("/api/championships/italy/seasons/1/standings").json()
        assert [r["mgr"] for r in standings["standings"]] == ["B", "A"]
        assert standings["penalties"] == {"A": 4}

        client.delete("/api/championships/italy/seasons/1/penalties/A")
        assert client.get("/api/championships/italy/seasons/1/penalties").json() == {}

    def test_negative_rejected(self, client):
        response = client.put("/api/championships/italy/seasons/1/penalties/A", json={"points": -1})
        assert response.status_code == 422


class TestSeasonsApi:
    def test_create_and_exempt(self, client):
        client.post("/api/managers", json={"name": "Alpha"})
        assert client.post("/api/seasons", json={"number": 3}).status_code == 200
        assert client.post("/api/seasons", json={"number": 3}).status_code == 409
        assert client.put("/api/seasons/3/exempt", json={"team": "Alpha"}).status_code == 200
        assert client.get("/api/seasons").json() == [{"number": 3, "exempt_team": "Alpha"}]
        assert client.put("/api/seasons/3/exempt", json={"team": "Nobody"}).status_code == 404


class TestHonoursApi:
    def test_palmares_and_pantheon(self, client):
        for day in range(1, 19):
            client.put(f"/api/championships/england/seasons/1/matchdays/{day}", json=matchday(("A", "B", 1, 0)))
        palmares = client.get("/api/championships/england/palmares").json()
        assert [(c["season"], c["champion"], c["runner_up"]) for c in palmares] == [(1, "A", "B")]
        pantheon = client.get("/api/pantheon").json()
        assert pantheon[0]["name"] == "A"
        assert pantheon[0]["england"] == 1


class TestTransferApi:
    def test_import_then_export(self, client, backend):
        data = {
            "version": "2.0",
            "entities": {
                "managers": {"a": {"id": "a", "name": "Alpha"}},
                "seasons": {},
                "matches": [],
            },
            "penalties": {},
        }
        files = {"file": ("backup.json", json.dumps(data), "application/json")}
        response = client.post("/api/import", files=files)
        assert response.status_code == 200
        assert response.json()["managers"] == 1
        assert "import_dataset" in backend.operations()

        exported = client.get("/api/export").json()
        assert exported["entities"]["managers"] == {"a": {"id": "a", "name": "Alpha"}}
        assert "exportDate" in exported

    def test_import_rejects_script(self, client):
        data = {"version": "2.0", "entities": {"managers": {"a": {"id": "a", "name": "<script>x</script>"}}}}
        files = {"file": ("backup.json", json.dumps(data), "application/json")}
        response = client.post("/api/import", files=files)
        assert response.status_code == 400
        assert response.json()["detail"] == "Contenu non autorisé détecté"
        assert main.league.dataset.managers == {}


class TestStatusApi:
    def test_root_and_championships(self, client):
        assert client.get("/").status_code == 200
        ids = [c["id"] for c in client.get("/api/championships").json()]
        assert ids == ["hyenes", "france", "spain", "italy", "england"]

    def test_connection_report(self, client, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "mongodb://localhost:27017")
        monkeypatch.delenv("DATABASE_NAME", raising=False)
        monkeypatch.setattr(main.database, "db", None)
        main.queue.publish("add_manager", "x", "X", key=("manager", "x"))

        status = client.get("/test").json()
        assert status["database_url"] == "✅ Set"
        assert status["database_name"] == "❌ Not Set"
        assert status["connection_status"] == "Not Connected"
        assert status["pending_writes"] == 1

        class Handle:
            name = "hyenescores"

            def list_collection_names(self):
                return ["managers", "matches"]

        monkeypatch.setattr(main.database, "db", Handle())
        status = client.get("/test").json()
        assert status["connection_status"] == "Connected"
        assert status["database"] == "✅ Connected & Working"
        assert status["collections"] == ["managers", "matches"]
