"""End-to-end tests for teamwatch/web.py: files on disk to HTTP and WebSocket."""

import time

import pytest
from fastapi.testclient import TestClient

from teamwatch.web import create_app
from tests.conftest import sample_config, sample_task


def _wait_for(fetch, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    value = fetch()
    while not predicate(value) and time.monotonic() < deadline:
        time.sleep(0.05)
        value = fetch()
    return value


@pytest.fixture
def client(tw_home, settings):
    app = create_app(tw_home, settings=settings)
    with TestClient(app) as c:
        yield c


class TestHttp:
    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["watching"] is True
        assert data["observers"] == 0

    def test_unknown_session_is_404(self, client):
        assert client.get("/api/sessions/999").status_code == 404

    def test_existing_files_are_scanned_at_startup(self, tw_home, settings, tree):
        tree.write_config()
        tree.write_task("1")
        with TestClient(create_app(tw_home, settings=settings)) as c:
            teams = _wait_for(
                lambda: c.get("/api/teams").json(),
                lambda d: "1" in (d["teams"].get("alpha") or {}).get("tasks", {}),
            )
        assert teams["active_team"] == "alpha"
        assert len(teams["teams"]["alpha"]["config"]["members"]) == 2


class TestEndToEnd:
    def test_task_lifecycle_recorded_once(self, client, tree):
        """Config then task pending then in_progress: one session, one task row."""
        tree.write_config(data=sample_config(created_at=1000))
        tree.write_task("1", sample_task("1", "pending"))
        _wait_for(
            lambda: client.get("/api/sessions").json(),
            lambda rows: rows and rows[0]["task_count"] == 1,
        )
        tree.write_task("1", sample_task("1", "in_progress"))

        def detail():
            rows = client.get("/api/sessions").json()
            return client.get(f"/api/sessions/{rows[0]['id']}").json() if rows else None

        result = _wait_for(
            detail,
            lambda d: d is not None and [t["status"] for t in d["tasks"]] == ["in_progress"],
        )
        sessions = client.get("/api/sessions").json()
        assert len(sessions) == 1
        assert sessions[0]["created_at"] == 1000
        assert [(t["task_id"], t["status"]) for t in result["tasks"]] == [("1", "in_progress")]
        assert len(result["members"]) == 2

    def test_internal_tasks_hidden_everywhere(self, client, tree):
        tree.write_config()
        tree.write_task("1")
        tree.write_task("2", sample_task("2", metadata={"_internal": True}))
        teams = _wait_for(
            lambda: client.get("/api/teams").json(),
            lambda d: "1" in (d["teams"].get("alpha") or {}).get("tasks", {}),
        )
        time.sleep(0.2)
        assert set(client.get("/api/teams").json()["teams"]["alpha"]["tasks"]) == {"1"}
        assert teams["teams"]["alpha"]["tasks"]["1"]["status"] == "pending"

    def test_new_created_at_starts_new_session(self, client, tree):
        tree.write_config(data=sample_config(created_at=1000))
        _wait_for(lambda: client.get("/api/sessions").json(), lambda rows: len(rows) == 1)
        tree.write_config(data=sample_config(created_at=2000))
        rows = _wait_for(lambda: client.get("/api/sessions").json(), lambda rows: len(rows) == 2)
        assert [r["created_at"] for r in rows] == [2000, 1000]
        assert rows[1]["ended_at"] is not None


class TestWebSocket:
    def test_snapshot_then_live_update(self, client, tree):
        tree.write_config()
        _wait_for(lambda: client.get("/api/teams").json(), lambda d: "alpha" in d["teams"])

        with client.websocket_connect("/ws") as ws:
            first = ws.receive_json()
            assert first["type"] == "snapshot"
            assert first["payload"]["active_team"] == "alpha"

            tree.write_task("5", sample_task("5", "in_progress"))
            update = ws.receive_json()
            while update["type"] != "team_update":
                update = ws.receive_json()
            assert update["payload"]["kind"] == "task"
            assert update["payload"]["tasks"]["5"]["status"] == "in_progress"

    def test_history_request(self, client, tree):
        tree.write_config()
        _wait_for(lambda: client.get("/api/sessions").json(), lambda rows: len(rows) == 1)

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "get_history"})
            reply = ws.receive_json()
            while reply["type"] != "history":
                reply = ws.receive_json()
            assert reply["payload"]["sessions"][0]["team_name"] == "alpha"

    def test_malformed_request_keeps_connection(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{broken")
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "switch_team", "payload": {"team": "ghost"}})
            reply = ws.receive_json()
            assert reply["type"] == "snapshot"
            assert reply["payload"]["active_team"] == "ghost"
