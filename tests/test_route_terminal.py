"""WebSocket and admin routes, served by TestClient over the in-memory shell."""

import signal

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from core.config import Settings
from core.exceptions import SpawnError
from main import start_application


@pytest.fixture
def app_settings(tmp_path):
    return Settings(PROJECTS_DIR=str(tmp_path / "projects"), DEFAULT_CWD=str(tmp_path), SHELL="/bin/sh")


@pytest.fixture
def client(app_settings, spawner):
    app = start_application(app_settings, spawner=spawner)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def registry(client):
    return client.app.state.session_registry


def sync(ws):
    """Round-trip a frame the server rejects; everything sent before it has been handled"""
    ws.send_json({"type": "ping"})
    frame = ws.receive_json()
    assert frame == {"type": "error", "message": "Unknown message type: 'ping'"}


def expect_close(ws):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        ws.receive_json()
    return exc_info.value.code


class TestConnect:
    def test_new_session_announces_its_id_once(self, client, registry, spawner, tmp_path):
        with client.websocket_connect("/ws") as ws:
            frame = ws.receive_json()
            assert frame["type"] == "sessionID"
            sync(ws)

            session = registry.get(frame["sessionID"])
            assert session is not None
            assert session.cwd == str(tmp_path)
            assert list(session.attached)

        assert spawner.processes[0].argv == ["/bin/sh"]

    def test_size_and_project_come_from_the_query(self, client, registry, spawner, app_settings):
        with client.websocket_connect("/ws?projectName=demo&cols=132&rows=43") as ws:
            session_id = ws.receive_json()["sessionID"]
            sync(ws)

        process = spawner.processes[0]
        assert process.get_size() == (132, 43)
        assert process.cwd.endswith("demo")
        assert registry.get(session_id).project == "demo"

    def test_reattach_replays_scrollback_without_a_new_id(self, client, spawner):
        with client.websocket_connect("/ws") as first:
            session_id = first.receive_json()["sessionID"]
            client.portal.call(spawner.processes[0].emit, "x" * 50)
            assert first.receive_json() == {"type": "output", "data": "x" * 50}

            with client.websocket_connect(f"/ws?sessionID={session_id}") as second:
                assert second.receive_json() == {"type": "output", "data": "x" * 50}
                sync(second)

            sync(first)

        assert len(spawner.processes) == 1

    def test_unknown_session_is_rejected_without_spawning(self, client, registry, spawner):
        with client.websocket_connect("/ws?sessionID=missing") as ws:
            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert "missing" in frame["message"]
            assert expect_close(ws) == 4404

        assert len(registry) == 0
        assert spawner.processes == []

    def test_project_outside_the_root_is_rejected(self, client, registry):
        with client.websocket_connect("/ws?projectName=../escape") as ws:
            assert ws.receive_json()["type"] == "error"
            assert expect_close(ws) == 4400

        assert len(registry) == 0

    def test_spawn_failure_closes_with_an_error(self, client, registry, spawner):
        spawner.fail = SpawnError("no shell today")

        with client.websocket_connect("/ws") as ws:
            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert "no shell today" in frame["message"]
            assert expect_close(ws) == 4500

        assert len(registry) == 0


class TestRelay:
    def test_input_and_resize_reach_the_shell(self, client, registry, spawner):
        with client.websocket_connect("/ws") as ws:
            session_id = ws.receive_json()["sessionID"]
            ws.send_json({"type": "input", "data": "ls\r"})
            ws.send_json({"type": "resize", "cols": 120, "rows": 40})
            ws.send_json({"type": "input", "data": "pwd\r"})
            sync(ws)

            process = spawner.processes[0]
            assert process.written == ["ls\r", "pwd\r"]
            assert process.get_size() == (120, 40)
            assert (registry.get(session_id).cols, registry.get(session_id).rows) == (120, 40)

    def test_invalid_resize_is_ignored(self, client, spawner):
        with client.websocket_connect("/ws?cols=90&rows=30") as ws:
            ws.receive_json()
            ws.send_json({"type": "resize", "cols": 0, "rows": 40})
            ws.send_json({"type": "resize", "cols": 100, "rows": -3})
            ws.send_json({"type": "resize", "cols": 70000, "rows": 30})
            sync(ws)

            assert spawner.processes[0].get_size() == (90, 30)

            # still relaying after the oversized resize
            ws.send_json({"type": "resize", "cols": 100, "rows": 40})
            sync(ws)
            assert spawner.processes[0].get_size() == (100, 40)

    def test_oversized_initial_size_falls_back_to_defaults(self, client, spawner):
        with client.websocket_connect("/ws?cols=70000&rows=30") as ws:
            assert ws.receive_json()["type"] == "sessionID"
            sync(ws)

        assert spawner.processes[0].get_size() == (80, 24)

    def test_bad_frames_get_an_error_and_the_connection_survives(self, client, spawner):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert "Invalid JSON" in frame["message"]

            ws.send_json({"type": "input", "data": "still here\r"})
            sync(ws)
            assert spawner.processes[0].written == ["still here\r"]

    def test_output_reaches_every_attached_client(self, client, spawner):
        with client.websocket_connect("/ws") as first:
            session_id = first.receive_json()["sessionID"]
            sync(first)
            with client.websocket_connect(f"/ws?sessionID={session_id}") as second:
                sync(second)
                client.portal.call(spawner.processes[0].emit, "hello\r\n")
                assert first.receive_json() == {"type": "output", "data": "hello\r\n"}
                assert second.receive_json() == {"type": "output", "data": "hello\r\n"}

    def test_shell_exit_notifies_and_closes(self, client, registry, spawner):
        with client.websocket_connect("/ws") as ws:
            session_id = ws.receive_json()["sessionID"]
            sync(ws)
            client.portal.call(spawner.processes[0].finish, 3)

            assert ws.receive_json() == {"type": "exit", "exitCode": 3, "signal": None}
            assert expect_close(ws) == 1000

        assert registry.get(session_id) is None

    def test_disconnect_keeps_the_shell_and_arms_the_idle_timer(self, client, registry, spawner, wait_until):
        with client.websocket_connect("/ws") as ws:
            session_id = ws.receive_json()["sessionID"]
            sync(ws)
            session = registry.get(session_id)
            assert session.idle_timer is None

        assert wait_until(lambda: not session.attached and session.idle_timer is not None)
        assert registry.get(session_id) is session
        assert spawner.processes[0].kill_count == 0


class TestAdminRoutes:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "sessions": 0}

    def test_list_inspect_tail_and_kill(self, client, spawner, tmp_path):
        with client.websocket_connect("/ws") as ws:
            session_id = ws.receive_json()["sessionID"]
            client.portal.call(spawner.processes[0].emit, "one\r\ntwo\r\n\x1b[1mthree\x1b[0m")
            ws.receive_json()

            sessions = client.get("/api/sessions").json()["sessions"]
            assert [s["id"] for s in sessions] == [session_id]
            assert sessions[0]["clients"] == 1
            assert sessions[0]["cwd"] == str(tmp_path)
            assert sessions[0]["alive"] is True

            detail = client.get(f"/api/sessions/{session_id}").json()
            assert detail["bufferSize"] == len("one\r\ntwo\r\n\x1b[1mthree\x1b[0m")

            tail = client.get(f"/api/sessions/{session_id}/tail", params={"lines": 2, "strip": "true"})
            assert tail.json() == {"id": session_id, "tail": "two\nthree"}

            response = client.delete(f"/api/sessions/{session_id}")
            assert response.status_code == 200
            assert response.json() == {"message": "Session killed successfully", "sessionId": session_id}

            assert ws.receive_json() == {
                "type": "exit",
                "exitCode": 128 + int(signal.SIGHUP),
                "signal": int(signal.SIGHUP),
            }
            assert expect_close(ws) == 1000

        assert client.get(f"/api/sessions/{session_id}").status_code == 404
        assert client.get(f"/api/sessions/{session_id}/tail").status_code == 404
        assert client.delete(f"/api/sessions/{session_id}").status_code == 404

    def test_project_session_stats(self, client, spawner):
        for project in ("alpha", "alpha", "beta"):
            with client.websocket_connect(f"/ws?projectName={project}") as ws:
                ws.receive_json()

        client.portal.call(spawner.processes[1].exit_holding_terminal)

        stats = client.get("/api/projects/alpha/sessions/stats").json()
        assert stats == {"project": "alpha", "totalSessions": 2, "activeSessions": 1, "inactiveSessions": 1}

        empty = client.get("/api/projects/nobody/sessions/stats").json()
        assert empty == {"project": "nobody", "totalSessions": 0, "activeSessions": 0, "inactiveSessions": 0}

    def test_project_filter_and_bulk_kill(self, client, registry):
        ids = {}
        for project in ("alpha", "alpha", "beta"):
            with client.websocket_connect(f"/ws?projectName={project}") as ws:
                ids.setdefault(project, []).append(ws.receive_json()["sessionID"])

        alpha = client.get("/api/sessions", params={"project": "alpha"}).json()["sessions"]
        assert sorted(s["id"] for s in alpha) == sorted(ids["alpha"])

        response = client.delete("/api/projects/alpha/sessions")
        assert sorted(response.json()["killedSessions"]) == sorted(ids["alpha"])
        assert response.json()["message"] == "Killed 2 sessions"

        remaining = client.get("/api/sessions").json()["sessions"]
        assert [s["id"] for s in remaining] == ids["beta"]
        assert client.get("/api/health").json()["sessions"] == 1
