"""
API tests for the code runner service.

These tests exercise the HTTP endpoints and the terminal websocket using
FastAPI's TestClient.  The application is built with an in-memory backend
so no Docker daemon is needed; entering the client runs the lifespan that
wires the runtime.
"""

from __future__ import annotations

import dataclasses
import time

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from coderunner.api import create_app

from conftest import PROMPT, FakeBackend, Hang, leftover_workspaces


API_KEY = "test-key"
API_KEY_HEADER = {"x-api-key": API_KEY}


@pytest.fixture
def client(config, backend):
    app = create_app(config, backend=backend)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def secured_client(config, backend):
    app = create_app(dataclasses.replace(config, api_key=API_KEY), backend=backend)
    with TestClient(app) as client:
        yield client


def receive_until(ws, predicate, limit=20):
    """Read events until one matches ``predicate``; return all read so far."""
    events = []
    for _ in range(limit):
        event = ws.receive_json()
        events.append(event)
        if predicate(event):
            return events
    raise AssertionError(f"no matching event in {events}")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "mode": "docker"}


def test_languages(client):
    response = client.get("/v1/languages")
    assert response.status_code == 200
    ids = {lang["id"] for lang in response.json()["languages"]}
    assert ids == {"javascript", "python", "java", "cpp", "c", "bash", "go", "ruby", "php", "rust"}


def test_execute_returns_camel_case_fields(client):
    response = client.post("/v1/executions", json={"language": "python", "code": "print(input())", "stdin": "Ada"})
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert data["output"] == "Ada"
    assert data["exitCode"] == 0
    assert data["errorKind"] is None
    assert data["simulated"] is False
    assert len(data["executionId"]) == 32
    assert "durationMs" in data


def test_exec_alias_accepts_alternative_field_names(client, workspace_root):
    response = client.post("/exec", json={"language": "ruby", "sourceCode": "puts gets", "input": "hi"})
    assert response.status_code == 200
    assert response.json()["output"] == "hi"
    assert leftover_workspaces(workspace_root) == []


def test_execute_timeout(config, workspace_root):
    backend = FakeBackend(program=lambda src, stdin: Hang(), present=("python:3.9-alpine",))
    with TestClient(create_app(config, backend=backend)) as client:
        response = client.post("/v1/executions", json={"language": "python", "code": "while True: pass", "timeout": 0.3})
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "error"
    assert data["errorKind"] == "ExecutionTimeout"
    assert data["exitCode"] == -9
    assert "timed out" in data["output"]
    assert leftover_workspaces(workspace_root) == []


def test_unsupported_language(client):
    response = client.post("/v1/executions", json={"language": "unknownlang", "code": "x"})
    assert response.status_code == 400
    assert response.json() == {"error": "UnsupportedLanguage", "detail": "Unsupported language: unknownlang"}


def test_image_unavailable_is_503(config):
    backend = FakeBackend(pull_error=True)
    with TestClient(create_app(config, backend=backend)) as client:
        response = client.post("/v1/executions", json={"language": "go", "code": "package main"})
    assert response.status_code == 503
    assert response.json()["error"] == "ImageUnavailable"


def test_invalid_body(client):
    response = client.post("/v1/executions", json={"language": "python"})
    assert response.status_code == 422
    response = client.post("/v1/executions", json={"language": "python", "code": "x", "timeout": -1})
    assert response.status_code == 422


def test_api_key_required(secured_client):
    assert secured_client.get("/health").status_code == 200
    response = secured_client.post("/v1/executions", json={"language": "python", "code": "print(1)"})
    assert response.status_code == 401
    response = secured_client.post(
        "/v1/executions", json={"language": "python", "code": "print(1)"}, headers=API_KEY_HEADER
    )
    assert response.status_code == 200


def test_simulated_mode(config):
    config = dataclasses.replace(config, backend="simulated")
    with TestClient(create_app(config)) as client:
        assert client.get("/health").json()["mode"] == "simulated"
        response = client.post("/v1/executions", json={"language": "python", "code": 'print("hi")'})
        assert response.status_code == 200
        data = response.json()
        assert data["simulated"] is True
        assert data["exitCode"] is None
        assert data["errorKind"] == "SimulatedExecution"

        with client.websocket_connect("/v1/terminal") as ws:
            event = ws.receive_json()
            assert event["type"] == "error"
            assert event["error_kind"] == "InfrastructureError"


def test_terminal_lifecycle(config, backend, workspace_root):
    with TestClient(create_app(config, backend=backend)) as client, client.websocket_connect("/v1/terminal") as ws:
        ws.send_json({"type": "create", "language": "bash"})
        created = ws.receive_json()
        assert created["type"] == "created"
        assert created["language"] == "bash"
        session_id = created["session_id"]

        receive_until(ws, lambda e: e["type"] == "output" and PROMPT.decode() in e["data"])

        ws.send_json({"type": "resize", "sessionId": session_id, "cols": 100, "rows": 30})
        ws.send_json({"type": "input", "session_id": session_id, "data": "echo hello\n"})
        events = receive_until(ws, lambda e: e["type"] == "output" and "echo hello" in e["data"])
        assert all(e["session_id"] == session_id for e in events)

        ws.send_json({"type": "close", "session_id": session_id})
        ws.send_json({"type": "input", "session_id": session_id, "data": "echo late\n"})
        late = receive_until(ws, lambda e: e["type"] == "error")[-1]
        assert late["error_kind"] == "InputAfterClose"
        assert late["session_id"] == session_id

    container = backend.containers[0]
    assert container.resizes == [(30, 100)]
    assert container.removed
    assert leftover_workspaces(workspace_root) == []


def test_terminal_rejects_bad_events(client):
    with client.websocket_connect("/v1/terminal") as ws:
        ws.send_text('{"type": "bogus"}')
        assert ws.receive_json()["message"].startswith("Invalid event")

        ws.send_json({"type": "input", "session_id": "missing", "data": "ls\n"})
        event = ws.receive_json()
        assert event["error_kind"] == "SessionNotFound"
        assert event["session_id"] == "missing"

        ws.send_json({"type": "create", "language": "cobol"})
        event = ws.receive_json()
        assert event["error_kind"] == "UnsupportedLanguage"
        assert "session_id" not in event


def test_disconnect_closes_sessions(config, backend, workspace_root):
    with TestClient(create_app(config, backend=backend)) as client:
        with client.websocket_connect("/v1/terminal") as ws:
            ws.send_json({"type": "create"})
            assert ws.receive_json()["type"] == "created"

        # the app is still running; only the connection is gone
        deadline = time.monotonic() + 2
        while leftover_workspaces(workspace_root) and time.monotonic() < deadline:
            time.sleep(0.02)
        assert backend.containers[0].removed
        assert leftover_workspaces(workspace_root) == []


def test_sessions_are_private_to_their_connection(config, backend):
    with TestClient(create_app(config, backend=backend)) as client:
        with client.websocket_connect("/v1/terminal") as owner_ws, client.websocket_connect("/v1/terminal") as other:
            owner_ws.send_json({"type": "create", "language": "bash"})
            session_id = owner_ws.receive_json()["session_id"]
            receive_until(owner_ws, lambda e: e["type"] == "output" and PROMPT.decode() in e["data"])

            other.send_json({"type": "input", "session_id": session_id, "data": "rm -rf /code\n"})
            event = other.receive_json()
            assert event["error_kind"] == "SessionNotFound"
            other.send_json({"type": "close", "session_id": session_id})
            assert other.receive_json()["error_kind"] == "SessionNotFound"

            owner_ws.send_json({"type": "input", "session_id": session_id, "data": "echo mine\n"})
            receive_until(owner_ws, lambda e: e["type"] == "output" and "echo mine" in e["data"])

    assert backend.containers[0].writes == [b"echo mine\n"]


def test_slow_create_does_not_block_other_sessions(config, workspace_root):
    backend = FakeBackend(present=("bash:5",), pull_delay=1.0)
    with TestClient(create_app(config, backend=backend)) as client, client.websocket_connect("/v1/terminal") as ws:
        ws.send_json({"type": "create", "language": "bash"})
        bash_id = ws.receive_json()["session_id"]
        receive_until(ws, lambda e: e["type"] == "output" and PROMPT.decode() in e["data"])

        # ruby is not present, so its session waits for a pull
        ws.send_json({"type": "create", "language": "ruby"})
        ws.send_json({"type": "input", "session_id": bash_id, "data": "echo busy\n"})
        events = receive_until(ws, lambda e: e["type"] == "output" and "echo busy" in e["data"])
        assert not [e for e in events if e["type"] == "created"]

        events = receive_until(ws, lambda e: e["type"] == "created")
        assert events[-1]["language"] == "ruby"
        assert events[-1]["session_id"] != bash_id

    assert backend.pulls == ["ruby:alpine"]
    assert all(c.removed for c in backend.containers)
    assert leftover_workspaces(workspace_root) == []


def test_terminal_api_key(secured_client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with secured_client.websocket_connect("/v1/terminal") as ws:
            ws.receive_json()
    assert excinfo.value.code == 1008

    with secured_client.websocket_connect(f"/v1/terminal?api_key={API_KEY}") as ws:
        ws.send_json({"type": "create", "language": "python"})
        assert ws.receive_json()["type"] == "created"
