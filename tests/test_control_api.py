"""
Tests for the control API.

Verifies:
- GET /control/sessions, /control/sessions/{call_id}, /control/sessions/{call_id}/events
- POST /control/sessions/{call_id}/tool-result and /stop error mapping
- GET /control/media/assets
- POST / DELETE /control/subscriptions
"""
import pytest
from fastapi.testclient import TestClient

from control_plane.runtime import get_command_client, get_orchestrator, get_subscription_manager
from control_plane.subscriptions import SubscriptionManager, SubscriptionStore
from control_plane.webhook_server import app
from observability.events import Component, EventEmitter
from voicenet_agent.errors import NotConnected, SessionNotFound
from voicenet_agent.models import Call, Outcome, PromptConfig, ToolDescriptor
from voicenet_agent.session import CallSessionRegistry, Session, SessionState


class StubOrchestrator:
    """Read side backed by a real registry; write side scripted."""

    def __init__(self):
        self.registry = CallSessionRegistry()
        self.sessions = {}
        self.tool_results = []
        self.submit_outcome = None
        self.stopped = []

    def add(self, call_id, state=SessionState.STREAMING):
        session = Session(
            call_id=call_id,
            prompt=PromptConfig(locale="it-IT"),
            endpoint="wss://rt.test/realtime",
            tools=(ToolDescriptor("transfer_call"),),
            call=Call(call_id, "+3933", "+3902"),
        )
        session.transition_to(state)
        self.sessions[call_id] = session
        self.registry.register(session)
        return session

    def get_session(self, call_id):
        return self.sessions.get(call_id)

    async def submit_tool_result(self, call_id, payload):
        self.tool_results.append((call_id, payload))
        return self.submit_outcome or Outcome.success(call_id, toolCallId=payload["toolCallId"])

    async def stop(self, call_id):
        self.stopped.append(call_id)
        if call_id not in self.sessions:
            return Outcome.failure(call_id, SessionNotFound("no active session", call_id))
        return Outcome.success(call_id, state="ended")


@pytest.fixture
def orchestrator():
    return StubOrchestrator()


@pytest.fixture
def client(orchestrator, command_client, tmp_path):
    manager = SubscriptionManager(command_client, SubscriptionStore(tmp_path / "subs.json"))
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_command_client] = lambda: command_client
    app.dependency_overrides[get_subscription_manager] = lambda: manager
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# --- Read API ---


def test_list_sessions_empty(client):
    response = client.get("/control/sessions")

    assert response.status_code == 200
    assert response.json() == []


def test_list_sessions_filter_by_state(client, orchestrator):
    orchestrator.add("c1")
    orchestrator.add("c2", SessionState.CREATING_SESSION)

    all_sessions = client.get("/control/sessions").json()
    streaming = client.get("/control/sessions?state=streaming").json()

    assert {s["call_id"] for s in all_sessions} == {"c1", "c2"}
    assert [s["call_id"] for s in streaming] == ["c1"]
    assert streaming[0]["state"] == "streaming"


def test_list_sessions_invalid_state(client):
    response = client.get("/control/sessions?state=ringing")

    assert response.status_code == 400
    assert "Invalid state" in response.json()["detail"]


def test_get_session_detail(client, orchestrator):
    orchestrator.add("c1")

    response = client.get("/control/sessions/c1")

    assert response.status_code == 200
    data = response.json()
    assert data["call_id"] == "c1"
    assert data["tools"] == ["transfer_call"]
    assert data["locale"] == "it-IT"
    assert data["caller_number"] == "+3933"
    assert data["stream_state"] is None


def test_get_session_not_found(client):
    response = client.get("/control/sessions/ghost")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "SESSION_NOT_FOUND"


def test_get_session_events(client, orchestrator):
    orchestrator.add("c1")
    emitter = EventEmitter(Component.ORCHESTRATOR)
    emitter.emit("session.tool_call", "c1", tool="lookup")
    emitter.emit("session.tool_call", "c2", tool="lookup")
    emitter.emit("session.state_changed", "c1")

    all_events = client.get("/control/sessions/c1/events").json()
    filtered = client.get("/control/sessions/c1/events?event_type=session.tool_call").json()

    assert all_events["count"] == 2
    assert filtered["count"] == 1
    assert filtered["events"][0]["tool"] == "lookup"


def test_get_session_events_bad_timestamp(client, orchestrator):
    orchestrator.add("c1")

    response = client.get("/control/sessions/c1/events?since=not-a-date")

    assert response.status_code == 400


# --- Write API ---


def test_submit_tool_result(client, orchestrator, capsys):
    response = client.post(
        "/control/sessions/c1/tool-result",
        json={"toolCallId": "t1", "name": "lookup", "result": {"ok": True}},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "success", "callId": "c1", "toolCallId": "t1"}
    assert orchestrator.tool_results == [
        ("c1", {"toolCallId": "t1", "name": "lookup", "result": {"ok": True}}),
    ]
    out = capsys.readouterr().out
    assert "control.command_received" in out
    assert "control.command_applied" in out


def test_submit_tool_result_without_name(client, orchestrator):
    response = client.post(
        "/control/sessions/c1/tool-result",
        json={"toolCallId": "t1", "result": {"ok": True}},
    )

    assert response.status_code == 200
    assert orchestrator.tool_results == [
        ("c1", {"toolCallId": "t1", "name": None, "result": {"ok": True}}),
    ]


def test_submit_tool_result_unknown_session(client, orchestrator):
    orchestrator.submit_outcome = Outcome.failure("c1", SessionNotFound("no active session", "c1"))

    response = client.post("/control/sessions/c1/tool-result",
                           json={"toolCallId": "t1", "name": "lookup"})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "SESSION_NOT_FOUND"


def test_submit_tool_result_not_connected(client, orchestrator):
    orchestrator.submit_outcome = Outcome.failure("c1", NotConnected("stream is subscribed", "c1"))

    response = client.post("/control/sessions/c1/tool-result",
                           json={"toolCallId": "t1", "name": "lookup"})

    assert response.status_code == 409


def test_submit_tool_result_validation(client):
    response = client.post("/control/sessions/c1/tool-result", json={"name": "lookup"})

    assert response.status_code == 422


def test_stop_session(client, orchestrator):
    orchestrator.add("c1")

    stopped = client.post("/control/sessions/c1/stop")
    missing = client.post("/control/sessions/ghost/stop")

    assert stopped.status_code == 200
    assert stopped.json()["state"] == "ended"
    assert missing.status_code == 404
    assert orchestrator.stopped == ["c1", "ghost"]


# --- Media & subscriptions ---


def test_list_media_assets(client):
    response = client.get("/control/media/assets")

    assert response.status_code == 200
    assert response.json() == {
        "assets": [{"id": "a1", "name": "Welcome", "description": "Greeting"}],
        "count": 1,
    }


def test_list_media_assets_backend_failure(client, command_client):
    command_client.fail("media.list")

    response = client.get("/control/media/assets")

    assert response.status_code == 502
    assert response.json()["detail"]["kind"] == "backend_unavailable"


def test_subscription_lifecycle(client, command_client):
    body = {"workflowId": "wf", "nodeId": "node", "callbackUrl": "https://hook.test/cb", "did": "+3902"}

    created = client.post("/control/subscriptions", json=body)
    repeated = client.post("/control/subscriptions", json=body)
    removed = client.delete("/control/subscriptions", params={"workflowId": "wf", "nodeId": "node"})

    assert created.status_code == 200
    assert created.json()["subscriptionId"] == "sub-node"
    assert created.json()["created"] is True
    assert repeated.json()["created"] is False
    assert removed.json()["removed"] is True
    assert command_client.commands() == ["dispatch.register", "dispatch.unregister"]


def test_subscription_requires_fields(client):
    response = client.post("/control/subscriptions", json={"workflowId": "wf"})

    assert response.status_code == 422
