"""Edge router tests: real app, fakeredis, scripted agent."""

import pytest

from agentrelay.worker.schemas import AgentResult

pytestmark = pytest.mark.unit


def _start(client, prompt="List the files", **body):
    return client.post("/interactive/start", json={"prompt": prompt, **body})


def test_start_streams_first_turn(api_client, sse_events):
    response = _start(api_client)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    session_id = response.headers["x-session-id"]
    assert session_id.startswith("sess_")

    events = sse_events(response.text)
    names = [name for name, _ in events]
    assert names[0] == "connected"
    assert names[-2:] == ["complete", "end"]
    assert names.count("complete") == 1
    assert events[-2][1]["sessionId"] == session_id
    assert events[-2][1]["turns"] == 1


def test_start_requires_prompt(api_client):
    response = _start(api_client, prompt="   ")

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "prompt is required"}


def test_malformed_body_is_400(api_client):
    response = api_client.post("/interactive/start", json={"prompt": "x", "options": {"maxTurns": 0}})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request body"


def test_status_after_first_turn(api_client):
    session_id = _start(api_client).headers["x-session-id"]

    response = api_client.get("/interactive/status", params={"sessionId": session_id})

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == session_id
    assert body["status"] == "completed"
    assert body["currentTurn"] == 1
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]
    assert "completedAt" not in body


def test_status_validation_and_not_found(api_client):
    assert api_client.get("/interactive/status").status_code == 400

    response = api_client.get("/interactive/status", params={"sessionId": "sess_missing"})

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Session not found"}


def test_cost_limit_denies_new_session(client_for):
    pricey = AgentResult(subtype="success", num_turns=1, result="ok", total_cost_usd=5.0)

    with client_for(agent=_agent(pricey), quota_max_daily_cost=1.0) as client:
        assert _start(client).status_code == 200

        response = _start(client)
        usage = client.get("/interactive/usage").json()

    assert response.status_code == 429
    body = response.json()
    assert body["success"] is False
    assert body["reason"] == "Daily cost limit exceeded"
    assert body["remainingCost"] == 0.0
    assert body["activeSessions"] == 1
    assert usage["activeSessions"] == 1
    assert usage["today"]["totalCost"] == pytest.approx(5.0)
    assert usage["quotaStatus"]["allowed"] is False


def test_concurrency_limit_spares_existing_sessions(client_for, sse_events):
    with client_for(quota_max_concurrent_sessions=1) as client:
        session_id = _start(client).headers["x-session-id"]

        denied = _start(client)
        follow_up = client.post("/message", json={"message": "and now?"}, headers={"X-Session-Id": session_id})

    assert denied.status_code == 429
    assert denied.json()["reason"] == "Maximum concurrent sessions reached"
    assert follow_up.status_code == 200
    assert sse_events(follow_up.text)[-2][0] == "complete"


def test_message_continues_session(api_client, sse_events):
    session_id = _start(api_client).headers["x-session-id"]

    response = api_client.post("/message", json={"message": "Now add a test"}, headers={"X-Session-Id": session_id})

    assert response.status_code == 200
    assert response.headers["x-session-id"] == session_id
    complete = sse_events(response.text)[-2][1]
    assert complete["turns"] == 2
    assert complete["lastUserMessage"]["content"] == "Now add a test"

    status = api_client.get("/interactive/status", params={"sessionId": session_id}).json()
    assert status["currentTurn"] == 2
    assert len(status["messages"]) == 4


def test_message_accepts_body_session_id(api_client, sse_events):
    session_id = _start(api_client).headers["x-session-id"]

    response = api_client.post("/message", json={"message": "hi", "sessionId": session_id})

    assert response.status_code == 200
    assert sse_events(response.text)[-2][1]["sessionId"] == session_id


def test_message_validation(api_client):
    no_session = api_client.post("/message", json={"message": "hi"})
    no_message = api_client.post("/message", json={}, headers={"X-Session-Id": "sess_x"})

    assert no_session.status_code == 400
    assert no_session.json()["error"] == "sessionId is required"
    assert no_message.status_code == 400
    assert no_message.json()["error"] == "message is required"


def test_end_session_is_idempotent(api_client):
    session_id = _start(api_client).headers["x-session-id"]

    first = api_client.delete(f"/interactive/{session_id}")
    second = api_client.delete(f"/interactive/{session_id}")
    unknown = api_client.delete("/interactive/sess_unknown")

    assert first.json() == second.json() == unknown.json() == {"success": True}
    status = api_client.get("/interactive/status", params={"sessionId": session_id}).json()
    assert status["status"] == "completed"
    assert "completedAt" in status
    assert api_client.get("/interactive/usage").json()["activeSessions"] == 0


def test_message_to_ended_session_rejected(api_client):
    session_id = _start(api_client).headers["x-session-id"]
    api_client.delete(f"/interactive/{session_id}")

    response = api_client.post("/message", json={"message": "hi"}, headers={"X-Session-Id": session_id})

    assert response.status_code == 400
    assert response.json()["error"] == "Session has ended"


def test_missing_repository_token_rejected_before_admission(client_for):
    repository = {"url": "https://github.com/acme/app.git", "name": "acme/app"}

    with client_for(github_token="") as client:
        response = _start(client, repository=repository)
        usage = client.get("/interactive/usage").json()

    assert response.status_code == 400
    assert response.json()["error"] == "Repository access token is not configured"
    assert usage["activeSessions"] == 0


def test_agent_failure_streams_error(client_for, failing_agent, sse_events):
    with client_for(agent=failing_agent) as client:
        response = _start(client)
        session_id = response.headers["x-session-id"]
        status = client.get("/interactive/status", params={"sessionId": session_id}).json()

    events = sse_events(response.text)
    assert [name for name, _ in events][-2:] == ["error", "end"]
    assert "debugId" in events[-2][1]
    assert status["status"] == "error"


def test_health_and_ready(api_client):
    health = api_client.get("/health")
    ready = api_client.get("/ready")

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert ready.status_code == 200
    assert ready.json()["checks"] == {"redis": True}


def test_health_503_while_draining(api_client):
    api_client.app.state.shutting_down = True

    response = api_client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_request_id_echoed(api_client):
    response = api_client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["x-request-id"] == "req-123"


def _agent(result):
    """Scripted agent that always returns ``result``."""

    class _Agent:
        async def invoke(self, config):
            return result

    return _Agent()
