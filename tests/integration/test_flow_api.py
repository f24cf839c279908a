# tests/integration/test_flow_api.py
import json

from lingoflow.config.settings import settings

API_PREFIX = f"/api/{settings.api_version}"
AI_CONFIG = {"provider": "openai", "api_key": "sk-test0123456789abcdefghijkl"}


def read_events(response):
    """Parses a Server-Sent Events body into a list of event dicts."""
    return [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]


def execute(test_client, **payload):
    payload.setdefault("ai_config", AI_CONFIG)
    response = test_client.post(f"{API_PREFIX}/flows/execute", json=payload)
    assert response.status_code == 200, response.text
    assert response.headers["content-type"].startswith("text/event-stream")
    return read_events(response)


def control(test_client, session_id, action, **extra):
    return test_client.post(f"{API_PREFIX}/flows/control",
                            json={"session_id": session_id, "action": action, **extra})


# --- Health and discovery ---

def test_health_endpoints(test_client):
    assert test_client.get("/health").json()["status"] == "healthy"
    assert test_client.get("/health/live").json() == {"status": "alive"}
    ready = test_client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"


def test_metrics_are_exposed(test_client):
    response = test_client.get("/metrics")
    assert response.status_code == 200
    assert "flow_runs_total" in response.text


def test_list_flows(test_client):
    response = test_client.get(f"{API_PREFIX}/flows/")
    assert response.status_code == 200
    flows = {flow["id"]: flow for flow in response.json()["data"]["flows"]}
    assert set(flows) == {"simulate-dialog", "extend-vocabulary", "chat"}
    assert flows["simulate-dialog"]["checkpoints"] == ["dialog-check"]


# --- Execution ---

def test_chat_flow_streams_events(test_client, fake_llm):
    fake_llm.queue(["Bon", "jour"])

    events = execute(test_client, flow_id="chat", input="Say hello in French")

    assert [e["type"] for e in events] == [
        "status-change", "step-start", "stream-chunk", "stream-chunk", "step-complete", "status-change",
    ]
    assert "".join(e["data"] for e in events if e["type"] == "stream-chunk") == "Bonjour"
    assert events[-1]["status"] == "completed"
    assert fake_llm.requests[0].api_key == AI_CONFIG["api_key"]

    state = test_client.get(f"{API_PREFIX}/flows/state", params={"session_id": events[0]["session_id"]})
    assert state.status_code == 200
    assert state.json()["data"]["state"]["steps"][0]["result"]["output"] == "Bonjour"


def test_cookie_key_is_accepted(test_client, fake_llm):
    test_client.cookies.set("ai-api-key", "sk-cookie0123456789abcdefghij")

    events = execute(test_client, flow_id="chat", input="hi", ai_config=None)

    assert events[-1]["status"] == "completed"
    assert fake_llm.requests[0].api_key == "sk-cookie0123456789abcdefghij"


def test_missing_api_key_is_rejected_before_streaming(test_client, fake_llm):
    response = test_client.post(f"{API_PREFIX}/flows/execute", json={"flow_id": "chat", "input": "hi"})

    assert response.status_code == 401
    assert response.json()["error"] == "API_KEY_MISSING"
    assert fake_llm.requests == []


def test_unknown_flow_is_not_found(test_client):
    response = test_client.post(f"{API_PREFIX}/flows/execute", json={"flow_id": "nope", "ai_config": AI_CONFIG})
    assert response.status_code == 404


def test_invalid_input_ends_in_error_status(test_client, fake_llm):
    events = execute(test_client, flow_id="simulate-dialog", input={"characterA": "Ana"})

    assert events[-1]["status"] == "error"
    errors = [e for e in events if e["type"] == "step-error"]
    assert errors[0]["error"] == "Field situation is required"
    assert fake_llm.requests == []


def test_dialog_walkthrough_with_extend_and_confirm(test_client, fake_llm):
    fake_llm.queue(
        '{"number_of_characters": 2}',
        '{"dialog": ["A: Hello", "B: Hi"]}',
        '{"is_valid": true}',
    )

    events = execute(test_client, flow_id="simulate-dialog", input={"situation": "Ordering coffee"})
    session_id = events[0]["session_id"]
    assert events[-1]["status"] == "waiting-operation"
    required = [e for e in events if e["type"] == "operation-required"][0]
    assert required["node_id"] == "dialog-check"
    assert [op["action"] for op in required["operations"]] == ["confirm", "extend"]

    # Extend re-targets dialog generation with the previous dialog and the request.
    response = control(test_client, session_id, "extend", user_text="Add a goodbye")
    assert response.status_code == 200
    state = response.json()["data"]["state"]
    assert state["status"] == "running"
    assert state["current_step_index"] == 2
    assert state["context"]["input"] == {
        "previousDialog": {"dialog": ["A: Hello", "B: Hi"]},
        "extensionRequest": "Add a goodbye",
    }
    assert state["context"]["metadata"]["references"] == {"dialog-analysis": {"number_of_characters": 2}}

    fake_llm.queue('{"dialog": ["A: Hello", "B: Hi", "A: Bye"]}', '{"is_valid": true}')
    events = execute(test_client, flow_id="simulate-dialog", session_id=session_id)
    assert [e["node_id"] for e in events if e["type"] == "step-start"] == ["dialog-generation", "dialog-check"]
    assert events[-1]["status"] == "waiting-operation"
    assert "A: Bye" not in fake_llm.requests[-2].messages[-1]["content"]
    assert "Add a goodbye" in fake_llm.requests[-2].messages[-1]["content"]

    response = control(test_client, session_id, "confirm")
    assert response.json()["data"]["state"]["current_step_index"] == 4

    events = execute(test_client, flow_id="simulate-dialog", session_id=session_id)
    assert [e["node_id"] for e in events if e["type"] == "step-start"] == ["dialog-audio"]
    assert events[-1]["status"] == "completed"

    # A second confirm after the checkpoint was resolved changes nothing.
    assert control(test_client, session_id, "confirm").status_code == 400


# --- Control surface errors ---

def test_unknown_session_is_not_found(test_client):
    assert control(test_client, "missing", "pause").status_code == 404
    assert test_client.get(f"{API_PREFIX}/flows/state", params={"session_id": "missing"}).status_code == 404
    assert test_client.delete(f"{API_PREFIX}/flows/sessions/missing").status_code == 404


def test_unknown_action_is_a_validation_error(test_client):
    assert control(test_client, "any", "fast-forward").status_code == 422


def test_delete_session(test_client, fake_llm):
    events = execute(test_client, flow_id="chat", input="hi")
    session_id = events[0]["session_id"]

    assert test_client.delete(f"{API_PREFIX}/flows/sessions/{session_id}").status_code == 200
    assert test_client.get(f"{API_PREFIX}/flows/state", params={"session_id": session_id}).status_code == 404
