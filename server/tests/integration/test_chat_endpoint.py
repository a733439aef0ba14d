from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from palchat.agents.conversation import create_conversation_controller
from palchat.agents.events import event_broker
from palchat.agents.llm import GatewayHttpError, clear_fake_completions, get_gateway, queue_fake_completion
from palchat.agents.memory import ConversationStore
from palchat.agents.pipeline import create_pipeline
from palchat.api.routes.chat import get_conversation_controller
from palchat.core.config import AppSettings, get_settings
from palchat.main import create_app


@pytest.fixture()
def client(monkeypatch):
    monkeypatch.setenv("ENABLE_SSE", "true")
    get_settings.cache_clear()
    app = create_app()
    settings = AppSettings(_env_file=None, llm_provider="fake", show_pipeline=False)
    gateway = get_gateway(settings)()
    pipeline = create_pipeline(gateway=gateway, events=event_broker)
    controller = create_conversation_controller(
        pipeline=pipeline,
        store=ConversationStore(),
        events=event_broker,
        show_pipeline=settings.show_pipeline,
    )

    app.dependency_overrides[get_conversation_controller] = lambda: controller

    with TestClient(app) as test_client:
        clear_fake_completions()
        yield test_client
        clear_fake_completions()
    get_settings.cache_clear()


def test_chat_endpoint_runs_math_pipeline(client: TestClient):
    queue_fake_completion("100-37")
    queue_fake_completion("100 minus 37 is 63.")

    response = client.post("/chat", json={"sessionId": "math-session", "message": "calculate 100 minus 37"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"]["role"] == "assistant"
    assert body["response"]["isPipeline"] is True
    assert "63" in body["response"]["content"]
    assert body["pipeline"]["success"] is True
    assert [stage["status"] for stage in body["pipeline"]["stages"]] == ["complete", "complete", "complete"]
    assert body["pipeline"]["stages"][1]["output"] == "63"
    assert [message["role"] for message in body["messages"]] == ["user", "assistant"]
    event_broker.clear("math-session")


def test_chat_endpoint_verbose_mode(client: TestClient):
    queue_fake_completion("2+2")
    queue_fake_completion("Two plus two is 4.")

    response = client.post(
        "/chat",
        json={"sessionId": "verbose-session", "message": "what is 2+2", "verbose": True},
    )

    assert response.status_code == 200
    content = response.json()["response"]["content"]
    assert "Stage 1: LLM: Extract Math Expression" in content
    assert "**Final Answer:**\nTwo plus two is 4." in content
    event_broker.clear("verbose-session")


def test_chat_endpoint_reports_failed_pipeline(client: TestClient):
    queue_fake_completion("1234567890+1+1")

    response = client.post("/chat", json={"sessionId": "fail-session", "message": "calculate 1234567890+1+1"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"]["isError"] is True
    assert body["pipeline"]["success"] is False
    assert len(body["pipeline"]["stages"]) == 2
    assert body["pipeline"]["stages"][1]["error"] == "Complex expression not supported"
    event_broker.clear("fail-session")


def test_chat_endpoint_direct_reply(client: TestClient):
    queue_fake_completion("General Kenobi.")

    response = client.post("/chat", json={"sessionId": "direct-session", "message": "hello there"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"]["content"] == "General Kenobi."
    assert body["pipeline"] is None
    event_broker.clear("direct-session")


def test_chat_endpoint_surfaces_backend_failure(client: TestClient):
    queue_fake_completion(GatewayHttpError(500))

    response = client.post("/chat", json={"sessionId": "down-session", "message": "hello there"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"]["isError"] is True
    assert body["response"]["content"] == "❌ **Error:** HTTP error! status: 500"
    event_broker.clear("down-session")


def test_chat_endpoint_rejects_blank_message(client: TestClient):
    response = client.post("/chat", json={"sessionId": "blank", "message": "   "})

    assert response.status_code == 422
    assert response.json()["error"]["type"] == "VALIDATION_ERROR"


def test_events_endpoint_streams_pipeline_stages(client: TestClient):
    session_id = "events-session"
    queue_fake_completion("6*7")
    queue_fake_completion("It is 42.")

    response = client.post("/chat", json={"sessionId": session_id, "message": "what is 6*7"})
    assert response.status_code == 200

    backlog = list(event_broker._channels[session_id].events)
    expected_events = len(backlog) + 1  # include ready ping

    with client.stream(
        "GET",
        "/events",
        params={"sessionId": session_id, "maxEvents": expected_events},
    ) as stream:
        events: list[dict[str, object]] = []
        for line in stream.iter_lines():
            if not line or not line.startswith("data:"):
                continue
            data = json.loads(line.replace("data:", "", 1).strip())
            if data.get("status") == "ready":
                continue
            events.append(data)

    stage_events = [event for event in events if event["type"] == "stage"]
    assert [event["data"]["status"] for event in stage_events] == [
        "running",
        "complete",
        "running",
        "complete",
        "running",
        "complete",
    ]
    assert [event["type"] for event in events][-2:] == ["pipeline", "reply"]
    event_broker.clear(session_id)


def test_events_endpoint_filters_types_and_stops_after_reply(client: TestClient):
    session_id = "reply-only-session"
    queue_fake_completion("Hi!")

    response = client.post("/chat", json={"sessionId": session_id, "message": "hello there"})
    assert response.status_code == 200

    with client.stream(
        "GET",
        "/events",
        params={"sessionId": session_id, "type": "reply", "untilReply": "true"},
    ) as stream:
        lines = [line for line in stream.iter_lines() if line]

    assert lines[0] == "event: ready"
    assert "event: reply" in lines
    reply_data = json.loads(lines[-1].replace("data:", "", 1).strip())
    assert reply_data["data"]["messageId"] == response.json()["response"]["id"]
    assert any(line.startswith("id: ") for line in lines)
    event_broker.clear(session_id)
