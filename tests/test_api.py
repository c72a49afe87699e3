"""
Tests for the agent HTTP and WebSocket API.

Runs the router in a FastAPI app whose session pool builds controllers
around scripted providers.
"""

import json
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import ScriptedProvider, done, make_config, text, tool_call
from genagent.api import SessionPool, create_agent_dependencies, router
from genagent.domain.entities import ToolDefinition
from genagent.orchestrator import SessionController
from genagent.tools import ToolRegistry
from genagent.tools.executors import FunctionToolExecutor


def hello_rounds(count=5):
    return [[text("Hello"), done()] for _ in range(count)]


@pytest.fixture
def make_client(store):
    """Start an app whose sessions replay ``rounds`` from a fresh provider."""
    clients = []

    def factory(rounds_factory=hello_rounds, registry=None):
        def new_session():
            return SessionController(
                ScriptedProvider(rounds_factory()),
                tool_registry=registry or ToolRegistry(),
                conversation_store=store,
                config=make_config(),
            )

        pool = SessionPool(new_session, store)

        @asynccontextmanager
        async def lifespan(app):
            create_agent_dependencies(pool)
            yield
            create_agent_dependencies(None)
            await pool.close()

        app = FastAPI(lifespan=lifespan)
        app.include_router(router)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


class TestChat:
    def test_chat_starts_conversation(self, client):
        response = client.post("/api/agent/chat", json={"message": "hi"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["message"] == "Hello"
        assert body["rounds"] == 1
        assert body["error"] is None
        assert body["conversation_id"]

    def test_chat_continues_conversation(self, client):
        first = client.post("/api/agent/chat", json={"message": "hi"}).json()
        second = client.post(
            "/api/agent/chat",
            json={"message": "again", "conversation_id": first["conversation_id"]},
        ).json()

        assert second["conversation_id"] == first["conversation_id"]
        conversation = client.get(f"/api/agent/conversations/{first['conversation_id']}").json()
        assert conversation["item_count"] == 4
        assert [i["type"] for i in conversation["items"]] == ["message"] * 4

    def test_empty_message_rejected(self, client):
        response = client.post("/api/agent/chat", json={"message": ""})
        assert response.status_code == 422

    def test_stream_ndjson(self, client):
        response = client.post("/api/agent/chat/stream", json={"message": "hi"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = [json.loads(line) for line in response.text.splitlines() if line]
        types = [e["type"] for e in events]
        assert types[0] == "turn_started"
        assert types[-1] == "done"
        assert "".join(e["content"] for e in events if e["type"] == "text_delta") == "Hello"
        assert events[-1]["metadata"]["status"] == "completed"

    def test_cancel_without_session(self, client):
        response = client.post("/api/agent/conversations/unknown/cancel")
        assert response.json() == {"conversation_id": "unknown", "cancelled": False}


class TestConversations:
    def test_list(self, client):
        conversation_id = client.post("/api/agent/chat", json={"message": "hi"}).json()[
            "conversation_id"
        ]

        body = client.get("/api/agent/conversations", params={"limit": 10}).json()

        assert body["limit"] == 10
        assert [c["id"] for c in body["conversations"]] == [conversation_id]
        assert body["conversations"][0]["last_message_preview"] == "Hello"

    def test_missing_conversation(self, client):
        response = client.get("/api/agent/conversations/missing")

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["kind"] == "not_found"
        assert "cause" not in detail

    def test_delete(self, client):
        conversation_id = client.post("/api/agent/chat", json={"message": "hi"}).json()[
            "conversation_id"
        ]

        assert client.delete(f"/api/agent/conversations/{conversation_id}").status_code == 204
        assert client.get(f"/api/agent/conversations/{conversation_id}").status_code == 404
        assert client.delete(f"/api/agent/conversations/{conversation_id}").status_code == 404

    def test_invalid_limit(self, client):
        assert client.get("/api/agent/conversations", params={"limit": 0}).status_code == 422


class TestApprovalsAndToolOutputs:
    def test_no_pending_approvals(self, client):
        assert client.get("/api/agent/approvals").json() == []

    def test_resolve_unknown_approval(self, client):
        response = client.post("/api/agent/approvals/apr_missing", json={"approved": True})
        assert response.status_code == 404

    def test_tool_output_without_session(self, client):
        response = client.post(
            "/api/agent/conversations/unknown/tool-outputs",
            json={"call_id": "c1", "output": "42"},
        )
        assert response.status_code == 404

    def test_tool_output_without_waiting_call(self, client):
        conversation_id = client.post("/api/agent/chat", json={"message": "hi"}).json()[
            "conversation_id"
        ]
        response = client.post(
            f"/api/agent/conversations/{conversation_id}/tool-outputs",
            json={"call_id": "c1", "output": "42"},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "validation"


class TestNotInitialized:
    def test_returns_503(self):
        app = FastAPI()
        app.include_router(router)
        create_agent_dependencies(None)

        with TestClient(app) as client:
            response = client.post("/api/agent/chat", json={"message": "hi"})

        assert response.status_code == 503


class TestWebSocket:
    def test_ping(self, client):
        with client.websocket_connect("/api/agent/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_chat(self, client):
        with client.websocket_connect("/api/agent/ws") as ws:
            ws.send_json({"type": "chat", "message": "hi"})
            events = receive_until(ws, "done")

        assert "".join(e.get("content", "") for e in events if e["type"] == "text_delta") == "Hello"

    def test_empty_message(self, client):
        with client.websocket_connect("/api/agent/ws") as ws:
            ws.send_json({"type": "chat", "message": "  "})
            assert ws.receive_json()["error"] == "Message must not be empty"

    def test_approval_flow(self, make_client):
        registry = ToolRegistry()
        registry.register(
            ToolDefinition(name="delete_page", requires_approval=True, server_label="docs"),
            FunctionToolExecutor(lambda page: f"deleted {page}", name="delete_page"),
        )

        def rounds():
            return [
                [*tool_call("c1", "delete_page", {"page": "home"}), done()],
                [text("Deleted."), done()],
            ]

        client = make_client(rounds, registry)
        with client.websocket_connect("/api/agent/ws") as ws:
            ws.send_json({"type": "chat", "message": "delete the home page"})
            request = receive_until(ws, "approval_required")[-1]

            pending = client.get("/api/agent/approvals").json()
            assert [p["approval_id"] for p in pending] == [request["approval_id"]]
            assert pending[0]["tool_name"] == "delete_page"

            ws.send_json({"type": "approve", "approval_id": request["approval_id"], "approved": True})
            events = receive_until(ws, "done")

        results = [e for e in events if e["type"] == "tool_result"]
        assert results[0]["content"] == "deleted home"
        assert events[-1]["metadata"]["status"] == "completed"


def receive_until(ws, event_type, limit=100):
    events = []
    for _ in range(limit):
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events
    raise AssertionError(f"No {event_type} event in {len(events)} messages")
