"""Integration tests for API endpoints using httpx AsyncClient."""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import app
from services.assistant_service import build_service
from services.pending_requests import CancelScope

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

WEBHOOK_URL = "https://n8n.example.com/webhook/kb"


async def _webhook(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    if body["message"] == "slow":
        await asyncio.sleep(10)
    return httpx.Response(
        200,
        json={"answer": f"Answer to: {body['message']}", "sources": [{"title": "IT FAQ", "snippet": "..."}]},
    )


async def _no_sleep(seconds):
    return None


@pytest.fixture()
def service(tmp_path, environ):
    svc = build_service(
        tmp_path,
        environ=environ,
        client=httpx.AsyncClient(transport=httpx.MockTransport(_webhook)),
        sleep=_no_sleep,
    )
    app.state.assistant = svc
    yield svc
    app.state.assistant = None


@pytest_asyncio.fixture()
async def client(service):
    """Async HTTP client wired to the FastAPI app (no real server needed)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _message(message_id: str, role: str, content: str) -> dict:
    return {"id": message_id, "role": role, "content": content, "createdAt": "2026-03-02T09:15:00Z"}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        res = await client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettingsEndpoints:
    @pytest.mark.asyncio
    async def test_get_defaults(self, client):
        res = await client.get("/api/v1/assistant/settings")
        assert res.status_code == 200
        data = res.json()
        assert data["settings"]["theme"] == "dark"
        assert data["locked"] is False
        assert data["webhookLocked"] is False

    @pytest.mark.asyncio
    async def test_save(self, client):
        res = await client.put(
            "/api/v1/assistant/settings",
            json={"webhookUrl": WEBHOOK_URL, "apiToken": "t", "username": "anna", "theme": "light"},
        )
        assert res.status_code == 200
        assert res.json()["settings"]["username"] == "anna"

    @pytest.mark.asyncio
    async def test_save_invalid_url(self, client):
        res = await client.put("/api/v1/assistant/settings", json={"webhookUrl": "n8n.example.com"})
        assert res.status_code == 400

    @pytest.mark.asyncio
    async def test_save_locked(self, client, environ):
        environ["SETTINGS_LOCKED"] = "true"
        res = await client.put("/api/v1/assistant/settings", json={"username": "anna"})
        assert res.status_code == 403

    @pytest.mark.asyncio
    async def test_device_id_is_stable(self, client):
        first = (await client.get("/api/v1/assistant/device")).json()["deviceId"]
        second = (await client.get("/api/v1/assistant/device")).json()["deviceId"]
        assert first and first == second


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class TestConversationEndpoints:
    @pytest.mark.asyncio
    async def test_load_last_creates_conversation(self, client):
        res = await client.post("/api/v1/assistant/conversations/last")
        assert res.status_code == 200
        data = res.json()
        assert data["messages"] == []
        again = await client.post("/api/v1/assistant/conversations/last")
        assert again.json()["conversationId"] == data["conversationId"]

    @pytest.mark.asyncio
    async def test_save_list_load_export(self, client):
        messages = [
            _message("m1", "user", "Where do I find the expense form?"),
            _message("m2", "assistant", "In the finance section."),
        ]
        res = await client.put("/api/v1/assistant/conversations/conv-1", json=messages)
        assert res.status_code == 200
        assert res.json()["saved"] is True

        listing = (await client.get("/api/v1/assistant/conversations")).json()
        assert listing[0]["id"] == "conv-1"
        assert listing[0]["title"] == "Where do I find the expense form?"

        loaded = (await client.get("/api/v1/assistant/conversations/conv-1")).json()
        assert [m["id"] for m in loaded["messages"]] == ["m1", "m2"]

        export = await client.get("/api/v1/assistant/conversations/conv-1/export")
        assert export.status_code == 200
        assert export.text.startswith("Conversation ID: conv-1")

    @pytest.mark.asyncio
    async def test_save_failure_returns_500(self, client, service):
        service.conversations.directory.parent.mkdir(parents=True, exist_ok=True)
        service.conversations.directory.write_text("", encoding="utf-8")
        res = await client.put("/api/v1/assistant/conversations/conv-1", json=[])
        assert res.status_code == 500
        assert res.json()["detail"] == "Failed to save conversation"

    @pytest.mark.asyncio
    async def test_delete_and_restore(self, client):
        await client.put("/api/v1/assistant/conversations/conv-1", json=[_message("m1", "user", "Hi")])
        res = await client.delete("/api/v1/assistant/conversations/conv-1")
        assert res.json() == {"deleted": True}
        assert (await client.get("/api/v1/assistant/conversations")).json() == []

        res = await client.post("/api/v1/assistant/conversations/conv-1/restore")
        assert res.status_code == 200
        assert len((await client.get("/api/v1/assistant/conversations")).json()) == 1

    @pytest.mark.asyncio
    async def test_permanent_delete(self, client):
        await client.put("/api/v1/assistant/conversations/conv-1", json=[_message("m1", "user", "Hi")])
        res = await client.delete("/api/v1/assistant/conversations/conv-1", params={"permanent": "true"})
        assert res.json() == {"deleted": True}
        res = await client.post("/api/v1/assistant/conversations/conv-1/restore")
        assert res.status_code == 404
        loaded = (await client.get("/api/v1/assistant/conversations/conv-1")).json()
        assert loaded["messages"] == []

    @pytest.mark.asyncio
    async def test_restore_missing_returns_404(self, client):
        res = await client.post("/api/v1/assistant/conversations/ghost/restore")
        assert res.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_id_returns_400(self, client):
        res = await client.get("/api/v1/assistant/conversations/a%5Cb")
        assert res.status_code == 400
        res = await client.put("/api/v1/assistant/conversations/a%5Cb", json=[])
        assert res.status_code == 400


# ---------------------------------------------------------------------------
# Ask / cancel
# ---------------------------------------------------------------------------


class TestAskEndpoints:
    @pytest.mark.asyncio
    async def test_ask_without_url(self, client):
        res = await client.post(
            "/api/v1/assistant/ask",
            json={"question": "Hello?", "conversationId": "conv-1", "requestId": "req-1"},
        )
        assert res.status_code == 200
        data = res.json()
        assert data["result"]["kind"] == "failure"
        assert data["result"]["errorKind"] == "invalidUrl"
        assert data["message"]["isError"] is True
        assert "retryPayload" not in data["message"] or data["message"]["retryPayload"] is None

    @pytest.mark.asyncio
    async def test_ask_answer(self, client, service):
        service.settings.save(service.settings.get().model_copy(update={"webhookUrl": WEBHOOK_URL}))
        res = await client.post(
            "/api/v1/assistant/ask",
            json={"question": "  VPN?  ", "conversationId": "conv-1", "requestId": "req-1"},
        )
        data = res.json()
        assert data["result"]["kind"] == "answer"
        assert data["result"]["text"] == "Answer to: VPN?"
        assert data["result"]["sources"][0]["source"] == "IT FAQ"
        assert data["message"]["role"] == "assistant"

    @pytest.mark.asyncio
    async def test_blank_question_rejected(self, client):
        res = await client.post(
            "/api/v1/assistant/ask",
            json={"question": "   ", "conversationId": "conv-1", "requestId": "req-1"},
        )
        assert res.status_code == 400

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, client, service):
        service.settings.save(service.settings.get().model_copy(update={"webhookUrl": WEBHOOK_URL}))

        ask_task = asyncio.create_task(
            client.post(
                "/api/v1/assistant/ask",
                json={"question": "slow", "conversationId": "conv-1", "requestId": "req-slow"},
            )
        )
        for _ in range(100):
            if "req-slow" in service.registry:
                break
            await asyncio.sleep(0.01)

        cancel = await client.post("/api/v1/assistant/ask/req-slow/cancel")
        assert cancel.json() == {"canceled": True}

        data = (await ask_task).json()
        assert data["result"]["errorKind"] == "canceled"
        assert data["message"] is None
        assert "req-slow" not in service.registry

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, client):
        res = await client.post("/api/v1/assistant/ask/nope/cancel")
        assert res.json() == {"canceled": False}

    @pytest.mark.asyncio
    async def test_duplicate_request_id_returns_409(self, client, service):
        service.settings.save(service.settings.get().model_copy(update={"webhookUrl": WEBHOOK_URL}))
        service.registry.register("req-1", CancelScope())
        res = await client.post(
            "/api/v1/assistant/ask",
            json={"question": "VPN?", "conversationId": "conv-1", "requestId": "req-1"},
        )
        assert res.status_code == 409


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


class TestMiscEndpoints:
    @pytest.mark.asyncio
    async def test_client_info(self, client):
        data = (await client.get("/api/v1/assistant/client")).json()
        assert set(data) == {"app_version", "platform"}

    @pytest.mark.asyncio
    async def test_open_external_validates(self, client):
        ok = await client.post("/api/v1/assistant/open-external", json={"url": "https://intranet.example.com"})
        assert ok.status_code == 200
        bad = await client.post("/api/v1/assistant/open-external", json={"url": "file:///etc/passwd"})
        assert bad.status_code == 400

    @pytest.mark.asyncio
    async def test_diagnostics(self, client):
        data = (await client.get("/api/v1/assistant/diagnostics")).json()
        assert data["storage"]["type"] == "files"
        assert data["conversationsCount"] == 0
