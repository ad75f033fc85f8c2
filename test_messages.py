"""
Tests for the /api/v1/messages endpoints.

Tests cover:
- Listing with filters and pagination
- POST /messages running the reply pipeline
- Phone history and conversation views
- Single message get/update/delete and 404s
- Status order and final statuses
- WhatsApp connection test
"""

from datetime import datetime, timedelta

import pytest

from replyhub.errors import ExternalServiceError, NotFoundError, Result
from replyhub.storage import create_message, status_transition_allowed, update_message


CLIENT = "5521999990001"
SYSTEM = "5521999990002"
OTHER = "5521999990003"

BASE_TIME = datetime(2025, 1, 15, 10, 0, 0)


@pytest.fixture
def seeded(db):
    """Four messages between CLIENT and SYSTEM plus two from OTHER."""
    rows = [
        (CLIENT, SYSTEM, "hi", "whatsapp", "pending", "p1"),
        (SYSTEM, CLIENT, "hello!", "whatsapp", "sent", "p1"),
        (CLIENT, SYSTEM, "order status?", "whatsapp", "pending", "p1"),
        (SYSTEM, CLIENT, "on its way", "whatsapp", "delivered", "p1"),
        (OTHER, SYSTEM, "promo", "sms", "failed", "p2"),
        (OTHER, SYSTEM, "promo again", "sms", "sent", "p2"),
    ]
    messages = []
    for minutes, (from_phone, to_phone, content, type_, status, project) in enumerate(rows):
        messages.append(create_message(db, {
            "from_phone": from_phone,
            "to_phone": to_phone,
            "content": content,
            "type": type_,
            "status": status,
            "project_id": project,
            "cost": 0.05,
            "created_at": BASE_TIME + timedelta(minutes=minutes),
        }))
    return messages


class TestListMessages:
    """GET /api/v1/messages"""

    def test_empty_database(self, client):
        response = client.get("/api/v1/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"] == []
        assert data["count"] == 0
        assert data["total"] == 0

    def test_newest_first(self, client, seeded):
        data = client.get("/api/v1/messages").json()

        assert data["total"] == 6
        assert [m["content"] for m in data["data"]][:2] == ["promo again", "promo"]

    def test_message_fields(self, client, seeded):
        message = client.get("/api/v1/messages", params={"limit": 1}).json()["data"][0]

        assert message["project"] == "p2"
        assert message["from_phone"] == OTHER
        assert message["metadata"] == {}
        assert message["currency"] == "BRL"
        assert "created_at" in message

    def test_filters(self, client, seeded):
        data = client.get("/api/v1/messages", params={"fromPhone": CLIENT, "status": "pending"}).json()

        assert data["total"] == 2
        assert {m["content"] for m in data["data"]} == {"hi", "order status?"}

    def test_project_and_type_filters(self, client, seeded):
        data = client.get("/api/v1/messages", params={"project": "p2", "type": "sms"}).json()

        assert data["total"] == 2

    def test_date_range(self, client, seeded):
        params = {"startDate": "2025-01-15T10:01:00Z", "endDate": "2025-01-15T10:02:00Z"}
        data = client.get("/api/v1/messages", params=params).json()

        assert [m["content"] for m in data["data"]] == ["order status?", "hello!"]

    def test_pagination(self, client, seeded):
        data = client.get("/api/v1/messages", params={"limit": 2, "skip": 2}).json()

        assert data["count"] == 2
        assert data["total"] == 6
        assert [m["content"] for m in data["data"]] == ["on its way", "order status?"]

    def test_bad_limit_falls_back_to_default(self, client, seeded):
        response = client.get("/api/v1/messages", params={"limit": "lots", "skip": "-3"})

        assert response.status_code == 200
        assert response.json()["count"] == 6

    def test_invalid_date(self, client):
        response = client.get("/api/v1/messages", params={"startDate": "yesterday-ish"})

        assert response.status_code == 422


class TestCreateMessage:
    """POST /api/v1/messages runs the reply pipeline."""

    def test_reply_sent(self, client, stub_dispatcher):
        body = {"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "hi", "type": "whatsapp"}

        response = client.post("/api/v1/messages", json=body)

        assert response.status_code == 201
        envelope = response.json()
        assert envelope["success"] is True
        assert envelope["data"]["user_message"]["content"] == "hi"
        assert envelope["data"]["ai_message"]["content"] == "hello!"
        assert envelope["data"]["ai_message"]["from_phone"] == SYSTEM
        assert envelope["data"]["ai_message"]["to_phone"] == CLIENT
        assert envelope["data"]["ai_message"]["status"] == "sent"
        assert envelope["data"]["whatsapp_result"]["success"] is True
        assert envelope["history"]["phone_number"] == CLIENT
        assert stub_dispatcher.sent[0]["phone_number"] == CLIENT

    def test_both_messages_listed(self, client):
        client.post("/api/v1/messages", json={"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "hi"})

        data = client.get("/api/v1/messages").json()

        assert data["total"] == 2

    def test_snake_case_accepted(self, client):
        body = {"from_phone": CLIENT, "to_phone": SYSTEM, "content": "hi"}

        response = client.post("/api/v1/messages", json=body)

        assert response.status_code == 201

    def test_history_filters_from_query(self, client, seeded, stub_ai):
        body = {"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "thanks"}

        client.post("/api/v1/messages", json=body, params={"limit": 2})

        assert stub_ai.calls[0]["history"] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello!"},
        ]

    def test_generation_failure_still_201(self, client, stub_ai, stub_dispatcher):
        stub_ai.error = ExternalServiceError("LLM API error: 503 - down", status_code=503, body="down")

        response = client.post("/api/v1/messages", json={"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "hi"})

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["ai_message"] is None
        assert data["whatsapp_result"] is None
        assert data["ai_response"]["success"] is False
        assert stub_dispatcher.sent == []

    def test_dispatch_failure_still_201(self, client, stub_dispatcher):
        stub_dispatcher.error = ExternalServiceError("WhatsApp send error: 500 - boom", status_code=500, body="boom")

        response = client.post("/api/v1/messages", json={"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "hi"})

        assert response.status_code == 201
        ai_message = response.json()["data"]["ai_message"]
        assert ai_message["status"] == "failed"
        assert ai_message["metadata"]["whatsapp_error"]["status_code"] == 500

    @pytest.mark.parametrize("body", [
        {"toPhone": SYSTEM, "content": "hi"},
        {"fromPhone": CLIENT, "content": "hi"},
        {"fromPhone": CLIENT, "toPhone": SYSTEM, "content": ""},
        {"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "x" * 1001},
        {"fromPhone": CLIENT, "toPhone": SYSTEM, "content": "hi", "type": "fax"},
    ])
    def test_invalid_payload(self, client, body, stub_ai):
        response = client.post("/api/v1/messages", json=body)

        assert response.status_code == 422
        assert stub_ai.calls == []


class TestPhoneHistory:
    """GET /api/v1/messages/phone/{phone_number}"""

    def test_raw_mode(self, client, seeded):
        data = client.get(f"/api/v1/messages/phone/{CLIENT}").json()

        assert data["total"] == 4
        assert data["data"][0]["content"] == "on its way"
        assert data["pagination"] == {"count": 4, "total": 4, "limit": 50, "skip": 0}

    def test_ai_mode(self, client, seeded):
        data = client.get(f"/api/v1/messages/phone/{CLIENT}", params={"formatForAI": "true", "limit": 2}).json()

        assert data["data"] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello!"},
        ]

    def test_invalid_date(self, client, seeded):
        response = client.get(f"/api/v1/messages/phone/{CLIENT}", params={"endDate": "soon"})

        assert response.status_code == 422


class TestConversation:
    """GET /api/v1/messages/conversation/{phone_number}"""

    def test_conversation(self, client, seeded):
        data = client.get(f"/api/v1/messages/conversation/{CLIENT}").json()["data"]

        assert data["client_phone"] == CLIENT
        assert [m["content"] for m in data["messages"]] == ["hi", "hello!", "order status?", "on its way"]
        assert data["messages"][0]["direction"] == "outgoing"
        assert data["stats"]["client_messages"] == 2
        assert data["stats"]["system_messages"] == 2
        assert data["stats"]["total_cost"] == pytest.approx(0.2)

    def test_client_messages_only(self, client, seeded):
        params = {"includeSystemMessages": "false"}
        data = client.get(f"/api/v1/messages/conversation/{CLIENT}", params=params).json()["data"]

        assert [m["content"] for m in data["messages"]] == ["hi", "order status?"]


class TestStats:
    """GET /api/v1/messages/stats"""

    def test_empty(self, client):
        data = client.get("/api/v1/messages/stats").json()

        assert data["total"] == 0
        assert data["pending"] == 0
        assert data["total_cost"] == 0

    def test_counts_per_status(self, client, seeded):
        data = client.get("/api/v1/messages/stats").json()

        assert data["total"] == 6
        assert data["pending"] == 2
        assert data["sent"] == 2
        assert data["delivered"] == 1
        assert data["failed"] == 1
        assert data["read"] == 0
        assert data["total_cost"] == pytest.approx(0.3)

    def test_per_project(self, client, seeded):
        data = client.get("/api/v1/messages/stats", params={"project": "p2"}).json()

        assert data["total"] == 2
        assert data["failed"] == 1


class TestSingleMessage:
    """GET/PUT/DELETE /api/v1/messages/{message_id}"""

    def test_get(self, client, seeded):
        response = client.get(f"/api/v1/messages/{seeded[0].id}")

        assert response.status_code == 200
        assert response.json()["data"]["content"] == "hi"

    @pytest.mark.parametrize("method", ["get", "delete"])
    def test_unknown_id(self, client, method):
        response = getattr(client, method)("/api/v1/messages/does-not-exist")

        assert response.status_code == 404
        assert response.json()["detail"] == "Message not found"

    def test_put_unknown_id(self, client):
        response = client.put("/api/v1/messages/does-not-exist", json={"status": "sent"})

        assert response.status_code == 404

    def test_put_partial_update(self, client, seeded):
        response = client.put(
            f"/api/v1/messages/{seeded[1].id}",
            json={"status": "read", "readAt": "2025-01-15T11:00:00Z", "tags": ["vip"]},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "read"
        assert data["tags"] == ["vip"]
        assert data["read_at"].startswith("2025-01-15T11:00:00")
        assert data["content"] == "hello!"

    def test_final_status_cannot_change(self, client, seeded):
        failed = seeded[4]

        response = client.put(f"/api/v1/messages/{failed.id}", json={"status": "sent"})

        assert response.status_code == 422
        assert client.get(f"/api/v1/messages/{failed.id}").json()["data"]["status"] == "failed"

    def test_status_cannot_move_backward(self, client, seeded):
        url = f"/api/v1/messages/{seeded[1].id}"

        assert client.put(url, json={"status": "read"}).status_code == 200
        response = client.put(url, json={"status": "pending"})

        assert response.status_code == 422
        assert client.get(url).json()["data"]["status"] == "read"

    @pytest.mark.parametrize("index,new", [
        (1, "pending"),    # sent -> pending
        (3, "sent"),       # delivered -> sent
        (3, "pending"),    # delivered -> pending
    ])
    def test_backward_transitions_rejected(self, client, seeded, index, new):
        response = client.put(f"/api/v1/messages/{seeded[index].id}", json={"status": new})

        assert response.status_code == 422

    @pytest.mark.parametrize("new", ["delivered", "failed", "cancelled"])
    def test_forward_and_terminal_transitions_allowed(self, client, seeded, new):
        response = client.put(f"/api/v1/messages/{seeded[1].id}", json={"status": new})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == new

    def test_same_status_is_allowed(self, client, seeded):
        response = client.put(f"/api/v1/messages/{seeded[1].id}", json={"status": "sent"})

        assert response.status_code == 200

    def test_final_status_other_fields_editable(self, client, seeded):
        response = client.put(f"/api/v1/messages/{seeded[4].id}", json={"tags": ["reviewed"]})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "failed"

    def test_delete(self, client, seeded):
        response = client.delete(f"/api/v1/messages/{seeded[0].id}")

        assert response.status_code == 200
        assert client.get(f"/api/v1/messages/{seeded[0].id}").status_code == 404


class TestStatusTransitions:
    """Status order enforced by the store."""

    @pytest.mark.parametrize("current,new,allowed", [
        ("pending", "sent", True),
        ("pending", "read", True),
        ("sent", "delivered", True),
        ("read", "read", True),
        ("delivered", "failed", True),
        ("read", "cancelled", True),
        ("sent", "pending", False),
        ("read", "delivered", False),
        ("failed", "sent", False),
        ("cancelled", "failed", False),
    ])
    def test_transitions(self, current, new, allowed):
        assert status_transition_allowed(current, new) is allowed

    def test_update_unknown_id_raises(self, db):
        with pytest.raises(NotFoundError):
            update_message(db, "does-not-exist", {"status": "sent"})


class TestWhatsAppConnection:
    """POST /api/v1/messages/whatsapp/test"""

    def test_success(self, client, stub_dispatcher):
        response = client.post("/api/v1/messages/whatsapp/test", json={"phoneNumber": "21999990001"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["phone_number"] == "5521999990001"
        assert data["config"]["has_device_token"] is True
        assert data["config"]["email"] == "bot@e***"
        assert data["send_result"]["success"] is True
        assert stub_dispatcher.sent[0]["text"] == "WhatsApp API connection test"

    def test_login_failure(self, client, stub_dispatcher):
        async def failing_connection():
            return Result.failure(ExternalServiceError("WhatsApp login error: 401 - nope", status_code=401))

        stub_dispatcher.test_connection = failing_connection

        response = client.post("/api/v1/messages/whatsapp/test", json={"phoneNumber": CLIENT})

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert response.json()["connection_test"]["detail"]["status_code"] == 401
        assert stub_dispatcher.sent == []
