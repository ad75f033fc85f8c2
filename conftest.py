"""
Pytest configuration and shared fixtures.

Test environment values are set before any replyhub import so the cached
settings (and the engine built from them) use the test database.
"""

import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_replyhub.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from replyhub.config import get_settings  # noqa: E402
get_settings.cache_clear()

from replyhub import models  # noqa: E402,F401
from replyhub.ai_service import GeneratedReply  # noqa: E402
from replyhub.errors import ExternalServiceError, Result  # noqa: E402
from replyhub.storage import Base, SessionLocal, engine  # noqa: E402
from replyhub.whatsapp import DispatchReceipt, GatewaySessionManager  # noqa: E402
from replyhub.main import app  # noqa: E402
from replyhub.pipeline import MessagePipeline  # noqa: E402
from replyhub.services import get_pipeline  # noqa: E402


@pytest.fixture
def db():
    """Fresh schema and a session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class StubAIService:
    """Language model stand-in: returns a fixed reply or a fixed failure."""

    def __init__(self, reply: str = "hello!", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def generate_response(self, user_message, user_phone, conversation_history=None,
                                project=None, agent_context=None, model=None):
        self.calls.append({
            "user_message": user_message,
            "user_phone": user_phone,
            "history": list(conversation_history or []),
            "project": project,
        })
        if self.error is not None:
            return Result.failure(self.error)
        return Result.success(GeneratedReply(
            reply_text=self.reply,
            model="test-model",
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
            turn_count=len(conversation_history or []) + 2,
            user_phone=user_phone,
            timestamp="2025-01-15T10:00:00Z",
        ))


class StubDispatcher:
    """Gateway stand-in recording every send."""

    def __init__(self, message_id: str = "abc", status: str = "sent", error=None):
        self.message_id = message_id
        self.status = status
        self.error = error
        self.sent = []
        self.device_token = "device-token"
        self.session_manager = GatewaySessionManager(
            base_url="https://gateway.test/api/v2",
            email="bot@example.com",
            password="secret",
            bearer_token="preloaded-token",
        )

    async def send_text(self, phone_number, text, time_typing=1000, delay=0):
        self.sent.append({"phone_number": phone_number, "text": text, "time_typing": time_typing, "delay": delay})
        if self.error is not None:
            return Result.failure(self.error)
        return Result.success(DispatchReceipt(
            message_id=self.message_id,
            status=self.status,
            phone_number=phone_number,
            response={"id": self.message_id, "status": self.status},
        ))

    async def test_connection(self):
        return Result.success(self.session_manager.session)


@pytest.fixture
def stub_ai():
    return StubAIService()


@pytest.fixture
def stub_dispatcher():
    return StubDispatcher()


@pytest.fixture
def failing_ai():
    return StubAIService(error=ExternalServiceError("LLM API error: 503 - down", status_code=503, body="down"))


@pytest.fixture
def failing_dispatcher():
    return StubDispatcher(error=ExternalServiceError("WhatsApp send error: 500 - boom", status_code=500, body="boom"))


@pytest.fixture
def pipeline(stub_ai, stub_dispatcher):
    return MessagePipeline(stub_ai, stub_dispatcher, time_typing=1000, send_delay=0)


@pytest.fixture
def client(db, pipeline):
    """Test client wired to the stub pipeline and a fresh database."""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
