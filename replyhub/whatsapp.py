"""
WhatsApp messaging gateway client (API Brasil style).

GatewaySessionManager owns the authenticated session: it logs in with the
account credentials, caches the bearer token for one hour and logs in again
once it has expired. WhatsAppDispatcher sends outbound messages through that
session.

One session manager is shared by every dispatch in the process. Refresh is
lock-free: requests racing on an expired token may each log in, which is
harmless since login is idempotent.

Both classes return Results instead of raising.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx

from replyhub.errors import ConfigurationError, ProtocolError, Result, ServiceError
from replyhub.http_client import request_json
from replyhub.metrics import record_dispatch, record_gateway_login
from replyhub.utils import mask_secret, normalize_phone_number, utc_now

logger = logging.getLogger(__name__)

TOKEN_VALIDITY = timedelta(hours=1)

PROVIDER_NAME = "apibrasil"

# Login responses seen in the wild carry the token under one of these paths
TOKEN_FIELDS = (
    ("token",),
    ("access_token",),
    ("accessToken",),
    ("data", "token"),
    ("data", "access_token"),
)


@dataclass
class GatewaySession:
    """Cached gateway credential. Both fields are None until the first login."""
    bearer_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        # No early-refresh margin: valid right up to expires_at
        return bool(self.bearer_token) and self.expires_at is not None and now < self.expires_at

    def to_dict(self) -> dict:
        return {
            "token": mask_secret(self.bearer_token, visible=8),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class DispatchReceipt:
    """What the gateway reported for an accepted message."""
    message_id: Optional[str]
    status: str
    phone_number: str
    response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def extract_token(data: dict) -> Optional[str]:
    for path in TOKEN_FIELDS:
        value = data
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if isinstance(value, str) and value:
            return value
    return None


class GatewaySessionManager:
    """
    Login and token cache for the messaging gateway.

    States: no session -> valid -> expired -> (login) -> valid.
    A failed login leaves the session empty; nothing partial is cached.
    """

    def __init__(
        self,
        base_url: str,
        email: Optional[str],
        password: Optional[str],
        bearer_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self._client = client
        self._clock = clock
        self.session = GatewaySession()

        # A pre-provisioned token is trusted for one validity window
        if bearer_token:
            self.session = GatewaySession(bearer_token, clock() + TOKEN_VALIDITY)

    @property
    def bearer_token(self) -> Optional[str]:
        return self.session.bearer_token

    def reset(self) -> None:
        """Drop the cached credential."""
        self.session = GatewaySession()

    async def login(self) -> Result[GatewaySession]:
        """Authenticate with the account credentials and cache the returned token."""
        try:
            if not self.email or not self.password:
                raise ConfigurationError(
                    "WhatsApp credentials not configured. "
                    "Please set WHATSAPP_EMAIL and WHATSAPP_PASSWORD."
                )

            logger.info(f"Logging in to WhatsApp gateway as {self.email}")
            data = await request_json(
                "POST",
                f"{self.base_url}/auth/login",
                service="WhatsApp login",
                client=self._client,
                timeout=self.timeout,
                json={"email": self.email, "password": self.password},
            )
            token = extract_token(data)
            if not token:
                raise ProtocolError("Token not found in login response")
        except ServiceError as e:
            logger.error(f"WhatsApp login failed: {e}")
            record_gateway_login(e.kind)
            return Result.failure(e)

        self.session = GatewaySession(token, self._clock() + TOKEN_VALIDITY)
        record_gateway_login("success")
        logger.info(f"WhatsApp login successful, token valid until {self.session.expires_at.isoformat()}")
        return Result.success(self.session)

    async def ensure_valid_token(self, force: bool = False) -> Result[str]:
        """
        Return the bearer token, logging in first when there is none or it expired.

        A still-valid token is returned without any network call unless force is set.
        When the login fails, an expired credential is dropped so the session
        is back to no-session; a forced refresh keeps a still-valid one.
        """
        if not force and self.session.is_valid(self._clock()):
            return Result.success(self.session.bearer_token)

        logger.info("WhatsApp token missing or expired, logging in")
        result = await self.login()
        if not result.ok:
            if not self.session.is_valid(self._clock()):
                self.reset()
            return Result.failure(result.error)
        return Result.success(result.value.bearer_token)


class WhatsAppDispatcher:
    """
    Sends messages through the gateway using the shared session.

    Example:
        dispatcher = WhatsAppDispatcher(session_manager, device_token="dev-123")
        result = await dispatcher.send_text("21999999999", "hello", delay=500)
    """

    def __init__(
        self,
        session_manager: GatewaySessionManager,
        device_token: Optional[str],
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_manager = session_manager
        self.device_token = device_token
        self.timeout = timeout
        self._client = client

    @property
    def base_url(self) -> str:
        return self.session_manager.base_url

    async def _authorized_headers(self) -> dict:
        """
        Headers for an authenticated gateway call.

        Raises:
            ConfigurationError: device token missing
            ServiceError: whatever made the session login fail, unchanged
        """
        if not self.device_token:
            raise ConfigurationError(
                "Device token not configured. Please set WHATSAPP_DEVICE_TOKEN."
            )
        token = await self.session_manager.ensure_valid_token()
        if not token.ok:
            raise token.error
        return {
            "Content-Type": "application/json",
            "DeviceToken": self.device_token,
            "Authorization": f"Bearer {token.value}",
        }

    async def _send(self, endpoint: str, phone_number: str, payload: dict, delay: int = 0) -> Result[DispatchReceipt]:
        try:
            number = normalize_phone_number(phone_number)
            headers = await self._authorized_headers()
            payload = dict(payload, number=number)

            if delay > 0:
                await asyncio.sleep(delay / 1000)

            logger.info(f"Sending WhatsApp {endpoint} to {number}")
            data = await request_json(
                "POST",
                f"{self.base_url}/whatsapp/{endpoint}",
                service="WhatsApp send",
                client=self._client,
                timeout=self.timeout,
                json=payload,
                headers=headers,
            )
        except ServiceError as e:
            logger.error(f"WhatsApp {endpoint} failed: {e}")
            record_dispatch(e.kind)
            return Result.failure(e)

        receipt = DispatchReceipt(
            message_id=data.get("id") or data.get("messageId"),
            status=data.get("status") or "sent",
            phone_number=number,
            response=data,
        )
        record_dispatch("success")
        logger.info(f"WhatsApp message accepted: id={receipt.message_id}, status={receipt.status}")
        return Result.success(receipt)

    async def send_text(
        self,
        phone_number: str,
        text: str,
        time_typing: int = 1000,
        delay: int = 0,
    ) -> Result[DispatchReceipt]:
        """
        Send a text message.

        Args:
            phone_number: Recipient, normalized before sending
            text: Message body
            time_typing: How long the gateway shows "typing..." (ms)
            delay: Wait before sending (ms), to mimic a human reply cadence
        """
        return await self._send(
            "sendText",
            phone_number,
            {"text": text, "time_typing": time_typing},
            delay=delay,
        )

    async def send_media(
        self,
        phone_number: str,
        media_url: str,
        caption: str = "",
        media_type: str = "image",
    ) -> Result[DispatchReceipt]:
        """Send an image, video, document or audio by URL."""
        return await self._send(
            "sendMedia",
            phone_number,
            {"media": media_url, "caption": caption, "type": media_type},
        )

    async def get_message_status(self, message_id: str) -> Result[dict]:
        """Ask the gateway for the current status of a sent message."""
        try:
            headers = await self._authorized_headers()
            data = await request_json(
                "GET",
                f"{self.base_url}/whatsapp/message/{message_id}/status",
                service="WhatsApp status",
                client=self._client,
                timeout=self.timeout,
                headers=headers,
            )
        except ServiceError as e:
            logger.error(f"WhatsApp status lookup failed for {message_id}: {e}")
            return Result.failure(e)
        return Result.success({"message_id": message_id, "status": data.get("status"), "response": data})

    async def test_connection(self) -> Result[GatewaySession]:
        """Force a fresh login to check the account credentials."""
        token = await self.session_manager.ensure_valid_token(force=True)
        if not token.ok:
            return Result.failure(token.error)
        return Result.success(self.session_manager.session)
