"""
Long-lived service instances shared by every request.

The gateway session lives inside the single WhatsAppDispatcher built here,
so every dispatch in the process reuses one cached bearer token.
"""

import logging
from functools import lru_cache

from replyhub.ai_service import AIService
from replyhub.config import Settings, settings
from replyhub.pipeline import MessagePipeline
from replyhub.whatsapp import GatewaySessionManager, WhatsAppDispatcher

logger = logging.getLogger(__name__)


def build_pipeline(config: Settings) -> MessagePipeline:
    """Wire the language model client, gateway session and dispatcher from settings."""
    ai_service = AIService(
        api_key=config.LLM_API_KEY,
        endpoint=config.LLM_API_URL,
        default_model=config.LLM_MODEL,
        temperature=config.LLM_TEMPERATURE,
        max_tokens=config.LLM_MAX_TOKENS,
        agent_context=config.AGENT_CONTEXT,
        app_url=config.APP_URL,
        app_name=config.APP_NAME,
        timeout=config.HTTP_TIMEOUT_SECONDS,
    )
    session_manager = GatewaySessionManager(
        base_url=config.WHATSAPP_BASE_URL,
        email=config.WHATSAPP_EMAIL,
        password=config.WHATSAPP_PASSWORD,
        bearer_token=config.WHATSAPP_BEARER_TOKEN,
        timeout=config.HTTP_TIMEOUT_SECONDS,
    )
    dispatcher = WhatsAppDispatcher(
        session_manager,
        device_token=config.WHATSAPP_DEVICE_TOKEN,
        timeout=config.HTTP_TIMEOUT_SECONDS,
    )

    if not ai_service.is_configured:
        logger.warning("LLM_API_KEY is not set; replies will not be generated")
    if not config.WHATSAPP_DEVICE_TOKEN:
        logger.warning("WHATSAPP_DEVICE_TOKEN is not set; replies will not be dispatched")

    return MessagePipeline(
        ai_service,
        dispatcher,
        time_typing=config.WHATSAPP_TIME_TYPING_MS,
        send_delay=config.WHATSAPP_SEND_DELAY_MS,
    )


@lru_cache()
def get_pipeline() -> MessagePipeline:
    """
    FastAPI dependency returning the process-wide pipeline.
    Tests swap it through app.dependency_overrides.
    """
    return build_pipeline(settings)
