from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service settings read from the environment, with .env as fallback.

    Only DATABASE_URL is required. Missing LLM or WhatsApp secrets do not
    stop the app from starting; the affected pipeline steps report a
    ConfigurationError instead.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Language model (OpenAI-compatible chat completions endpoint)
    LLM_API_URL: str = "https://openrouter.ai/api/v1/chat/completions"
    LLM_API_KEY: Optional[str] = None
    LLM_MODEL: str = "openai/gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1000
    AGENT_CONTEXT: str = (
        "You are a friendly and helpful virtual assistant. "
        "Answer clearly and concisely."
    )

    # Sent as HTTP-Referer / X-Title to the LLM provider
    APP_URL: Optional[str] = None
    APP_NAME: Optional[str] = None

    # WhatsApp messaging gateway
    WHATSAPP_BASE_URL: str = "https://gateway.apibrasil.io/api/v2"
    WHATSAPP_EMAIL: Optional[str] = None
    WHATSAPP_PASSWORD: Optional[str] = None
    WHATSAPP_DEVICE_TOKEN: Optional[str] = None
    WHATSAPP_BEARER_TOKEN: Optional[str] = None
    WHATSAPP_TIME_TYPING_MS: int = 1000
    WHATSAPP_SEND_DELAY_MS: int = 500

    # Timeout applied to every outbound HTTP call
    HTTP_TIMEOUT_SECONDS: float = 30.0


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()


settings = get_settings()
