"""
Language model client used to draft replies.

Wraps a single OpenAI-compatible chat completion call (OpenRouter by
default). Every public coroutine returns a Result and never raises, so the
reply pipeline can keep going when the model is down.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, List, Optional

import httpx

from replyhub.errors import ConfigurationError, ProtocolError, Result, ServiceError
from replyhub.http_client import request_json
from replyhub.metrics import record_llm_call
from replyhub.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """Raw outcome of one completion call."""
    message: str
    model: str
    usage: dict = field(default_factory=dict)
    conversation_length: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GeneratedReply:
    """A reply drafted for a user, with the model id and token usage."""
    reply_text: str
    model: str
    usage: dict
    turn_count: int
    user_phone: str
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


def build_system_context(agent_context: str, project: Optional[Any] = None) -> str:
    """Agent persona, augmented with the project's name and description."""
    context = agent_context
    if project is not None:
        name = getattr(project, "name", None) or "Unspecified project"
        context += f"\n\nProject context: {name}"
        description = getattr(project, "description", None)
        if description:
            context += f"\nDescription: {description}"
    return context


class AIService:
    """
    Client for an OpenAI-compatible chat completions endpoint.

    Example:
        service = AIService(api_key="sk-...", default_model="openai/gpt-4o-mini")
        result = await service.generate_response("hi", "5521999999999", history)
        if result.ok:
            print(result.value.reply_text)
    """

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = "https://openrouter.ai/api/v1/chat/completions",
        default_model: str = "openai/gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        agent_context: str = "You are a friendly and helpful virtual assistant. Answer clearly and concisely.",
        app_url: Optional[str] = None,
        app_name: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.agent_context = agent_context
        self.app_url = app_url
        self.app_name = app_name
        self.timeout = timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    async def send_message(
        self,
        user_message: str,
        conversation_history: Optional[List[dict]] = None,
        system_context: str = "",
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Result[Completion]:
        """
        Send one completion request.

        The prompt is the system turn (when system_context is set), then the
        history turns in order, then the new user turn.
        """
        model = model or self.default_model
        messages: List[dict] = []
        if system_context:
            messages.append({"role": "system", "content": system_context})
        if conversation_history:
            messages.extend(conversation_history)
        messages.append({"role": "user", "content": user_message})

        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
        }

        try:
            if not self.is_configured:
                raise ConfigurationError("LLM API key not configured. Please set LLM_API_KEY.")

            logger.info(f"Requesting completion: model={model}, turns={len(messages)}")
            data = await request_json(
                "POST",
                self.endpoint,
                service="LLM API",
                client=self._client,
                timeout=self.timeout,
                json=payload,
                headers=self._headers(),
            )
            completion = self._parse_completion(data, model, len(messages))
        except ServiceError as e:
            logger.error(f"Completion failed: {e}")
            record_llm_call(e.kind)
            return Result.failure(e)

        record_llm_call("success")
        logger.info(f"Completion received: model={model}, usage={completion.usage}")
        return Result.success(completion)

    def _parse_completion(self, data: dict, model: str, turn_count: int) -> Completion:
        choices = data.get("choices") or []
        text = ""
        if choices:
            first = choices[0]
            if not isinstance(first, dict):
                raise ProtocolError("completion choice is not an object")
            message = first.get("message") or {}
            if not isinstance(message, dict):
                raise ProtocolError("completion message is not an object")
            text = message.get("content") or ""

        usage = data.get("usage") or {}
        if not isinstance(usage, dict):
            usage = {}
        return Completion(message=text, model=model, usage=usage, conversation_length=turn_count)

    async def generate_response(
        self,
        user_message: str,
        user_phone: str,
        conversation_history: Optional[List[dict]] = None,
        project: Optional[Any] = None,
        agent_context: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Result[GeneratedReply]:
        """
        Draft a reply to user_message given the prior turns.

        project (anything with name/description) is appended to the agent
        persona as context.
        """
        system_context = build_system_context(agent_context or self.agent_context, project)

        result = await self.send_message(
            user_message,
            conversation_history or [],
            system_context,
            model=model,
        )
        if not result.ok:
            return Result.failure(result.error)

        completion = result.value
        return Result.success(
            GeneratedReply(
                reply_text=completion.message,
                model=completion.model,
                usage=completion.usage,
                turn_count=completion.conversation_length,
                user_phone=user_phone,
                timestamp=utc_now().isoformat() + "Z",
            )
        )

    async def test_connection(self) -> Result[Completion]:
        """Round-trip a trivial prompt to verify the key and endpoint."""
        return await self.send_message(
            "Hello, are you working?",
            [],
            "Answer only 'Yes, I am working!'",
        )
