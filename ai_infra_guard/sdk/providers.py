"""
LLM provider interface and adapters.

Every provider exposes the same async surface so the fallback
orchestrator can swap one for another.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ..core.errors import ProviderError
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LLMMessage:
    role: str  # "system", "user" or "assistant"
    content: str


@dataclass(frozen=True)
class LLMRequest:
    """Provider-agnostic generation request."""
    messages: List[LLMMessage]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    api_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        """Validate the request has messages."""
        if not self.messages:
            raise ValueError("messages is required and cannot be empty")


@dataclass(frozen=True)
class LLMResponse:
    """Generation result; ``usage`` is None if the provider reports none."""
    content: str
    model: str
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None


class LLMProvider(ABC):
    """Interface all LLM providers implement."""

    @abstractmethod
    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate a completion."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the provider is reachable and healthy."""

    @abstractmethod
    def get_name(self) -> str:
        """Registry name of the provider."""

    @abstractmethod
    async def get_available_models(self) -> List[str]:
        """Models this provider can serve."""

    def get_default_model(self) -> Optional[str]:
        """Model used when a request does not name one, if known."""
        return None


class MockLLMProvider(LLMProvider):
    """Deterministic provider for development and tests.

    Token counts are estimated at four characters per token.
    """

    def __init__(self, name: str = "mock", delay_seconds: float = 0.0):
        self._name = name
        self.delay_seconds = delay_seconds

    def get_name(self) -> str:
        return self._name

    async def is_available(self) -> bool:
        return True

    async def get_available_models(self) -> List[str]:
        return ["mock-model-1", "mock-model-2"]

    def get_default_model(self) -> Optional[str]:
        return "mock-model-1"

    async def generate(self, request: LLMRequest) -> LLMResponse:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        user_messages = [m.content for m in request.messages if m.role == "user"]
        prompt = user_messages[-1] if user_messages else ""
        lowered = prompt.lower()

        content = "This is a mock LLM response. "
        if "property" in lowered:
            content += ("Based on the property analysis, this appears to be a solid "
                        "investment opportunity with good cash flow potential.")
        elif "deal" in lowered:
            content += ("This deal shows promising returns with a strong cap rate "
                        "and positive cash-on-cash return.")
        elif "risk" in lowered:
            content += ("The risk assessment indicates moderate risk factors that can "
                        "be mitigated through proper due diligence.")
        else:
            content += ("The analysis suggests proceeding with caution and conducting "
                        "thorough market research.")

        return LLMResponse(
            content=content,
            model=request.model or "mock-model-1",
            usage=TokenUsage(prompt_tokens=len(prompt) // 4, completion_tokens=len(content) // 4),
            finish_reason="stop"
        )


# OpenAI exception types that are safe to retry on another provider
_RETRYABLE_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions adapter.

    OpenAI failures are re-raised as ProviderError with ``retryable`` set
    from the exception type.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        default_model: str = "gpt-3.5-turbo"
    ):
        self.client = client or AsyncOpenAI()
        self.default_model = default_model

    def get_name(self) -> str:
        return "openai"

    def get_default_model(self) -> Optional[str]:
        return self.default_model

    async def is_available(self) -> bool:
        try:
            await self.client.models.list()
            return True
        except openai.OpenAIError as e:
            logger.warning("OpenAI unavailable: %s", e)
            return False

    async def get_available_models(self) -> List[str]:
        page = await self.client.models.list()
        return [model.id for model in page.data]

    async def generate(self, request: LLMRequest) -> LLMResponse:
        client = self.client.with_options(api_key=request.api_key) if request.api_key else self.client
        kwargs = {}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens

        try:
            response = await client.chat.completions.create(
                model=request.model or self.default_model,
                messages=[{"role": m.role, "content": m.content} for m in request.messages],
                **kwargs
            )
        except openai.OpenAIError as e:
            raise ProviderError(
                str(e),
                provider=self.get_name(),
                retryable=isinstance(e, _RETRYABLE_OPENAI_ERRORS),
                code=type(e).__name__
            ) from e

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens
            )

        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            usage=usage,
            finish_reason=choice.finish_reason
        )


def format_prompt(messages: List[LLMMessage]) -> str:
    """Flatten chat messages into one ``Role: content`` prompt."""
    labels = {"system": "System", "user": "User"}
    return "\n\n".join(
        f"{labels.get(m.role, 'Assistant')}: {m.content}" for m in messages
    )


class OllamaProvider(LLMProvider):
    """Local Ollama server adapter using ``/api/generate``.

    The server URL and default model come from ``OLLAMA_URL`` and
    ``OLLAMA_MODEL`` unless given explicitly. Connection failures, timeouts
    and 5xx/429 responses are raised as retryable ProviderErrors.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        environ: Optional[Mapping[str, str]] = None
    ):
        env = environ if environ is not None else os.environ
        self.base_url = base_url or env.get("OLLAMA_URL") or "http://localhost:11434"
        self.default_model = default_model or env.get("OLLAMA_MODEL") or "llama3.2"
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout_seconds,
            transport=self._transport
        )

    def get_name(self) -> str:
        return "ollama"

    def get_default_model(self) -> Optional[str]:
        return self.default_model

    async def is_available(self) -> bool:
        try:
            async with self._client(timeout=5.0) as client:
                response = await client.get("/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Ollama unavailable at %s: %s", self.base_url, e)
            return False

    async def get_available_models(self) -> List[str]:
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch Ollama models: %s", e)
            return [self.default_model]
        return [m["name"] for m in response.json().get("models") or []]

    async def generate(self, request: LLMRequest) -> LLMResponse:
        model = request.model or self.default_model
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": format_prompt(request.messages),
            "stream": False,
            "options": {
                "temperature": request.temperature if request.temperature is not None else 0.7,
                "num_predict": request.max_tokens or 2048,
            },
        }

        try:
            async with self._client() as client:
                response = await client.post("/api/generate", json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                f"Ollama returned HTTP {status}",
                provider=self.get_name(),
                retryable=status == 429 or status >= 500,
                code="rate_limit" if status == 429 else f"http_{status}"
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"Ollama request timeout: {e}",
                provider=self.get_name(),
                retryable=True,
                code="timeout"
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Ollama connection failed: {e}",
                provider=self.get_name(),
                retryable=True,
                code=type(e).__name__
            ) from e

        data = response.json()
        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            usage = TokenUsage(
                prompt_tokens=data.get("prompt_eval_count", 0),
                completion_tokens=data.get("eval_count", 0)
            )

        return LLMResponse(
            content=data.get("response", ""),
            model=model,
            usage=usage,
            finish_reason="stop" if data.get("done") else "length"
        )
