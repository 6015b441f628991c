"""
SDK for AI infrastructure.

Provides the provider interface and the service wrapper that runs AI calls
through feature flags, rate limiting, fallback and cost tracking.
"""

from .providers import (
    LLMMessage,
    LLMProvider,
    LLMRequest,
    LLMResponse,
    MockLLMProvider,
    OllamaProvider,
    OpenAIProvider,
)
from .service import AIServiceWrapper, GenerationResult, build_components

__all__ = [
    "AIServiceWrapper",
    "GenerationResult",
    "LLMMessage",
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
    "MockLLMProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "build_components",
]
