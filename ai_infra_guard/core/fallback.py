"""
Provider fallback orchestration.

Runs an operation against a primary provider and, when it fails with a
retryable error, walks an ordered list of fallback providers. Every
attempt is bounded by the strategy timeout; a timed-out attempt is
cancelled before the next provider is tried.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar

from .errors import AllProvidersExhausted, ConfigurationError, ProviderTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = TypeVar("P")

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_STRATEGY = "default"

DEFAULT_RETRYABLE_MARKERS = (
    "econnreset",
    "etimedout",
    "enotfound",
    "timeout",
    "rate_limit",
    "server_error",
    "temporary",
)
NON_RETRYABLE_MARKERS = (
    "unauthorized",
    "forbidden",
    "invalid_api_key",
)


@dataclass(frozen=True)
class FallbackConditions:
    """When and how long to try each provider."""
    error_codes: List[str] = field(default_factory=list)
    max_retries: Optional[int] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    def __post_init__(self):
        """Validate retry and timeout limits."""
        if self.max_retries is not None and self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative")
        if self.timeout_ms <= 0:
            raise ConfigurationError("timeout_ms must be > 0")


@dataclass(frozen=True)
class FallbackStrategy:
    """Primary provider plus ordered fallbacks."""
    primary: str
    fallbacks: List[str] = field(default_factory=list)
    conditions: FallbackConditions = field(default_factory=FallbackConditions)

    def __post_init__(self):
        """Validate the primary provider name."""
        if not self.primary or not self.primary.strip():
            raise ConfigurationError("primary provider is required")


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """Result of a fallback execution and the provider that produced it."""
    result: T
    provider_used: str
    fallback_used: bool


def is_retryable_error(error: Optional[BaseException], error_codes: Sequence[str] = ()) -> bool:
    """Classify an error as transient (safe to retry elsewhere) or not.

    Errors that carry a boolean ``retryable`` attribute are classified by
    it. Otherwise the message is matched case-insensitively: credential
    failures are never retryable, network/timeout/rate-limit style
    failures always are, and anything else is retryable only if it
    matches ``error_codes`` (or if no ``error_codes`` are configured).

    Args:
        error: The failure to classify
        error_codes: Extra message fragments that mark an error retryable

    Returns:
        True if another provider may be tried
    """
    if error is None:
        return False

    explicit = getattr(error, "retryable", None)
    if isinstance(explicit, bool):
        return explicit

    message = str(error).lower()
    if any(marker in message for marker in NON_RETRYABLE_MARKERS):
        return False
    if any(marker in message for marker in DEFAULT_RETRYABLE_MARKERS):
        return True
    if error_codes:
        return any(code.lower() in message for code in error_codes)
    return True


def _default_strategies() -> Dict[str, FallbackStrategy]:
    return {
        # Development: local model, then the mock provider
        DEFAULT_STRATEGY: FallbackStrategy(
            primary="ollama",
            fallbacks=["mock"],
            conditions=FallbackConditions(
                error_codes=["ECONNRESET", "ETIMEDOUT", "timeout"],
                max_retries=2,
                timeout_ms=30_000
            )
        ),
        "production": FallbackStrategy(
            primary="openai",
            fallbacks=["anthropic", "ollama"],
            conditions=FallbackConditions(
                error_codes=["rate_limit", "server_error", "timeout"],
                max_retries=3,
                timeout_ms=60_000
            )
        ),
    }


class FallbackOrchestrator:
    """Executes operations with provider fallback.

    Strategies are registered per feature name; ``"default"`` always exists.
    """

    def __init__(self, strategies: Optional[Mapping[str, FallbackStrategy]] = None):
        self._strategies: Dict[str, FallbackStrategy] = _default_strategies()
        for feature, strategy in (strategies or {}).items():
            self.set_fallback_strategy(feature, strategy)

    def get_fallback_strategy(self, feature: str) -> Optional[FallbackStrategy]:
        return self._strategies.get(feature)

    def set_fallback_strategy(self, feature: str, strategy: FallbackStrategy) -> None:
        self._strategies[feature] = strategy

    def resolve_strategy(self, feature: str) -> FallbackStrategy:
        """Strategy registered for ``feature``, else the default one."""
        return self._strategies.get(feature) or self._strategies[DEFAULT_STRATEGY]

    @property
    def strategies(self) -> Dict[str, FallbackStrategy]:
        return dict(self._strategies)

    async def _attempt(
        self,
        name: str,
        provider: P,
        operation: Callable[[P], Awaitable[T]],
        timeout_ms: int
    ) -> T:
        try:
            return await asyncio.wait_for(operation(provider), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(provider=name, timeout_ms=timeout_ms)

    async def execute_with_fallback(
        self,
        strategy: FallbackStrategy,
        providers: Mapping[str, P],
        request: object,
        operation: Callable[[P], Awaitable[T]]
    ) -> FallbackResult[T]:
        """Run ``operation`` against the primary provider, falling back on failure.

        Args:
            strategy: Provider order and retry conditions
            providers: Registry of provider name → provider
            request: The request being served, used for log context only
            operation: Coroutine factory invoked with a provider

        Returns:
            FallbackResult with the operation result and provider used

        Raises:
            ConfigurationError: If the primary provider is not registered
            AllProvidersExhausted: If every eligible attempt failed or a
                non-retryable error was hit
        """
        primary = providers.get(strategy.primary)
        if primary is None:
            raise ConfigurationError(f"Primary provider {strategy.primary} not available")

        conditions = strategy.conditions
        try:
            result = await self._attempt(strategy.primary, primary, operation, conditions.timeout_ms)
            return FallbackResult(result=result, provider_used=strategy.primary, fallback_used=False)
        except Exception as e:
            last_error: Exception = e
            logger.warning(
                "Primary provider %s failed, trying fallbacks: %s",
                strategy.primary, e,
                extra={"provider": strategy.primary, "request_type": type(request).__name__}
            )

        fallback_attempts = 0
        for name in strategy.fallbacks:
            if conditions.max_retries is not None and fallback_attempts >= conditions.max_retries:
                break

            provider = providers.get(name)
            if provider is None:
                logger.warning("Fallback provider %s not available", name)
                continue

            if not is_retryable_error(last_error, conditions.error_codes):
                logger.info("Not retrying after non-retryable error: %s", last_error)
                break

            fallback_attempts += 1
            try:
                result = await self._attempt(name, provider, operation, conditions.timeout_ms)
            except Exception as e:
                last_error = e
                logger.warning("Fallback provider %s also failed: %s", name, e)
                continue

            logger.info(
                "Fallback provider %s succeeded",
                name,
                extra={"original_provider": strategy.primary, "fallback_provider": name}
            )
            return FallbackResult(result=result, provider_used=name, fallback_used=True)

        raise AllProvidersExhausted(last_error) from last_error
