"""
Error taxonomy for AI infrastructure.

Admission-control errors (feature flags, rate limits) abort a call before
any provider is invoked. Provider errors carry an explicit ``retryable``
flag used by the fallback orchestrator. Persistence errors are raised by
tracking code only to be logged at the tracking boundary.
"""

from datetime import datetime
from typing import Optional


class AIInfrastructureError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(AIInfrastructureError, ValueError):
    """Invalid configuration or a provider missing from the registry."""


class FeatureDisabled(AIInfrastructureError):
    """A feature flag rejected the call."""
    def __init__(self, feature: str):
        super().__init__(f"Feature {feature} is not enabled")
        self.feature = feature


class RateLimitExceeded(AIInfrastructureError):
    """Admission was refused by the rate limiter.

    Callers are expected to retry after ``reset_at``.
    """
    def __init__(self, key: str, reset_at: datetime, remaining: int = 0):
        super().__init__(f"Rate limit exceeded. Retry after {reset_at.isoformat()}")
        self.key = key
        self.reset_at = reset_at
        self.remaining = remaining


class ProviderError(AIInfrastructureError):
    """Failure reported by an LLM provider adapter.

    Adapters that know whether a failure is transient set ``retryable``
    explicitly so the fallback orchestrator does not have to inspect the
    message text.
    """
    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retryable: Optional[bool] = None,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.code = code


class ProviderTimeoutError(ProviderError):
    """A provider call did not finish within the strategy timeout."""
    def __init__(self, provider: Optional[str] = None, timeout_ms: Optional[int] = None):
        super().__init__("Operation timeout", provider=provider, retryable=True, code="timeout")
        self.timeout_ms = timeout_ms


class AllProvidersExhausted(AIInfrastructureError):
    """Primary and every eligible fallback provider failed."""
    def __init__(self, last_error: Optional[BaseException]):
        detail = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"All providers failed. Last error: {detail}")
        self.last_error = last_error


class PersistenceError(AIInfrastructureError):
    """Cost or usage data could not be recorded."""
