"""
AI service wrapper.

Runs one generation through the full admission and tracking pipeline:

    feature check -> rate limit -> credential -> generate -> cost tracking

Any step before generation that rejects the call raises without touching
a provider. Tracking failures are logged and never fail the call.
Storage reads and writes run in worker threads so concurrent calls are
not blocked on SQLite.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Optional, Sequence

from ..config.loader import InfraConfig
from ..core.ab_testing import ABTestAssignor
from ..core.cost_tracker import CostTracker
from ..core.credentials import APIKeyStore
from ..core.errors import ConfigurationError, FeatureDisabled, RateLimitExceeded
from ..core.fallback import FallbackOrchestrator
from ..core.feature_flags import FeatureFlagEvaluator
from ..core.pricing import PRICING_TABLE
from ..core.rate_limiter import RateLimiter
from ..storage.models import CostSummary, CostTrackingRecord, UsageAnalyticsRecord
from ..storage.repository import (
    ABTestRepository,
    APIKeyRepository,
    CostTrackingRepository,
    FeatureFlagRepository,
    initialize_schema,
)
from .providers import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    """Provider response plus which provider produced it."""
    response: LLMResponse
    provider: str
    fallback_used: bool


class AIServiceWrapper:
    """Unified entry point for AI calls with infrastructure features."""

    def __init__(
        self,
        primary_provider: Optional[LLMProvider],
        rate_limiter: RateLimiter,
        cost_tracker: CostTracker,
        fallback: FallbackOrchestrator,
        feature_flags: FeatureFlagEvaluator,
        api_keys: Optional[APIKeyStore] = None
    ):
        self.primary_provider = primary_provider
        self.rate_limiter = rate_limiter
        self.cost_tracker = cost_tracker
        self.fallback = fallback
        self.feature_flags = feature_flags
        self.api_keys = api_keys
        self._providers: Dict[str, LLMProvider] = {}
        if primary_provider is not None:
            self._providers[primary_provider.get_name()] = primary_provider

    @property
    def providers(self) -> Dict[str, LLMProvider]:
        return dict(self._providers)

    def register_provider(self, name: str, provider: LLMProvider) -> None:
        self._providers[name] = provider

    @staticmethod
    def rate_limit_key(provider_name: str, user_id: Optional[str], organization_id: Optional[str]) -> str:
        if user_id:
            return f"user:{user_id}:{provider_name}"
        return f"org:{organization_id}:{provider_name}"

    async def generate(
        self,
        request: LLMRequest,
        feature: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        use_fallback: bool = False,
        track_cost: bool = False
    ) -> GenerationResult:
        """Generate a completion with admission control and tracking.

        Args:
            request: Generation request
            feature: Feature name used for flags, fallback strategy and cost
            user_id: Optional calling user
            organization_id: Optional calling organization; enables the
                feature flag check and credential lookup
            use_fallback: Route through the fallback orchestrator
            track_cost: Record cost and usage for the call

        Raises:
            FeatureDisabled: If the feature flag rejects the caller
            RateLimitExceeded: If the caller is over its rate limit
            ConfigurationError: If no provider is available
            AllProvidersExhausted: If fallback generation failed
        """
        start = time.monotonic()

        if organization_id and not await asyncio.to_thread(
                self.feature_flags.is_feature_enabled, feature, user_id, organization_id):
            raise FeatureDisabled(feature)

        provider_name = self.primary_provider.get_name() if self.primary_provider else "unknown"

        key = self.rate_limit_key(provider_name, user_id, organization_id)
        admission = self.rate_limiter.check_rate_limit(
            key, self.rate_limiter.get_rate_limit_config(provider_name)
        )
        if not admission.allowed:
            raise RateLimitExceeded(key, admission.reset_at, admission.remaining)

        primary_request = request
        if organization_id and self.primary_provider is not None and self.api_keys is not None:
            api_key = await asyncio.to_thread(
                self.api_keys.get_api_key, organization_id, provider_name
            )
            if api_key:
                primary_request = replace(request, api_key=api_key)

        try:
            result = await self._generate(request, primary_request, feature, use_fallback)
        except Exception as e:
            if track_cost:
                await asyncio.to_thread(self.cost_tracker.track_usage, UsageAnalyticsRecord(
                    feature=feature,
                    provider=provider_name,
                    model=self._model_name(request),
                    success=False,
                    response_time_ms=(time.monotonic() - start) * 1000,
                    error_code=getattr(e, "code", None) or type(e).__name__,
                    user_id=user_id,
                    organization_id=organization_id
                ))
            raise

        elapsed_ms = (time.monotonic() - start) * 1000
        usage = result.response.usage
        if track_cost and usage is not None:
            cost = self.cost_tracker.calculate_cost(
                result.provider,
                result.response.model,
                usage.prompt_tokens,
                usage.completion_tokens
            )
            await asyncio.to_thread(self.cost_tracker.track_cost, CostTrackingRecord(
                provider=result.provider,
                model=result.response.model,
                feature=feature,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                estimated_cost=cost,
                timestamp=datetime.now(),
                user_id=user_id,
                organization_id=organization_id
            ), elapsed_ms)

        logger.info(
            "AI generation completed",
            extra={
                "feature": feature,
                "provider": result.provider,
                "fallback_used": result.fallback_used,
                "duration_ms": int(elapsed_ms),
                "tokens": usage.total_tokens if usage is not None else 0,
            }
        )
        return result

    def _model_name(self, request: LLMRequest) -> str:
        if request.model:
            return request.model
        if self.primary_provider is not None:
            return self.primary_provider.get_default_model() or "unknown"
        return "unknown"

    async def _generate(
        self,
        request: LLMRequest,
        primary_request: LLMRequest,
        feature: str,
        use_fallback: bool
    ) -> GenerationResult:
        if use_fallback:
            strategy = self.fallback.resolve_strategy(feature)

            async def operation(provider: LLMProvider) -> LLMResponse:
                # Credentials resolved for the primary are never sent elsewhere
                if provider is self.primary_provider:
                    return await provider.generate(primary_request)
                return await provider.generate(request)

            outcome = await self.fallback.execute_with_fallback(
                strategy, self._providers, request, operation
            )
            return GenerationResult(
                response=outcome.result,
                provider=outcome.provider_used,
                fallback_used=outcome.fallback_used
            )

        if self.primary_provider is None:
            raise ConfigurationError("No LLM provider available")
        response = await self.primary_provider.generate(primary_request)
        return GenerationResult(
            response=response,
            provider=self.primary_provider.get_name(),
            fallback_used=False
        )

    def is_feature_enabled(
        self,
        feature: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> bool:
        return self.feature_flags.is_feature_enabled(feature, user_id, organization_id)

    def get_cost_summary(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> CostSummary:
        return self.cost_tracker.get_cost_summary(organization_id, start_date, end_date)


@dataclass
class InfraComponents:
    """Every component wired from one configuration."""
    service: AIServiceWrapper
    rate_limiter: RateLimiter
    cost_tracker: CostTracker
    fallback: FallbackOrchestrator
    feature_flags: FeatureFlagEvaluator
    ab_tests: ABTestAssignor
    api_keys: APIKeyStore


def build_components(
    config: InfraConfig,
    primary_provider: Optional[LLMProvider] = None,
    fallback_providers: Sequence[LLMProvider] = ()
) -> InfraComponents:
    """Composition root: build and wire all components once at startup.

    Creates the database schema if needed. ``fallback_providers`` are
    registered under their own names for fallback strategies to use.
    """
    initialize_schema(config.db_path)

    rate_limiter = RateLimiter(overrides=config.rate_limits)
    cost_tracker = CostTracker(
        CostTrackingRepository(config.db_path),
        PRICING_TABLE.with_overrides(config.pricing)
    )
    fallback = FallbackOrchestrator(config.fallback_strategies)
    feature_flags = FeatureFlagEvaluator(
        FeatureFlagRepository(config.db_path),
        cache_ttl_seconds=config.feature_flag_cache_ttl_seconds
    )
    ab_tests = ABTestAssignor(ABTestRepository(config.db_path))
    api_keys = APIKeyStore(APIKeyRepository(config.db_path))

    service = AIServiceWrapper(
        primary_provider=primary_provider,
        rate_limiter=rate_limiter,
        cost_tracker=cost_tracker,
        fallback=fallback,
        feature_flags=feature_flags,
        api_keys=api_keys
    )
    for provider in fallback_providers:
        service.register_provider(provider.get_name(), provider)
    return InfraComponents(
        service=service,
        rate_limiter=rate_limiter,
        cost_tracker=cost_tracker,
        fallback=fallback,
        feature_flags=feature_flags,
        ab_tests=ab_tests,
        api_keys=api_keys
    )
