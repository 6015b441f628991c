"""
End-to-end tests for the AI service wrapper.
"""

import threading
from types import SimpleNamespace

import httpx
import pytest

from ai_infra_guard.config.loader import InfraConfig
from ai_infra_guard.core.cost_tracker import CostTracker
from ai_infra_guard.core.credentials import APIKeyStore
from ai_infra_guard.core.errors import (
    AllProvidersExhausted,
    ConfigurationError,
    FeatureDisabled,
    ProviderError,
    RateLimitExceeded,
)
from ai_infra_guard.core.fallback import FallbackOrchestrator, FallbackStrategy
from ai_infra_guard.core.feature_flags import FeatureFlagEvaluator
from ai_infra_guard.core.rate_limiter import RateLimitConfig, RateLimiter
from ai_infra_guard.sdk import AIServiceWrapper, build_components
from ai_infra_guard.sdk.providers import (
    LLMMessage,
    LLMRequest,
    MockLLMProvider,
    OllamaProvider,
)
from ai_infra_guard.storage.repository import (
    APIKeyRepository,
    CostTrackingRepository,
    FeatureFlagRepository,
)


class RecordingProvider(MockLLMProvider):
    """Mock provider that remembers requests and can be made to fail."""

    def __init__(self, name="mock", error=None):
        super().__init__(name=name)
        self.error = error
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return await super().generate(request)


REQUEST = LLMRequest(messages=[LLMMessage(role="user", content="Analyze this property")])


def never():
    return 1.0


@pytest.fixture
def parts(db_path):
    flags = FeatureFlagEvaluator(FeatureFlagRepository(db_path))
    flags.set_feature_flag("analysis", enabled=True)
    return {
        "rate_limiter": RateLimiter(
            overrides={"mock": RateLimitConfig(2, 60_000)}, random_source=never, environ={}
        ),
        "cost_tracker": CostTracker(CostTrackingRepository(db_path)),
        "fallback": FallbackOrchestrator(),
        "feature_flags": flags,
        "api_keys": APIKeyStore(
            APIKeyRepository(db_path),
            environ={"MOCK_API_KEY": "sk-mock", "FLAKY_API_KEY": "sk-flaky"}
        ),
    }


def wrapper(parts, primary):
    return AIServiceWrapper(primary_provider=primary, **parts)


class TestGenerate:
    """Test the admission and tracking pipeline."""

    @pytest.mark.asyncio
    async def test_success_tracks_cost(self, parts):
        service = wrapper(parts, RecordingProvider())
        result = await service.generate(
            REQUEST, "analysis", user_id="u1", organization_id="org-1", track_cost=True
        )

        assert result.provider == "mock"
        assert result.fallback_used is False
        assert "investment opportunity" in result.response.content

        summary = service.get_cost_summary("org-1")
        assert summary.total_tokens == result.response.usage.total_tokens
        assert "analysis" in summary.by_feature

    @pytest.mark.asyncio
    async def test_no_tracking_by_default(self, parts):
        service = wrapper(parts, RecordingProvider())
        await service.generate(REQUEST, "analysis", organization_id="org-1")
        assert service.get_cost_summary("org-1").total_tokens == 0

    @pytest.mark.asyncio
    async def test_disabled_feature_never_reaches_provider(self, parts):
        provider = RecordingProvider()
        service = wrapper(parts, provider)

        with pytest.raises(FeatureDisabled, match="Feature reports is not enabled"):
            await service.generate(REQUEST, "reports", user_id="u1", organization_id="org-1")
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_feature_check_skipped_without_organization(self, parts):
        service = wrapper(parts, RecordingProvider())
        result = await service.generate(REQUEST, "reports", user_id="u1")
        assert result.provider == "mock"

    @pytest.mark.asyncio
    async def test_rate_limit_per_user(self, parts):
        provider = RecordingProvider()
        service = wrapper(parts, provider)

        await service.generate(REQUEST, "analysis", user_id="u1")
        await service.generate(REQUEST, "analysis", user_id="u1")
        with pytest.raises(RateLimitExceeded, match="Rate limit exceeded. Retry after") as excinfo:
            await service.generate(REQUEST, "analysis", user_id="u1")

        assert excinfo.value.key == "user:u1:mock"
        assert len(provider.requests) == 2
        await service.generate(REQUEST, "analysis", user_id="u2")

    def test_rate_limit_key(self):
        assert AIServiceWrapper.rate_limit_key("openai", "u1", "org-1") == "user:u1:openai"
        assert AIServiceWrapper.rate_limit_key("openai", None, "org-1") == "org:org-1:openai"

    @pytest.mark.asyncio
    async def test_credential_attached_for_organization(self, parts):
        provider = RecordingProvider()
        service = wrapper(parts, provider)

        await service.generate(REQUEST, "analysis", organization_id="org-1")
        await service.generate(REQUEST, "analysis", user_id="u1")

        assert provider.requests[0].api_key == "sk-mock"
        assert provider.requests[1].api_key is None

    @pytest.mark.asyncio
    async def test_no_provider(self, parts):
        service = wrapper(parts, None)
        with pytest.raises(ConfigurationError, match="No LLM provider available"):
            await service.generate(REQUEST, "analysis")

    @pytest.mark.asyncio
    async def test_failure_recorded_as_usage(self, parts):
        error = ProviderError("upstream broke", provider="mock", code="server_error")
        service = wrapper(parts, RecordingProvider(error=error))

        with pytest.raises(ProviderError):
            await service.generate(REQUEST, "analysis", organization_id="org-1", track_cost=True)

        rows = parts["cost_tracker"].get_usage_analytics("org-1")
        assert len(rows) == 1
        assert rows[0].failure_count == 1
        assert rows[0].success_count == 0
        assert service.get_cost_summary("org-1").total_cost == 0.0

    @pytest.mark.asyncio
    async def test_success_records_response_time(self, parts):
        service = wrapper(parts, MockLLMProvider(delay_seconds=0.05))
        await service.generate(REQUEST, "analysis", organization_id="org-1", track_cost=True)

        rows = parts["cost_tracker"].get_usage_analytics("org-1")
        assert rows[0].success_count == 1
        assert rows[0].average_response_time >= 50

    @pytest.mark.asyncio
    async def test_failures_grouped_with_default_model(self, parts):
        provider = RecordingProvider()
        service = wrapper(parts, provider)
        await service.generate(REQUEST, "analysis", organization_id="org-1", track_cost=True)

        provider.error = ProviderError("upstream broke", code="server_error")
        with pytest.raises(ProviderError):
            await service.generate(REQUEST, "analysis", organization_id="org-1", track_cost=True)

        rows = parts["cost_tracker"].get_usage_analytics("org-1")
        assert [(r.model, r.success_count, r.failure_count) for r in rows] == [
            ("mock-model-1", 1, 1)
        ]

    @pytest.mark.asyncio
    async def test_storage_runs_off_the_event_loop(self, parts):
        loop_thread = threading.get_ident()
        seen = []
        flags = parts["feature_flags"]

        def is_feature_enabled(*args):
            seen.append(threading.get_ident())
            return flags.is_feature_enabled(*args)

        parts["feature_flags"] = SimpleNamespace(is_feature_enabled=is_feature_enabled)
        service = wrapper(parts, RecordingProvider())
        await service.generate(REQUEST, "analysis", organization_id="org-1")

        assert seen and loop_thread not in seen


class TestGenerateWithFallback:
    """Test routing through the fallback orchestrator."""

    @pytest.mark.asyncio
    async def test_fallback_provider_used(self, parts):
        primary = RecordingProvider(name="flaky", error=ProviderError("server_error", retryable=True))
        backup = RecordingProvider(name="mock")
        parts["fallback"].set_fallback_strategy(
            "analysis", FallbackStrategy(primary="flaky", fallbacks=["mock"])
        )
        parts["rate_limiter"].overrides["flaky"] = RateLimitConfig(10, 60_000)
        service = wrapper(parts, primary)
        service.register_provider("mock", backup)

        result = await service.generate(
            REQUEST, "analysis", organization_id="org-1", use_fallback=True, track_cost=True
        )

        assert result.provider == "mock"
        assert result.fallback_used is True
        assert "mock" in service.get_cost_summary("org-1").by_provider
        assert primary.requests[0].api_key == "sk-flaky"
        assert backup.requests[0].api_key is None

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_retried(self, parts):
        primary = RecordingProvider(name="flaky", error=ProviderError("Unauthorized"))
        backup = RecordingProvider(name="mock")
        parts["fallback"].set_fallback_strategy(
            "analysis", FallbackStrategy(primary="flaky", fallbacks=["mock"])
        )
        service = wrapper(parts, primary)
        service.register_provider("mock", backup)

        with pytest.raises(AllProvidersExhausted):
            await service.generate(REQUEST, "analysis", use_fallback=True)
        assert backup.requests == []

    @pytest.mark.asyncio
    async def test_default_strategy_falls_back_from_ollama_to_mock(self, parts):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        ollama = OllamaProvider(transport=httpx.MockTransport(refuse), environ={})
        service = wrapper(parts, ollama)
        service.register_provider("mock", MockLLMProvider())

        result = await service.generate(
            REQUEST, "analysis", organization_id="org-1", use_fallback=True, track_cost=True
        )

        assert result.provider == "mock"
        assert result.fallback_used is True
        assert "mock" in service.get_cost_summary("org-1").by_provider

    @pytest.mark.asyncio
    async def test_default_strategy_needs_its_primary(self, parts):
        service = wrapper(parts, RecordingProvider())
        with pytest.raises(ConfigurationError, match="ollama"):
            await service.generate(REQUEST, "analysis", use_fallback=True)


class TestBuildComponents:
    """Test the composition root."""

    @pytest.mark.asyncio
    async def test_wires_every_component(self, tmp_path):
        config = InfraConfig(db_path=str(tmp_path / "infra.db"))
        components = build_components(config, MockLLMProvider())

        assert components.service.providers == {"mock": components.service.primary_provider}
        assert components.service.cost_tracker is components.cost_tracker
        assert components.service.api_keys is components.api_keys

        components.feature_flags.set_feature_flag("analysis", enabled=True)
        result = await components.service.generate(
            REQUEST, "analysis", organization_id="org-1", track_cost=True
        )
        assert components.cost_tracker.get_cost_summary("org-1").total_tokens == result.response.usage.total_tokens
