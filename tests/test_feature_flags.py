"""
Tests for feature flag evaluation.
"""

import pytest

from ai_infra_guard.core.feature_flags import (
    FeatureFlagEvaluator,
    conditions_match,
    rollout_bucket,
)
from ai_infra_guard.core.hashing import hash_string
from ai_infra_guard.storage.models import FeatureFlag
from ai_infra_guard.storage.repository import FeatureFlagRepository


class SecondsClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def repository(db_path):
    return FeatureFlagRepository(db_path)


@pytest.fixture
def seconds():
    return SecondsClock()


@pytest.fixture
def evaluator(repository, seconds):
    return FeatureFlagEvaluator(repository, cache_ttl_seconds=300, clock=seconds)


class TestHashing:
    """Test the bucketing hash."""

    def test_known_values(self):
        assert hash_string("") == 0
        assert hash_string("a") == 97
        assert hash_string("ab") == 97 * 31 + 98
        assert hash_string("hello") == 99162322

    def test_overflow_wraps_and_is_absolute(self):
        # "polygenelubricants".hashCode() == Integer.MIN_VALUE
        assert hash_string("polygenelubricants") == 2 ** 31
        assert hash_string("some rather long user identifier 12345") >= 0

    def test_utf16_code_units(self):
        assert hash_string("é") == 0xE9
        # Astral characters hash as a surrogate pair
        assert hash_string("\U0001F600") == 0xD83D * 31 + 0xDE00

    def test_rollout_bucket_range(self):
        buckets = {rollout_bucket(f"user-{i}", "flag") for i in range(500)}
        assert min(buckets) >= 1
        assert max(buckets) <= 100


class TestConditions:
    """Test conditions_match."""

    def test_no_conditions_always_match(self):
        assert conditions_match({}, None)

    def test_equality_and_membership(self):
        conditions = {"plan": "pro", "region": ["eu", "us"]}
        assert conditions_match(conditions, {"plan": "pro", "region": "eu"})
        assert not conditions_match(conditions, {"plan": "free", "region": "eu"})
        assert not conditions_match(conditions, {"plan": "pro", "region": "apac"})

    def test_missing_context_fails(self):
        assert not conditions_match({"plan": "pro"}, None)
        assert not conditions_match({"plan": "pro"}, {"region": "eu"})


class TestIsFeatureEnabled:
    """Test the evaluation order."""

    def test_unknown_flag_is_off(self, evaluator):
        assert not evaluator.is_feature_enabled("missing", "u1", "o1")

    def test_disabled_flag_is_off(self, evaluator):
        evaluator.set_feature_flag("beta", enabled=False)
        assert not evaluator.is_feature_enabled("beta", "u1", "o1")

    def test_enabled_flag_without_targeting(self, evaluator):
        evaluator.set_feature_flag("beta", enabled=True)
        assert evaluator.is_feature_enabled("beta")
        assert evaluator.is_feature_enabled("beta", "u1", "o1")

    def test_target_users(self, evaluator):
        evaluator.set_feature_flag("beta", enabled=True, target_users=["alice"])
        assert evaluator.is_feature_enabled("beta", "alice")
        assert not evaluator.is_feature_enabled("beta", "bob")
        assert not evaluator.is_feature_enabled("beta")

    def test_target_organizations(self, evaluator):
        evaluator.set_feature_flag("beta", enabled=True, target_organizations=["acme"])
        assert evaluator.is_feature_enabled("beta", "u1", "acme")
        assert not evaluator.is_feature_enabled("beta", "u1", "globex")
        assert not evaluator.is_feature_enabled("beta", "u1")

    def test_rollout_is_deterministic_per_user(self, evaluator):
        evaluator.set_feature_flag("beta", enabled=True, rollout_percentage=50)
        users = [f"user-{i}" for i in range(200)]
        first = [evaluator.is_feature_enabled("beta", u) for u in users]
        second = [evaluator.is_feature_enabled("beta", u) for u in users]
        assert first == second
        assert first == [rollout_bucket(u, "beta") <= 50 for u in users]
        assert 0 < sum(first) < len(users)

    def test_rollout_boundaries(self, evaluator):
        evaluator.set_feature_flag("none", enabled=True, rollout_percentage=0)
        evaluator.set_feature_flag("all", enabled=True, rollout_percentage=100)
        users = [f"user-{i}" for i in range(50)]
        assert not any(evaluator.is_feature_enabled("none", u) for u in users)
        assert all(evaluator.is_feature_enabled("all", u) for u in users)

    def test_anonymous_rollout_uses_random_draw(self, repository):
        draws = iter([0.2, 0.8])
        evaluator = FeatureFlagEvaluator(repository, random_source=lambda: next(draws))
        evaluator.set_feature_flag("beta", enabled=True, rollout_percentage=50)

        assert evaluator.is_feature_enabled("beta")
        assert not evaluator.is_feature_enabled("beta")

    def test_conditions_use_context(self, evaluator):
        evaluator.set_feature_flag("beta", enabled=True, conditions={"plan": ["pro", "team"]})
        assert evaluator.is_feature_enabled("beta", "u1", context={"plan": "team"})
        assert not evaluator.is_feature_enabled("beta", "u1", context={"plan": "free"})
        assert not evaluator.is_feature_enabled("beta", "u1")


class TestFlagManagement:
    """Test set/list and caching."""

    def test_set_creates_then_updates(self, evaluator, repository):
        created = evaluator.set_feature_flag("beta", enabled=True, description="Beta UI")
        updated = evaluator.set_feature_flag("beta", rollout_percentage=25)

        assert updated.enabled is True
        assert updated.description == "Beta UI"
        assert updated.rollout_percentage == 25
        assert updated.created_at == created.created_at
        assert repository.get("beta").rollout_percentage == 25

    def test_invalid_rollout_rejected(self, evaluator):
        with pytest.raises(ValueError, match="rollout_percentage"):
            evaluator.set_feature_flag("beta", enabled=True, rollout_percentage=150)

    def test_list_sorted_by_name(self, evaluator):
        evaluator.set_feature_flag("zeta", enabled=True)
        evaluator.set_feature_flag("alpha")
        assert [f.name for f in evaluator.list_feature_flags()] == ["alpha", "zeta"]

    def test_cache_serves_stale_until_ttl(self, evaluator, repository, seconds):
        evaluator.set_feature_flag("beta", enabled=True)
        repository.save(FeatureFlag(name="beta", enabled=False))

        seconds.now += 299
        assert evaluator.is_feature_enabled("beta")

        seconds.now += 2
        assert not evaluator.is_feature_enabled("beta")

    def test_invalidate_cache(self, evaluator, repository):
        evaluator.set_feature_flag("beta", enabled=True)
        repository.save(FeatureFlag(name="beta", enabled=False))

        evaluator.invalidate_cache()
        assert not evaluator.is_feature_enabled("beta")
