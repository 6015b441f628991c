"""
Feature flag evaluation.

Flags are gated in a fixed order, each check able to reject:
1. Flag exists and is enabled
2. Target users, when the flag lists any
3. Target organizations, when the flag lists any
4. Rollout percentage - deterministic per user, random for anonymous calls
5. Conditions - every condition must match the caller context

Flags are read through a process-local cache whose TTL runs from the last
refresh, so each replica may serve a flag up to one TTL out of date.
"""

import logging
import random
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from .hashing import hash_string
from ai_infra_guard.storage.models import FeatureFlag
from ai_infra_guard.storage.repository import FeatureFlagRepository

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5 * 60


def rollout_bucket(user_id: str, feature_name: str) -> int:
    """Stable 1-100 bucket for a user within a feature's rollout."""
    return (hash_string(user_id + feature_name) % 100) + 1


def conditions_match(conditions: Mapping[str, Any], context: Optional[Mapping[str, Any]]) -> bool:
    """Check every flag condition against the caller context.

    A list condition value matches if the context value is one of its
    items; any other value must be equal. Missing context keys never match.
    """
    if not conditions:
        return True
    if not context:
        return False
    for key, expected in conditions.items():
        if key not in context:
            return False
        actual = context[key]
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class FeatureFlagEvaluator:
    """Evaluates feature flags for a user/organization."""

    def __init__(
        self,
        repository: FeatureFlagRepository,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        random_source: Callable[[], float] = random.random
    ):
        """Initialize the evaluator.

        Args:
            repository: Flag storage
            cache_ttl_seconds: Lifetime of the cached flag set
            clock: Monotonic seconds used for cache expiry
            random_source: Uniform [0, 1) source for anonymous rollouts
        """
        self.repository = repository
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._random = random_source
        self._cache: Dict[str, FeatureFlag] = {}
        self._last_refresh: Optional[float] = None

    def _cache_fresh(self) -> bool:
        return (
            self._last_refresh is not None
            and self._clock() - self._last_refresh < self.cache_ttl_seconds
        )

    def _remember(self, flag: FeatureFlag) -> None:
        if not self._cache_fresh():
            self._cache.clear()
        self._cache[flag.name] = flag
        self._last_refresh = self._clock()

    def get_feature_flag(self, name: str) -> Optional[FeatureFlag]:
        """Fetch a flag, serving from cache while it is fresh."""
        if self._cache_fresh():
            cached = self._cache.get(name)
            if cached is not None:
                return cached

        flag = self.repository.get(name)
        if flag is not None:
            self._remember(flag)
        return flag

    def is_feature_enabled(
        self,
        name: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None
    ) -> bool:
        """Whether ``name`` is on for this caller.

        Anonymous calls (no ``user_id``) under a partial rollout are decided
        by a random draw, so they are not stable across calls.
        """
        flag = self.get_feature_flag(name)
        if flag is None or not flag.enabled:
            return False

        if flag.target_users and (not user_id or user_id not in flag.target_users):
            return False

        if flag.target_organizations and (
                not organization_id or organization_id not in flag.target_organizations):
            return False

        if flag.rollout_percentage is not None and flag.rollout_percentage < 100:
            if user_id:
                if rollout_bucket(user_id, name) > flag.rollout_percentage:
                    return False
            elif self._random() * 100 > flag.rollout_percentage:
                return False

        return conditions_match(flag.conditions, context)

    def set_feature_flag(self, name: str, **changes: Any) -> FeatureFlag:
        """Create a flag or update fields of an existing one.

        Args:
            name: Flag name
            **changes: FeatureFlag fields to set

        Returns:
            The stored flag

        Raises:
            ValueError: If the resulting flag is invalid
        """
        existing = self.repository.get(name)
        if existing is not None:
            flag = replace(existing, updated_at=datetime.now(), **changes)
        else:
            flag = FeatureFlag(name=name, **changes)

        saved = self.repository.save(flag)
        self._remember(saved)

        logger.info("Feature flag %s %s", saved.name, "enabled" if saved.enabled else "disabled")
        return saved

    def list_feature_flags(self) -> List[FeatureFlag]:
        return self.repository.list_all()

    def invalidate_cache(self) -> None:
        self._cache.clear()
        self._last_refresh = None
