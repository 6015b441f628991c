"""
A/B test variant assignment.

Assignments are deterministic (bucketed by user id hash) and sticky: the
first variant resolved for a (user, test) pair is stored and returned
forever, even if the test's traffic split changes later.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .hashing import hash_string
from ai_infra_guard.storage.models import ABTest, ABTestAssignment, ABTestVariant
from ai_infra_guard.storage.repository import ABTestRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricEvent:
    """A metric observation reported for a test variant."""
    test_id: str
    variant_id: str
    metric: str
    value: float
    user_id: Optional[str] = None


MetricListener = Callable[[MetricEvent], None]


def assign_variant(
    variants: Sequence[ABTestVariant],
    traffic_split: Sequence[float],
    user_id: str
) -> str:
    """Pick a variant for a user by walking the cumulative traffic split.

    If the split does not cover the user's bucket (e.g. it sums to less
    than 100) the first variant is returned.
    """
    bucket = hash_string(user_id) % 100

    cumulative = 0.0
    for variant, share in zip(variants, traffic_split):
        cumulative += share
        if bucket < cumulative:
            return variant.id

    return variants[0].id


def validate_test(test: ABTest) -> None:
    """Check a test definition before it is stored.

    Raises:
        ValueError: If variants are missing or the split is inconsistent
    """
    if not test.variants:
        raise ValueError("A/B test requires at least one variant")
    if len(test.traffic_split) != len(test.variants):
        raise ValueError("traffic_split must have one entry per variant")
    if any(share < 0 for share in test.traffic_split):
        raise ValueError("traffic_split entries cannot be negative")
    if abs(sum(test.traffic_split) - 100) > 1e-9:
        raise ValueError(f"traffic_split must sum to 100, got {sum(test.traffic_split)}")
    if len({v.id for v in test.variants}) != len(test.variants):
        raise ValueError("variant ids must be unique")
    if test.end_date is not None and test.end_date < test.start_date:
        raise ValueError("end_date must not be before start_date")


class ABTestAssignor:
    """Resolves and persists variant assignments."""

    def __init__(
        self,
        repository: ABTestRepository,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self._clock = clock
        self._listeners: List[MetricListener] = []

    def get_variant(
        self,
        test_id: str,
        user_id: str,
        organization_id: Optional[str] = None
    ) -> Optional[str]:
        """Variant id for the user, or None if the test is not running.

        No assignment is created when None is returned.
        """
        existing = self.repository.get_assignment(user_id, test_id)
        if existing is not None:
            return existing.variant_id

        test = self.repository.get_test(test_id)
        if test is None or not test.is_running(self._clock()):
            return None

        variant_id = assign_variant(test.variants, test.traffic_split, user_id)
        stored = self.repository.insert_assignment(ABTestAssignment(
            user_id=user_id,
            organization_id=organization_id,
            test_id=test_id,
            variant_id=variant_id,
            assigned_at=self._clock()
        ))

        logger.info(
            "AB test variant assigned",
            extra={"test_id": test_id, "user_id": user_id, "variant_id": stored.variant_id}
        )
        return stored.variant_id

    def create_test(self, test: ABTest) -> ABTest:
        """Validate and store a new test definition."""
        validate_test(test)
        self.repository.save_test(test)
        logger.info("AB test created: %s", test.name)
        return test

    def get_active_tests(self) -> List[ABTest]:
        """Tests that are active and inside their date window now."""
        now = self._clock()
        return [test for test in self.repository.list_active() if test.is_running(now)]

    def add_metric_listener(self, listener: MetricListener) -> None:
        self._listeners.append(listener)

    def track_metric(
        self,
        test_id: str,
        variant_id: str,
        metric: str,
        value: float,
        user_id: Optional[str] = None
    ) -> MetricEvent:
        """Emit a metric observation to the log and registered listeners.

        Metrics are not stored here; listeners own persistence.
        """
        event = MetricEvent(
            test_id=test_id,
            variant_id=variant_id,
            metric=metric,
            value=value,
            user_id=user_id
        )
        logger.info(
            "AB test metric tracked",
            extra={
                "test_id": test_id,
                "variant_id": variant_id,
                "metric": metric,
                "value": value,
                "user_id": user_id,
            }
        )
        for listener in self._listeners:
            listener(event)
        return event
