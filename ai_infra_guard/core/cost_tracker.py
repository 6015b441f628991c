"""
Cost and usage tracking.

Records per-call cost estimates and usage analytics, and reports
aggregates per organization, provider and feature.

Tracking never fails the AI request it describes: persistence errors are
logged at this boundary and swallowed.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from ai_infra_guard.storage.models import (
    CostBreakdown,
    CostSummary,
    CostTrackingRecord,
    UsageAnalytics,
    UsageAnalyticsRecord,
)
from ai_infra_guard.storage.repository import CostTrackingRepository

logger = logging.getLogger(__name__)


class CostTracker:
    """Cost estimation, ledger writes and cost/usage reporting."""

    def __init__(
        self,
        repository: CostTrackingRepository,
        pricing: PricingTable = PRICING_TABLE
    ):
        self.repository = repository
        self.pricing = pricing

    def calculate_cost(
        self,
        provider: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int
    ) -> float:
        """Estimated USD cost for a call; 0.0 for unknown providers."""
        return calculate_cost(provider, model, prompt_tokens, completion_tokens, self.pricing)

    def track_cost(
        self,
        record: CostTrackingRecord,
        response_time_ms: Optional[float] = None
    ) -> bool:
        """Persist a cost record and a matching successful usage row.

        Args:
            record: Completed call to record
            response_time_ms: Wall time of the call, stored on the usage row

        Returns:
            True if the cost record was written, False if it was dropped
        """
        try:
            self.repository.insert_cost_record(record)
        except Exception:
            logger.exception(
                "Failed to track cost",
                extra={"provider": record.provider, "feature": record.feature}
            )
            return False

        self.track_usage(UsageAnalyticsRecord(
            feature=record.feature,
            provider=record.provider,
            model=record.model,
            success=True,
            tokens_used=record.total_tokens,
            cost=record.estimated_cost,
            response_time_ms=response_time_ms,
            user_id=record.user_id,
            organization_id=record.organization_id,
            timestamp=record.timestamp
        ))
        return True

    def track_usage(self, record: UsageAnalyticsRecord) -> bool:
        """Persist a usage analytics row.

        Returns:
            True if written, False if the write failed and was logged
        """
        try:
            self.repository.insert_usage_record(record)
            return True
        except Exception:
            logger.exception(
                "Failed to track usage",
                extra={"provider": record.provider, "feature": record.feature}
            )
            return False

    def get_cost_summary(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> CostSummary:
        """Sum cost and tokens for an organization.

        Args:
            organization_id: Organization to report on
            start_date: Optional inclusive lower bound
            end_date: Optional inclusive upper bound

        Returns:
            CostSummary with grand totals and per-provider/per-feature totals
        """
        records = self.repository.fetch_cost_records(organization_id, start_date, end_date)

        total_cost = 0.0
        total_tokens = 0
        by_provider: Dict[str, List[float]] = {}
        by_feature: Dict[str, List[float]] = {}

        for record in records:
            total_cost += record.estimated_cost
            total_tokens += record.total_tokens
            for bucket, name in ((by_provider, record.provider), (by_feature, record.feature)):
                totals = bucket.setdefault(name, [0.0, 0])
                totals[0] += record.estimated_cost
                totals[1] += record.total_tokens

        return CostSummary(
            total_cost=total_cost,
            total_tokens=total_tokens,
            by_provider={k: CostBreakdown(cost=v[0], tokens=int(v[1])) for k, v in by_provider.items()},
            by_feature={k: CostBreakdown(cost=v[0], tokens=int(v[1])) for k, v in by_feature.items()}
        )

    def get_usage_analytics(
        self,
        organization_id: Optional[str] = None,
        feature: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[UsageAnalytics]:
        """Usage grouped by (feature, provider, model)."""
        return self.repository.aggregate_usage(organization_id, feature, start_date, end_date)
