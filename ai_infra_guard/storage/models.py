"""
Data models for storage layer.

Defines the records persisted by the repositories and the aggregates
returned by reporting queries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CostTrackingRecord:
    """Immutable record of a completed AI call and its estimated cost.

    Append-only rows that form an auditable ledger of AI spend.
    Once written, these records must never be modified.
    """
    provider: str
    model: str
    feature: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    timestamp: datetime = field(default_factory=datetime.now)
    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    def __post_init__(self):
        """Validate token counts and cost are non-negative."""
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")
        if self.total_tokens < 0:
            raise ValueError("total_tokens cannot be negative")
        if self.estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")


@dataclass(frozen=True)
class UsageAnalyticsRecord:
    """One attempted AI call, successful or not."""
    feature: str
    provider: str
    model: str
    success: bool
    tokens_used: int = 0
    cost: float = 0.0
    response_time_ms: Optional[float] = None
    error_code: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    request_count: int = 1
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class UsageAnalytics:
    """Aggregated usage for one (feature, provider, model) group."""
    feature: str
    provider: str
    model: str
    request_count: int
    success_count: int
    failure_count: int
    average_response_time: float
    total_cost: float
    total_tokens: int
    period_start: datetime
    period_end: datetime


@dataclass(frozen=True)
class CostBreakdown:
    """Cost and token totals for one grouping key."""
    cost: float
    tokens: int


@dataclass(frozen=True)
class CostSummary:
    """Organization cost totals with provider and feature breakdowns."""
    total_cost: float
    total_tokens: int
    by_provider: Dict[str, CostBreakdown]
    by_feature: Dict[str, CostBreakdown]


@dataclass(frozen=True)
class FeatureFlag:
    """Boolean gate with targeting lists and percentage rollout."""
    name: str
    enabled: bool = False
    description: Optional[str] = None
    target_users: List[str] = field(default_factory=list)
    target_organizations: List[str] = field(default_factory=list)
    rollout_percentage: Optional[int] = None
    conditions: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        """Validate flag name and rollout bounds."""
        if not self.name or not self.name.strip():
            raise ValueError("name is required and cannot be empty")
        if self.rollout_percentage is not None and not 0 <= self.rollout_percentage <= 100:
            raise ValueError("rollout_percentage must be between 0 and 100")


@dataclass(frozen=True)
class ABTestVariant:
    """A single arm of an A/B test."""
    id: str
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ABTest:
    """A/B test definition.

    ``traffic_split`` is parallel to ``variants`` and holds the percentage
    of traffic routed to each variant.
    """
    id: str
    name: str
    variants: List[ABTestVariant]
    traffic_split: List[float]
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    metrics: List[str] = field(default_factory=list)
    description: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def is_running(self, now: datetime) -> bool:
        """Whether the test accepts new assignments at ``now``."""
        if not self.is_active:
            return False
        if self.start_date > now:
            return False
        return self.end_date is None or self.end_date >= now


@dataclass(frozen=True)
class ABTestAssignment:
    """Sticky (user, test) → variant assignment."""
    user_id: str
    organization_id: Optional[str]
    test_id: str
    variant_id: str
    assigned_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class APIKeyRecord:
    """Stored provider credential. Only the hash of the key is kept."""
    id: str
    organization_id: str
    provider: str
    key_hash: str
    key_prefix: str
    name: str
    is_active: bool = True
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
