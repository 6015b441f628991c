"""
Request admission control.

Implements fixed window, sliding window and token bucket rate limiting
over a pluggable state store.

State is process-local by default: every replica enforces its own limits,
so N instances admit up to N times the configured rate. Inject a shared
RateLimitStore for multi-instance deployments.
"""

import logging
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

STALE_AFTER_MS = 60 * 60 * 1000  # 1 hour
CLEANUP_PROBABILITY = 0.01


class RateLimitStrategy(Enum):
    """Supported rate limiting algorithms."""
    FIXED = "fixed"
    SLIDING = "sliding"
    TOKEN_BUCKET = "token-bucket"


@dataclass(frozen=True)
class RateLimitConfig:
    """Admission budget: ``max_requests`` per ``window_ms``."""
    max_requests: int
    window_ms: int
    strategy: RateLimitStrategy = RateLimitStrategy.FIXED

    def __post_init__(self):
        """Validate limits and normalize the strategy."""
        if isinstance(self.strategy, str):
            try:
                object.__setattr__(self, "strategy", RateLimitStrategy(self.strategy.lower()))
            except ValueError:
                valid = [s.value for s in RateLimitStrategy]
                raise ConfigurationError(f"strategy must be one of: {valid}")
        if not isinstance(self.max_requests, int) or self.max_requests <= 0:
            raise ConfigurationError("max_requests must be a positive integer")
        if not isinstance(self.window_ms, int) or self.window_ms <= 0:
            raise ConfigurationError("window_ms must be a positive integer")


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single admission check."""
    allowed: bool
    remaining: int
    reset_at_ms: int

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000)


@dataclass
class WindowState:
    count: int
    reset_at_ms: int


@dataclass
class TokenBucketState:
    tokens: float
    last_refill_ms: int


@dataclass
class SlidingLogState:
    timestamps: Deque[int] = field(default_factory=deque)


DEFAULT_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "ollama": RateLimitConfig(100, 60_000, RateLimitStrategy.TOKEN_BUCKET),
    "openai": RateLimitConfig(60, 60_000, RateLimitStrategy.FIXED),
    "anthropic": RateLimitConfig(50, 60_000, RateLimitStrategy.FIXED),
}
FALLBACK_RATE_LIMIT = RateLimitConfig(100, 60_000, RateLimitStrategy.FIXED)


class RateLimitStore(ABC):
    """Key-value store holding per-key limiter state."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def items(self) -> Iterable[Tuple[str, Any]]:
        pass


class InMemoryRateLimitStore(RateLimitStore):
    """Dictionary-backed store (per-process)."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterable[Tuple[str, Any]]:
        return list(self._data.items())

    def __len__(self) -> int:
        return len(self._data)


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_rate_limit(value: str) -> RateLimitConfig:
    """Parse ``"max_requests/window_ms[/strategy]"``.

    Raises:
        ConfigurationError: If the value is malformed
    """
    parts = [p.strip() for p in value.split("/")]
    if len(parts) not in (2, 3):
        raise ConfigurationError(
            f"Invalid rate limit '{value}', expected max_requests/window_ms[/strategy]"
        )
    try:
        max_requests = int(parts[0])
        window_ms = int(parts[1])
    except ValueError:
        raise ConfigurationError(f"Invalid rate limit '{value}', limits must be integers")
    strategy = parts[2] if len(parts) == 3 else RateLimitStrategy.FIXED
    return RateLimitConfig(max_requests, window_ms, strategy)


class RateLimiter:
    """Per-key admission control.

    Each check-then-increment runs under a lock, so no admitted request
    exceeds ``max_requests`` within its window even when called from
    several threads.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        overrides: Optional[Mapping[str, RateLimitConfig]] = None,
        clock: Callable[[], int] = _now_ms,
        random_source: Callable[[], float] = random.random,
        environ: Optional[Mapping[str, str]] = None
    ):
        """Initialize the limiter.

        Args:
            store: State store, in-memory by default
            overrides: Per-provider configs taking precedence over defaults
            clock: Returns the current time in epoch milliseconds
            random_source: Uniform [0, 1) source driving the stale sweep
            environ: Environment used for ``RATE_LIMIT_<PROVIDER>`` lookups
        """
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.overrides: Dict[str, RateLimitConfig] = {
            name.lower(): config for name, config in (overrides or {}).items()
        }
        self._clock = clock
        self._random = random_source
        self._environ = environ if environ is not None else os.environ
        self._lock = threading.Lock()

    def check_rate_limit(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Check whether a request for ``key`` is admitted and record it.

        Args:
            key: Admission-control key, e.g. ``user:<id>:<provider>``
            config: Budget to enforce

        Returns:
            RateLimitResult with the decision, remaining budget and reset time
        """
        with self._lock:
            if config.strategy == RateLimitStrategy.SLIDING:
                result = self._check_sliding_window(key, config)
            elif config.strategy == RateLimitStrategy.TOKEN_BUCKET:
                result = self._check_token_bucket(key, config)
            else:
                result = self._check_fixed_window(key, config)
                if self._random() < CLEANUP_PROBABILITY:
                    self._cleanup_locked()

        if not result.allowed:
            logger.debug("Rate limit hit for %s", key, extra={"reset_at_ms": result.reset_at_ms})
        return result

    def _check_fixed_window(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        window_start = (now // config.window_ms) * config.window_ms
        state_key = f"fixed:{key}:{window_start}"

        state = self.store.get(state_key)
        if state is None or state.reset_at_ms < now:
            state = WindowState(count=0, reset_at_ms=window_start + config.window_ms)

        allowed = state.count < config.max_requests
        if allowed:
            state.count += 1
        self.store.set(state_key, state)

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - state.count),
            reset_at_ms=state.reset_at_ms
        )

    def _check_sliding_window(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        state_key = f"sliding:{key}"

        state = self.store.get(state_key)
        if state is None:
            state = SlidingLogState()

        # Drop admissions that have left the window
        horizon = now - config.window_ms
        while state.timestamps and state.timestamps[0] <= horizon:
            state.timestamps.popleft()

        allowed = len(state.timestamps) < config.max_requests
        if allowed:
            state.timestamps.append(now)
        self.store.set(state_key, state)

        reset_at = state.timestamps[0] + config.window_ms if state.timestamps else now + config.window_ms
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - len(state.timestamps)),
            reset_at_ms=reset_at
        )

    def _check_token_bucket(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        state_key = f"bucket:{key}"

        bucket = self.store.get(state_key)
        if bucket is None:
            bucket = TokenBucketState(tokens=float(config.max_requests), last_refill_ms=now)

        elapsed = now - bucket.last_refill_ms
        tokens_to_add = (elapsed * config.max_requests) // config.window_ms
        if tokens_to_add > 0:
            bucket.tokens = min(float(config.max_requests), bucket.tokens + tokens_to_add)
            bucket.last_refill_ms = now

        allowed = bucket.tokens >= 1
        if allowed:
            bucket.tokens -= 1
        self.store.set(state_key, bucket)

        return RateLimitResult(
            allowed=allowed,
            remaining=int(bucket.tokens),
            reset_at_ms=now + config.window_ms
        )

    def cleanup_stale_entries(self) -> int:
        """Delete state untouched for more than an hour.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._cleanup_locked()

    def _cleanup_locked(self) -> int:
        cutoff = self._clock() - STALE_AFTER_MS
        removed = 0
        for state_key, state in self.store.items():
            if isinstance(state, WindowState):
                stale = state.reset_at_ms < cutoff
            elif isinstance(state, TokenBucketState):
                stale = state.last_refill_ms < cutoff
            elif isinstance(state, SlidingLogState):
                stale = not state.timestamps or state.timestamps[-1] < cutoff
            else:
                stale = False
            if stale:
                self.store.delete(state_key)
                removed += 1
        if removed:
            logger.debug("Removed %d stale rate limit entries", removed)
        return removed

    def get_rate_limit_config(self, provider: str) -> RateLimitConfig:
        """Resolve the rate limit for a provider.

        Precedence: ``RATE_LIMIT_<PROVIDER>`` environment variable, then
        configured overrides, then built-in defaults.
        """
        env_value = self._environ.get(f"RATE_LIMIT_{provider.upper()}")
        if env_value:
            return parse_rate_limit(env_value)
        name = provider.lower()
        if name in self.overrides:
            return self.overrides[name]
        return DEFAULT_RATE_LIMITS.get(name, FALLBACK_RATE_LIMIT)
