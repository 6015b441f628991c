"""
Configuration management and loading.

Reads rate limits, fallback strategies, pricing overrides and cache
settings from a YAML file. Validation is strict: unknown keys and
out-of-range values are rejected rather than silently ignored.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Set

import yaml

from ai_infra_guard.core.errors import ConfigurationError
from ai_infra_guard.core.fallback import FallbackConditions, FallbackStrategy
from ai_infra_guard.core.feature_flags import DEFAULT_CACHE_TTL_SECONDS
from ai_infra_guard.core.pricing import ModelPricing
from ai_infra_guard.core.rate_limiter import RateLimitConfig
from ai_infra_guard.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class InfraConfig:
    """Complete infrastructure configuration."""
    db_path: str = DEFAULT_DB_PATH
    rate_limits: Dict[str, RateLimitConfig] = field(default_factory=dict)
    fallback_strategies: Dict[str, FallbackStrategy] = field(default_factory=dict)
    pricing: Dict[str, Dict[str, ModelPricing]] = field(default_factory=dict)
    feature_flag_cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS

    def __post_init__(self):
        """Validate cache TTL is positive."""
        if self.feature_flag_cache_ttl_seconds <= 0:
            raise ConfigurationError("feature_flag_cache_ttl_seconds must be > 0")


def _check_keys(data: Dict, allowed: Set[str], path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown}")


def _require_dict(value: Any, path: str) -> Dict:
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{path}' must be a dictionary")
    return value


def load_infra_config(path: str) -> InfraConfig:
    """Load and validate infrastructure configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated InfraConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    raw_config = _require_dict(raw_config, "root")

    _check_keys(
        raw_config,
        {'database', 'rate_limits', 'fallback_strategies', 'pricing', 'feature_flags'},
        "root"
    )

    db_path = DEFAULT_DB_PATH
    if 'database' in raw_config:
        database = _require_dict(raw_config['database'], "database")
        _check_keys(database, {'path'}, "database")
        if 'path' in database:
            if not isinstance(database['path'], str) or not database['path'].strip():
                raise ConfigurationError("'database.path' must be a non-empty string")
            db_path = database['path']

    rate_limits = {
        provider.lower(): _parse_rate_limit(data, f"rate_limits.{provider}")
        for provider, data in _require_dict(raw_config.get('rate_limits', {}), "rate_limits").items()
    }

    strategies = {
        feature: _parse_fallback_strategy(data, f"fallback_strategies.{feature}")
        for feature, data in _require_dict(
            raw_config.get('fallback_strategies', {}), "fallback_strategies"
        ).items()
    }

    pricing: Dict[str, Dict[str, ModelPricing]] = {}
    for provider, models in _require_dict(raw_config.get('pricing', {}), "pricing").items():
        models = _require_dict(models, f"pricing.{provider}")
        pricing[provider.lower()] = {
            model: _parse_pricing(data, f"pricing.{provider}.{model}")
            for model, data in models.items()
        }

    ttl = DEFAULT_CACHE_TTL_SECONDS
    if 'feature_flags' in raw_config:
        flags = _require_dict(raw_config['feature_flags'], "feature_flags")
        _check_keys(flags, {'cache_ttl_seconds'}, "feature_flags")
        if 'cache_ttl_seconds' in flags:
            ttl = flags['cache_ttl_seconds']
            if not isinstance(ttl, (int, float)) or isinstance(ttl, bool) or ttl <= 0:
                raise ConfigurationError("'feature_flags.cache_ttl_seconds' must be > 0")

    return InfraConfig(
        db_path=db_path,
        rate_limits=rate_limits,
        fallback_strategies=strategies,
        pricing=pricing,
        feature_flag_cache_ttl_seconds=float(ttl)
    )


def _parse_rate_limit(data: Any, path: str) -> RateLimitConfig:
    """Parse and validate one provider rate limit.

    Raises:
        ConfigurationError: If the rate limit is invalid
    """
    data = _require_dict(data, path)
    _check_keys(data, {'max_requests', 'window_ms', 'strategy'}, path)
    for key in ('max_requests', 'window_ms'):
        if key not in data:
            raise ConfigurationError(f"Missing required '{key}' in {path}")
        if not isinstance(data[key], int) or isinstance(data[key], bool):
            raise ConfigurationError(f"'{key}' in {path} must be an integer")
    strategy = data.get('strategy', 'fixed')
    if not isinstance(strategy, str):
        raise ConfigurationError(f"'strategy' in {path} must be a string")
    try:
        return RateLimitConfig(data['max_requests'], data['window_ms'], strategy)
    except ConfigurationError as e:
        raise ConfigurationError(f"{path}: {e}")


def _parse_fallback_strategy(data: Any, path: str) -> FallbackStrategy:
    """Parse and validate one fallback strategy.

    Raises:
        ConfigurationError: If the strategy is invalid
    """
    data = _require_dict(data, path)
    _check_keys(data, {'primary', 'fallbacks', 'conditions'}, path)

    if 'primary' not in data or not isinstance(data['primary'], str):
        raise ConfigurationError(f"Missing required 'primary' provider in {path}")

    fallbacks = data.get('fallbacks', [])
    if not isinstance(fallbacks, list) or not all(isinstance(f, str) for f in fallbacks):
        raise ConfigurationError(f"'fallbacks' in {path} must be a list of provider names")

    conditions_data = _require_dict(data.get('conditions', {}), f"{path}.conditions")
    _check_keys(conditions_data, {'error_codes', 'max_retries', 'timeout_ms'}, f"{path}.conditions")

    error_codes = conditions_data.get('error_codes', [])
    if not isinstance(error_codes, list) or not all(isinstance(c, str) for c in error_codes):
        raise ConfigurationError(f"'error_codes' in {path}.conditions must be a list of strings")

    max_retries = conditions_data.get('max_retries')
    if max_retries is not None and (not isinstance(max_retries, int) or isinstance(max_retries, bool)):
        raise ConfigurationError(f"'max_retries' in {path}.conditions must be an integer")

    timeout_ms = conditions_data.get('timeout_ms', 30_000)
    if not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool):
        raise ConfigurationError(f"'timeout_ms' in {path}.conditions must be an integer")

    try:
        return FallbackStrategy(
            primary=data['primary'],
            fallbacks=list(fallbacks),
            conditions=FallbackConditions(
                error_codes=list(error_codes),
                max_retries=max_retries,
                timeout_ms=timeout_ms
            )
        )
    except ConfigurationError as e:
        raise ConfigurationError(f"{path}: {e}")


def _parse_pricing(data: Any, path: str) -> ModelPricing:
    """Parse ``{input: ..., output: ...}`` prices per 1M tokens.

    Raises:
        ConfigurationError: If a price is missing, non-numeric or negative
    """
    data = _require_dict(data, path)
    _check_keys(data, {'input', 'output'}, path)
    prices = {}
    for key in ('input', 'output'):
        if key not in data:
            raise ConfigurationError(f"Missing required '{key}' price in {path}")
        try:
            prices[key] = Decimal(str(data[key]))
        except InvalidOperation:
            raise ConfigurationError(f"'{key}' in {path} must be a number")
        if not prices[key].is_finite():
            raise ConfigurationError(f"'{key}' in {path} must be a finite number")
        if prices[key] < 0:
            raise ConfigurationError(f"'{key}' in {path} cannot be negative")
    return ModelPricing(input_cost_per_1m=prices['input'], output_cost_per_1m=prices['output'])
