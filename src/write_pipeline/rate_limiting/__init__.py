"""Adaptive rate limiting with sliding window, token bucket and fixed window strategies."""

from write_pipeline.rate_limiting.budget import RoleTiers, effective_limit, load_factor
from write_pipeline.rate_limiting.limiter import RateLimiter, parse_endpoint_configs
from write_pipeline.rate_limiting.models import (
    CallerIdentity,
    EndpointRateLimitConfig,
    EndpointRateLimitUpdate,
    RateLimitDecision,
    RateLimitStatistics,
    RateLimitStrategy,
)

__all__ = [
    "CallerIdentity",
    "EndpointRateLimitConfig",
    "EndpointRateLimitUpdate",
    "RateLimitDecision",
    "RateLimitStatistics",
    "RateLimitStrategy",
    "RateLimiter",
    "RoleTiers",
    "effective_limit",
    "load_factor",
    "parse_endpoint_configs",
]
