"""
Effective budget computation.

budget = base_rpm x role multiplier x endpoint multiplier x load factor,
scaled to the configured window. The result is non-increasing in system load
and non-decreasing in role tier.
"""

from __future__ import annotations

import math

from write_pipeline.rate_limiting.models import EndpointRateLimitConfig

# Below this load the full budget applies
LOAD_THRESHOLD = 0.5
# Budget fraction left at 100% load
MIN_LOAD_FACTOR = 0.25


class RoleTiers:
    """
    Role multipliers ordered from the lowest to the highest tier.

    Unknown roles get the lowest tier's multiplier.
    """

    def __init__(self, multipliers: dict[str, float]) -> None:
        if not multipliers:
            raise ValueError("At least one role multiplier is required")

        previous: float | None = None
        for role, multiplier in multipliers.items():
            if multiplier <= 0:
                raise ValueError(f"Role multiplier for '{role}' must be positive")
            if previous is not None and multiplier < previous:
                raise ValueError(
                    f"Role multipliers must be non-decreasing by tier; '{role}' "
                    f"({multiplier}) is below the previous tier ({previous})"
                )
            previous = multiplier

        self._multipliers = dict(multipliers)
        self._lowest = next(iter(self._multipliers.values()))

    def multiplier_for(self, role: str | None) -> float:
        if role is None:
            return self._lowest
        return self._multipliers.get(role, self._lowest)


def load_factor(system_load: float | None) -> float:
    """Map a load reading in [0, 1] to a budget factor in [MIN_LOAD_FACTOR, 1]."""
    if system_load is None:
        return 1.0
    load = min(max(system_load, 0.0), 1.0)
    if load <= LOAD_THRESHOLD:
        return 1.0
    overload = (load - LOAD_THRESHOLD) / (1.0 - LOAD_THRESHOLD)
    return 1.0 - overload * (1.0 - MIN_LOAD_FACTOR)


def effective_limit(
    config: EndpointRateLimitConfig,
    role_multiplier: float,
    system_load: float | None = None,
) -> int:
    """Requests admitted per window for one caller; never below 1."""
    per_minute = (
        config.requests_per_minute * role_multiplier * config.multiplier * load_factor(system_load)
    )
    return max(1, math.floor(per_minute * config.window_size_seconds / 60))


def effective_burst_capacity(
    config: EndpointRateLimitConfig,
    role_multiplier: float,
    system_load: float | None = None,
) -> int:
    """Token bucket capacity, scaled by the same factors as the budget."""
    limit = effective_limit(config, role_multiplier, system_load)
    if config.burst_capacity is None:
        return limit
    scaled = math.floor(
        config.burst_capacity * role_multiplier * config.multiplier * load_factor(system_load)
    )
    return max(1, scaled)
