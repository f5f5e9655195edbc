"""Unit tests for effective budget computation and role tier ordering."""

from __future__ import annotations

import pytest

from write_pipeline.config import _default_endpoint_classes, _default_role_multipliers
from write_pipeline.rate_limiting import (
    EndpointRateLimitConfig,
    RateLimitStrategy,
    RoleTiers,
    effective_limit,
    load_factor,
)
from write_pipeline.rate_limiting.budget import effective_burst_capacity


@pytest.fixture
def api_config() -> EndpointRateLimitConfig:
    return EndpointRateLimitConfig(
        strategy=RateLimitStrategy.SLIDING_WINDOW, requests_per_minute=100
    )


@pytest.fixture
def role_tiers() -> RoleTiers:
    return RoleTiers(_default_role_multipliers())


class TestLoadFactor:
    @pytest.mark.parametrize(
        "load, expected",
        [(None, 1.0), (0.0, 1.0), (0.5, 1.0), (0.75, 0.625), (1.0, 0.25), (1.7, 0.25), (-1, 1.0)],
    )
    def test_load_factor_curve(self, load: float | None, expected: float) -> None:
        assert load_factor(load) == pytest.approx(expected)


class TestEffectiveLimit:
    def test_base_budget(self, api_config: EndpointRateLimitConfig) -> None:
        assert effective_limit(api_config, 1.0) == 100

    def test_multipliers_compose(self) -> None:
        config = EndpointRateLimitConfig(
            strategy=RateLimitStrategy.FIXED_WINDOW, requests_per_minute=10, multiplier=1.5
        )
        # 10 x 2.0 (admin) x 1.5 x 0.625 (load 0.75) = 18.75
        assert effective_limit(config, 2.0, 0.75) == 18

    def test_never_below_one(self) -> None:
        config = EndpointRateLimitConfig(
            strategy=RateLimitStrategy.FIXED_WINDOW, requests_per_minute=1
        )
        assert effective_limit(config, 0.5, 1.0) == 1

    def test_scaled_to_window(self) -> None:
        config = EndpointRateLimitConfig(
            strategy=RateLimitStrategy.FIXED_WINDOW,
            requests_per_minute=60,
            window_size_seconds=10,
        )
        assert effective_limit(config, 1.0) == 10

    def test_burst_capacity_scales(self) -> None:
        config = EndpointRateLimitConfig(
            strategy=RateLimitStrategy.TOKEN_BUCKET, requests_per_minute=10, burst_capacity=15
        )
        assert effective_burst_capacity(config, 1.0) == 15
        assert effective_burst_capacity(config, 2.0) == 30
        assert effective_burst_capacity(config, 1.0, 1.0) == 3

    def test_burst_capacity_defaults_to_limit(self, api_config: EndpointRateLimitConfig) -> None:
        assert effective_burst_capacity(api_config, 1.0) == effective_limit(api_config, 1.0)


class TestMonotonicity:
    """Budget is non-decreasing in role tier and non-increasing in load."""

    @pytest.mark.parametrize("endpoint_class", list(_default_endpoint_classes()))
    @pytest.mark.parametrize("load", [None, 0.3, 0.6, 0.9, 1.0])
    def test_higher_tier_never_gets_less(
        self, role_tiers: RoleTiers, endpoint_class: str, load: float | None
    ) -> None:
        config = EndpointRateLimitConfig.model_validate(_default_endpoint_classes()[endpoint_class])
        budgets = [
            effective_limit(config, role_tiers.multiplier_for(role), load)
            for role in _default_role_multipliers()
        ]
        assert budgets == sorted(budgets)

    @pytest.mark.parametrize("endpoint_class", list(_default_endpoint_classes()))
    @pytest.mark.parametrize("role", list(_default_role_multipliers()))
    def test_more_load_never_gets_more(
        self, role_tiers: RoleTiers, endpoint_class: str, role: str
    ) -> None:
        config = EndpointRateLimitConfig.model_validate(_default_endpoint_classes()[endpoint_class])
        loads = [i / 20 for i in range(21)]
        budgets = [effective_limit(config, role_tiers.multiplier_for(role), load) for load in loads]
        assert budgets == sorted(budgets, reverse=True)


class TestRoleTiers:
    def test_unknown_role_gets_lowest_tier(self, role_tiers: RoleTiers) -> None:
        assert role_tiers.multiplier_for("intruder") == role_tiers.multiplier_for("anonymous")
        assert role_tiers.multiplier_for(None) == 0.5

    def test_decreasing_multipliers_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-decreasing"):
            RoleTiers({"anonymous": 1.0, "admin": 0.5})

    def test_non_positive_multiplier_rejected(self) -> None:
        with pytest.raises(ValueError, match="positive"):
            RoleTiers({"anonymous": 0.0})

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            RoleTiers({})
