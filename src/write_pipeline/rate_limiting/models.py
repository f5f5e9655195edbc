"""Data records for the rate limiter."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field


class RateLimitStrategy(str, Enum):
    """Closed set of supported algorithms."""

    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    FIXED_WINDOW = "fixed_window"


class EndpointRateLimitConfig(BaseModel):
    """
    Budget and algorithm for one endpoint class.

    ``requests_per_minute`` is the base budget before role, endpoint and load
    multipliers; it is scaled to ``window_size_seconds`` when counting.
    ``burst_capacity`` only applies to the token bucket and defaults to one
    window's worth of requests.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: RateLimitStrategy
    requests_per_minute: int = Field(gt=0, strict=True)
    window_size_seconds: int = Field(default=60, gt=0, strict=True)
    burst_capacity: int | None = Field(default=None, gt=0, strict=True)
    multiplier: float = Field(default=1.0, gt=0)


class EndpointRateLimitUpdate(BaseModel):
    """Partial update applied on top of an existing EndpointRateLimitConfig."""

    model_config = ConfigDict(extra="forbid")

    strategy: RateLimitStrategy | None = None
    requests_per_minute: int | None = Field(default=None, gt=0, strict=True)
    window_size_seconds: int | None = Field(default=None, gt=0, strict=True)
    burst_capacity: int | None = Field(default=None, gt=0, strict=True)
    multiplier: float | None = Field(default=None, gt=0)


class CallerIdentity(BaseModel):
    """Authenticated user with a role, or an anonymous caller identified by IP."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    role: str = "anonymous"
    ip_address: str | None = None

    @classmethod
    def anonymous(cls, ip_address: str) -> CallerIdentity:
        return cls(user_id=None, role="anonymous", ip_address=ip_address)

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"ip:{self.ip_address or 'unknown'}"


class RateLimitDecision(BaseModel):
    """Result of a single rate-limit check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    endpoint_class: str
    strategy: RateLimitStrategy
    fail_open: bool = False


class CounterSnapshot(BaseModel):
    allowed: int = 0
    rejected: int = 0
    fail_open: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.allowed + self.rejected + self.fail_open


class RateLimitStatistics(BaseModel):
    """Aggregate limiter statistics since process start."""

    total_checks: int
    by_endpoint_class: dict[str, CounterSnapshot]
    by_strategy: dict[str, CounterSnapshot]
    configured_strategies: dict[str, RateLimitStrategy]
    active_identities: int | None = None
