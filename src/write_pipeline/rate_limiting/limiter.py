"""
Adaptive rate limiter.

Admits or rejects an inbound operation before any other work happens. Budgets
depend on the caller's role, the endpoint class and the reported system load.
When the counter store is unavailable the limiter fails open: the request is
allowed and the fault is logged.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError

from write_pipeline.config import Settings
from write_pipeline.error_handling import raise_invalid_configuration
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.metrics import get_metrics
from write_pipeline.protocols import (
    CounterStoreProtocol,
    CounterStoreUnavailableError,
    escape_glob,
)
from write_pipeline.rate_limiting.budget import (
    RoleTiers,
    effective_burst_capacity,
    effective_limit,
)
from write_pipeline.rate_limiting.models import (
    CallerIdentity,
    CounterSnapshot,
    EndpointRateLimitConfig,
    EndpointRateLimitUpdate,
    RateLimitDecision,
    RateLimitStatistics,
    RateLimitStrategy,
)
from write_pipeline.rate_limiting.strategies import RateLimitAlgorithm, build_algorithm

logger = create_service_logger("write_pipeline.rate_limiter")

SERVICE_NAME = "write_pipeline"
SYSTEM_LOAD_CONTEXT_KEY = "system_load"


def parse_endpoint_configs(
    raw_configs: Mapping[str, Mapping[str, Any]],
    correlation_id: UUID | None = None,
) -> dict[str, EndpointRateLimitConfig]:
    """Validate a raw endpoint-class table; unknown strategies fail here, not at request time."""
    configs: dict[str, EndpointRateLimitConfig] = {}
    for endpoint_class, raw in raw_configs.items():
        try:
            configs[endpoint_class] = EndpointRateLimitConfig.model_validate(dict(raw))
        except ValidationError as e:
            first_error = e.errors()[0]
            field = ".".join(str(part) for part in first_error.get("loc", ()))
            raise_invalid_configuration(
                service=SERVICE_NAME,
                operation="load_rate_limit_config",
                config_key=f"{endpoint_class}.{field}" if field else endpoint_class,
                message=f"Invalid rate limit config for '{endpoint_class}': {first_error['msg']}",
                correlation_id=correlation_id or uuid4(),
            )
    return configs


class RateLimiter:
    """Per endpoint-class rate limiter over an injected counter store."""

    def __init__(
        self,
        store: CounterStoreProtocol,
        endpoint_configs: Mapping[str, EndpointRateLimitConfig],
        role_tiers: RoleTiers,
        *,
        key_prefix: str = "rate_limit",
        default_endpoint_class: str = "api",
        token_bucket_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if default_endpoint_class not in endpoint_configs:
            raise ValueError(f"Default endpoint class '{default_endpoint_class}' is not configured")

        self.store = store
        self.role_tiers = role_tiers
        self.key_prefix = key_prefix
        self.default_endpoint_class = default_endpoint_class
        self._token_bucket_attempts = token_bucket_attempts
        self._clock = clock
        self._configs: dict[str, EndpointRateLimitConfig] = {}
        self._algorithms: dict[str, RateLimitAlgorithm] = {}
        for endpoint_class, config in endpoint_configs.items():
            self._install(endpoint_class, config)

        self._by_endpoint: dict[str, CounterSnapshot] = defaultdict(CounterSnapshot)
        self._by_strategy: dict[str, CounterSnapshot] = defaultdict(CounterSnapshot)

    @classmethod
    def from_settings(cls, store: CounterStoreProtocol, settings: Settings) -> RateLimiter:
        try:
            role_tiers = RoleTiers(settings.RATE_LIMIT_ROLE_MULTIPLIERS)
        except ValueError as e:
            raise_invalid_configuration(
                service=SERVICE_NAME,
                operation="load_rate_limit_config",
                config_key="RATE_LIMIT_ROLE_MULTIPLIERS",
                message=str(e),
                correlation_id=uuid4(),
            )
        return cls(
            store,
            parse_endpoint_configs(settings.RATE_LIMIT_ENDPOINT_CLASSES),
            role_tiers,
            key_prefix=settings.RATE_LIMIT_KEY_PREFIX,
            default_endpoint_class=settings.RATE_LIMIT_DEFAULT_ENDPOINT_CLASS,
            token_bucket_attempts=settings.RATE_LIMIT_TOKEN_BUCKET_CAS_ATTEMPTS,
        )

    def _install(self, endpoint_class: str, config: EndpointRateLimitConfig) -> None:
        self._configs[endpoint_class] = config
        self._algorithms[endpoint_class] = build_algorithm(
            config.strategy, self.store, self._token_bucket_attempts
        )

    def _resolve_endpoint_class(self, endpoint_class: str) -> str:
        if endpoint_class in self._configs:
            return endpoint_class
        logger.debug(
            "Unknown endpoint class, using default",
            extra={"endpoint_class": endpoint_class, "default": self.default_endpoint_class},
        )
        return self.default_endpoint_class

    def counter_key(self, endpoint_class: str, identity: CallerIdentity) -> str:
        return f"{self.key_prefix}:{endpoint_class}:{identity.key}"

    async def check(
        self,
        identity: CallerIdentity,
        endpoint_class: str,
        context: Mapping[str, Any] | None = None,
    ) -> RateLimitDecision:
        """
        Count one request and decide whether it is admitted.

        Args:
            identity: Caller (user with role, or anonymous IP)
            endpoint_class: Named endpoint class, e.g. "api", "auth", "upload"
            context: Optional context; ``system_load`` in [0, 1] lowers the budget

        Returns:
            RateLimitDecision with limit, remaining budget and retry-after seconds
        """
        endpoint_class = self._resolve_endpoint_class(endpoint_class)
        config = self._configs[endpoint_class]
        algorithm = self._algorithms[endpoint_class]
        system_load = (context or {}).get(SYSTEM_LOAD_CONTEXT_KEY)
        role_multiplier = self.role_tiers.multiplier_for(identity.role)

        limit = effective_limit(config, role_multiplier, system_load)
        capacity = effective_burst_capacity(config, role_multiplier, system_load)

        try:
            outcome = await algorithm.hit(
                self.counter_key(endpoint_class, identity),
                limit,
                config.window_size_seconds,
                capacity,
                self._clock(),
            )
        except CounterStoreUnavailableError as e:
            logger.warning(
                "Counter store unavailable, rate limiter failing open",
                extra={
                    "endpoint_class": endpoint_class,
                    "identity": identity.key,
                    "error": str(e),
                },
            )
            self._record(endpoint_class, config, "fail_open")
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit,
                endpoint_class=endpoint_class,
                strategy=config.strategy,
                fail_open=True,
            )

        if not outcome.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={
                    "endpoint_class": endpoint_class,
                    "identity": identity.key,
                    "role": identity.role,
                    "limit": limit,
                    "retry_after": outcome.retry_after,
                },
            )

        self._record(endpoint_class, config, "allowed" if outcome.allowed else "rejected")
        return RateLimitDecision(
            allowed=outcome.allowed,
            limit=capacity if config.strategy is RateLimitStrategy.TOKEN_BUCKET else limit,
            remaining=outcome.remaining,
            retry_after=outcome.retry_after,
            endpoint_class=endpoint_class,
            strategy=config.strategy,
        )

    def _record(self, endpoint_class: str, config: EndpointRateLimitConfig, outcome: str) -> None:
        for snapshot in (
            self._by_endpoint[endpoint_class],
            self._by_strategy[config.strategy.value],
        ):
            setattr(snapshot, outcome, getattr(snapshot, outcome) + 1)
        get_metrics()["rate_limit_decisions"].labels(
            endpoint_class=endpoint_class,
            strategy=config.strategy.value,
            outcome=outcome,
        ).inc()

    # Management operations

    def get_config(self, endpoint_class: str) -> EndpointRateLimitConfig | None:
        return self._configs.get(endpoint_class)

    def list_configs(self) -> dict[str, EndpointRateLimitConfig]:
        return dict(self._configs)

    def update_config(
        self,
        endpoint_class: str,
        update: EndpointRateLimitUpdate | Mapping[str, Any],
        correlation_id: UUID | None = None,
    ) -> EndpointRateLimitConfig:
        """
        Validate and apply a (partial) config for an endpoint class.

        A new endpoint class needs at least ``strategy`` and ``requests_per_minute``.
        """
        correlation_id = correlation_id or uuid4()
        if isinstance(update, EndpointRateLimitUpdate):
            changes = update.model_dump(exclude_unset=True)
        else:
            changes = dict(update)

        existing = self._configs.get(endpoint_class)
        merged = {**(existing.model_dump() if existing else {}), **changes}
        new_config = parse_endpoint_configs({endpoint_class: merged}, correlation_id)[
            endpoint_class
        ]

        self._install(endpoint_class, new_config)
        logger.info(
            "Rate limit config updated",
            extra={
                "endpoint_class": endpoint_class,
                "strategy": new_config.strategy.value,
                "requests_per_minute": new_config.requests_per_minute,
                "window_size_seconds": new_config.window_size_seconds,
                "correlation_id": str(correlation_id),
            },
        )
        return new_config

    async def clear_identity(self, identity_key: str, endpoint_class: str | None = None) -> int:
        """
        Administrative override: drop all counter state for one identity.

        Args:
            identity_key: ``user:<id>`` or ``ip:<address>``
            endpoint_class: Limit the reset to one class; all classes when None

        Returns:
            Number of counter keys deleted
        """
        class_pattern = escape_glob(endpoint_class) if endpoint_class is not None else "*"
        keys = await self.store.scan_pattern(
            f"{escape_glob(self.key_prefix)}:{class_pattern}:{escape_glob(identity_key)}:*"
        )
        deleted = 0
        for key in keys:
            deleted += await self.store.delete_key(key)

        logger.info(
            "Cleared rate limit state",
            extra={
                "identity": identity_key,
                "endpoint_class": endpoint_class,
                "deleted_keys": deleted,
            },
        )
        return deleted

    async def get_statistics(self) -> RateLimitStatistics:
        active_identities: int | None
        try:
            keys = await self.store.scan_pattern(f"{escape_glob(self.key_prefix)}:*")
            active_identities = len(
                {":".join(key.split(":")[2:4]) for key in keys if key.count(":") >= 4}
            )
        except CounterStoreUnavailableError:
            active_identities = None

        by_endpoint = {name: snap.model_copy() for name, snap in self._by_endpoint.items()}
        by_strategy = {name: snap.model_copy() for name, snap in self._by_strategy.items()}
        return RateLimitStatistics(
            total_checks=sum(snap.total for snap in by_endpoint.values()),
            by_endpoint_class=by_endpoint,
            by_strategy=by_strategy,
            configured_strategies={
                name: config.strategy for name, config in self._configs.items()
            },
            active_identities=active_identities,
        )
