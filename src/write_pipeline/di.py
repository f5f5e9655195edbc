"""Dependency injection configuration for the write pipeline using Dishka."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from dishka import Provider, Scope, provide
from opentelemetry.trace import Tracer
from prometheus_client import REGISTRY, CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from write_pipeline.config import Settings
from write_pipeline.config import settings as app_settings
from write_pipeline.idempotency import IdempotencyGuard
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.memory_store import InMemoryCounterStore
from write_pipeline.outbox import (
    KafkaPublishSink,
    OutboxDispatcher,
    OutboxRelayWorker,
    RecordingPublishSink,
    SQLAlchemyOutboxRepository,
)
from write_pipeline.pipeline import WritePipeline
from write_pipeline.protocols import (
    CounterStoreProtocol,
    OutboxRepositoryProtocol,
    PublishSinkProtocol,
)
from write_pipeline.rate_limiting import RateLimiter
from write_pipeline.redis_client import RedisCounterStore

logger = create_service_logger("write_pipeline.di")


def create_engine(settings: Settings) -> AsyncEngine:
    """Async engine for the outbox ledger; pool options only apply to server databases."""
    from sqlalchemy.ext.asyncio import create_async_engine

    if settings.DATABASE_URL.startswith("sqlite"):
        return create_async_engine(settings.DATABASE_URL, echo=False)
    return create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=settings.DATABASE_POOL_PRE_PING,
    )


class CoreInfrastructureProvider(Provider):
    """Provider for core infrastructure dependencies (settings, metrics, tracing)."""

    @provide(scope=Scope.APP)
    def provide_settings(self) -> Settings:
        """Provide service settings."""
        return app_settings

    @provide(scope=Scope.APP)
    def provide_metrics_registry(self) -> CollectorRegistry:
        """Provide Prometheus metrics registry."""
        return REGISTRY

    @provide(scope=Scope.APP)
    def provide_tracer(self) -> Tracer:
        """Provide OpenTelemetry tracer."""
        from opentelemetry import trace

        return trace.get_tracer("write_pipeline")


class StorageProvider(Provider):
    """Counter store and outbox database."""

    @provide(scope=Scope.APP)
    async def provide_counter_store(
        self, settings: Settings
    ) -> AsyncGenerator[CounterStoreProtocol, None]:
        """Provide the shared counter store with cleanup."""
        if settings.USE_IN_MEMORY_STORE:
            logger.warning("Using in-memory counter store; counters are process-local")
            yield InMemoryCounterStore()
            return

        redis_store = RedisCounterStore(
            client_id=f"{settings.SERVICE_NAME}-redis", redis_url=settings.REDIS_URL
        )
        await redis_store.start()
        try:
            yield redis_store
        finally:
            await redis_store.stop()

    @provide(scope=Scope.APP)
    async def provide_database_engine(
        self, settings: Settings
    ) -> AsyncGenerator[AsyncEngine, None]:
        engine = create_engine(settings)
        try:
            yield engine
        finally:
            await engine.dispose()

    @provide(scope=Scope.APP)
    def provide_session_factory(self, engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
        """Provide async session factory for business transactions."""
        return async_sessionmaker(engine, expire_on_commit=False)

    @provide(scope=Scope.APP)
    def provide_outbox_repository(self, engine: AsyncEngine) -> OutboxRepositoryProtocol:
        return SQLAlchemyOutboxRepository(engine)


class WritePipelineProvider(Provider):
    """Rate limiter, idempotency guard, outbox dispatcher and the write pipeline."""

    @provide(scope=Scope.APP)
    def provide_rate_limiter(self, store: CounterStoreProtocol, settings: Settings) -> RateLimiter:
        return RateLimiter.from_settings(store, settings)

    @provide(scope=Scope.APP)
    def provide_idempotency_guard(
        self, store: CounterStoreProtocol, settings: Settings
    ) -> IdempotencyGuard:
        return IdempotencyGuard.from_settings(store, settings)

    @provide(scope=Scope.APP)
    async def provide_publish_sink(
        self, settings: Settings
    ) -> AsyncGenerator[PublishSinkProtocol, None]:
        """Provide the publish sink; the Kafka producer connects on first publish."""
        if settings.USE_RECORDING_SINK:
            yield RecordingPublishSink()
            return

        kafka_sink = KafkaPublishSink(
            client_id=settings.PRODUCER_CLIENT_ID,
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        )
        try:
            yield kafka_sink
        finally:
            await kafka_sink.stop()

    @provide(scope=Scope.APP)
    def provide_outbox_dispatcher(
        self,
        repository: OutboxRepositoryProtocol,
        sink: PublishSinkProtocol,
        settings: Settings,
    ) -> OutboxDispatcher:
        return OutboxDispatcher.from_settings(repository, sink, settings)

    @provide(scope=Scope.APP)
    def provide_relay_worker(
        self, dispatcher: OutboxDispatcher, settings: Settings
    ) -> OutboxRelayWorker:
        return OutboxRelayWorker(dispatcher, settings)

    @provide(scope=Scope.APP)
    def provide_write_pipeline(
        self,
        rate_limiter: RateLimiter,
        guard: IdempotencyGuard,
        repository: OutboxRepositoryProtocol,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        tracer: Tracer,
    ) -> WritePipeline:
        return WritePipeline.from_settings(
            rate_limiter, guard, repository, session_factory, settings, tracer=tracer
        )
