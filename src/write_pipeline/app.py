"""
Write Pipeline HTTP application.

Serves health, Prometheus metrics and the operator admin surface, and runs
the outbox relay worker for the lifetime of the server.
"""

from __future__ import annotations

from dishka import AsyncContainer, make_async_container
from quart import Quart
from quart_dishka import QuartDishka
from sqlalchemy.ext.asyncio import AsyncEngine

from write_pipeline.api.admin_routes import admin_bp
from write_pipeline.api.health_routes import health_bp
from write_pipeline.config import settings
from write_pipeline.config_enums import Environment
from write_pipeline.di import CoreInfrastructureProvider, StorageProvider, WritePipelineProvider
from write_pipeline.error_handling.quart import register_error_handlers
from write_pipeline.logging_utils import configure_service_logging, create_service_logger
from write_pipeline.outbox import Base, OutboxRelayWorker

logger = create_service_logger("write_pipeline.app")


def create_container() -> AsyncContainer:
    return make_async_container(
        CoreInfrastructureProvider(),
        StorageProvider(),
        WritePipelineProvider(),
    )


async def initialize_database_schema(engine: AsyncEngine) -> None:
    """Create the outbox table when it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Outbox schema initialized")


def create_app(container: AsyncContainer | None = None) -> Quart:
    configure_service_logging(
        service_name=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT.value,
        log_level=settings.LOG_LEVEL,
    )

    app = Quart(__name__)
    di_container = container or create_container()
    QuartDishka(app=app, container=di_container)
    register_error_handlers(app, service="write_pipeline")

    @app.before_serving
    async def startup() -> None:
        try:
            if settings.ENVIRONMENT is not Environment.TESTING:
                await initialize_database_schema(await di_container.get(AsyncEngine))
            if settings.OUTBOX_RELAY_ENABLED:
                relay = await di_container.get(OutboxRelayWorker)
                await relay.start()
            logger.info("Write Pipeline startup completed successfully")
        except Exception as e:
            logger.critical(f"Failed to start Write Pipeline: {e}", exc_info=True)
            raise

    @app.after_serving
    async def shutdown() -> None:
        try:
            relay = await di_container.get(OutboxRelayWorker)
            await relay.stop()
            await di_container.close()
            logger.info("Write Pipeline shutdown completed")
        except Exception as e:
            logger.error(f"Error during service shutdown: {e}", exc_info=True)

    app.register_blueprint(health_bp)
    app.register_blueprint(admin_bp)
    return app


if __name__ == "__main__":
    import asyncio

    import hypercorn.asyncio
    from hypercorn import Config

    config = Config()
    config.bind = [f"{settings.HTTP_HOST}:{settings.HTTP_PORT}"]
    config.worker_class = "asyncio"
    config.loglevel = settings.LOG_LEVEL.lower()

    logger.info(f"Starting Write Pipeline on {config.bind[0]}")
    asyncio.run(hypercorn.asyncio.serve(create_app(), config))
