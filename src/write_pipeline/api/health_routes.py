"""Health and metrics routes for the write pipeline."""

from dishka import FromDishka
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from quart import Blueprint, Response, jsonify
from quart_dishka import inject

from write_pipeline.config import Settings
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.protocols import CounterStoreProtocol

logger = create_service_logger("write_pipeline.api.health")
health_bp = Blueprint("health_routes", __name__)


@health_bp.route("/healthz", methods=["GET"])
@inject
async def health_check(
    settings: FromDishka[Settings],
    store: FromDishka[CounterStoreProtocol],
) -> tuple[Response, int]:
    """Health check endpoint; reports counter store reachability."""
    store_ok = await store.ping()
    if not store_ok:
        logger.warning("Health check: counter store unreachable")
    return jsonify(
        {
            "status": "healthy" if store_ok else "degraded",
            "service": settings.SERVICE_NAME,
            "dependencies": {"counter_store": "ok" if store_ok else "unavailable"},
        }
    ), 200 if store_ok else 503


@health_bp.route("/metrics")
@inject
async def metrics(registry: FromDishka[CollectorRegistry]) -> Response:
    """Prometheus metrics endpoint."""
    try:
        metrics_data = generate_latest(registry)
        response = Response(metrics_data, content_type=CONTENT_TYPE_LATEST)
        return response
    except Exception as e:
        logger.error(f"Error generating metrics: {e}", exc_info=True)
        return Response("Error generating metrics", status=500)
