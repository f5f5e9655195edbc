"""
Operator routes for the rate limiter and the outbox.

Authentication of operators is handled upstream of this service.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from dishka import FromDishka
from quart import Blueprint, Response, jsonify, request
from quart_dishka import inject

from write_pipeline.config import Settings
from write_pipeline.error_handling import raise_resource_not_found, raise_validation_error
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.outbox import OutboxDispatcher, OutboxStatus
from write_pipeline.protocols import OutboxRepositoryProtocol
from write_pipeline.rate_limiting import EndpointRateLimitUpdate, RateLimiter

logger = create_service_logger("write_pipeline.api.admin")
admin_bp = Blueprint("admin_routes", __name__, url_prefix="/admin/v1/write-pipeline")

SERVICE_NAME = "write_pipeline"


def _extract_correlation_id() -> UUID:
    """Extract correlation ID from request headers or generate new one."""
    header = request.headers.get("X-Request-Id")
    if header:
        try:
            return UUID(header)
        except ValueError:
            pass
    return uuid4()


async def _json_body() -> dict:
    body = await request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _positive_int(raw: object, field: str, default: int, correlation_id: UUID) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        value = 0
    if value <= 0:
        raise_validation_error(
            service=SERVICE_NAME,
            operation="admin_request",
            field=field,
            message=f"'{field}' must be a positive integer",
            correlation_id=correlation_id,
            value=raw,
        )
    return value


# Rate limiter


@admin_bp.route("/rate-limits", methods=["GET"])
@inject
async def list_rate_limits(limiter: FromDishka[RateLimiter]) -> Response:
    return jsonify(
        {
            name: config.model_dump(mode="json")
            for name, config in sorted(limiter.list_configs().items())
        }
    )


@admin_bp.route("/rate-limits/statistics", methods=["GET"])
@inject
async def rate_limit_statistics(limiter: FromDishka[RateLimiter]) -> Response:
    statistics = await limiter.get_statistics()
    return jsonify(statistics.model_dump(mode="json"))


@admin_bp.route("/rate-limits/<endpoint_class>", methods=["GET"])
@inject
async def get_rate_limit(endpoint_class: str, limiter: FromDishka[RateLimiter]) -> Response:
    config = limiter.get_config(endpoint_class)
    if config is None:
        raise_resource_not_found(
            service=SERVICE_NAME,
            operation="get_rate_limit_config",
            resource_type="EndpointClass",
            resource_id=endpoint_class,
            correlation_id=_extract_correlation_id(),
        )
    return jsonify({"endpoint_class": endpoint_class, **config.model_dump(mode="json")})


@admin_bp.route("/rate-limits/<endpoint_class>", methods=["PUT"])
@inject
async def update_rate_limit(endpoint_class: str, limiter: FromDishka[RateLimiter]) -> Response:
    correlation_id = _extract_correlation_id()
    # ValidationError is rendered as 400 by the registered handler
    update = EndpointRateLimitUpdate.model_validate(await _json_body())
    config = limiter.update_config(endpoint_class, update, correlation_id)

    logger.info(
        "Operator updated rate limit config",
        extra={"endpoint_class": endpoint_class, "correlation_id": str(correlation_id)},
    )
    return jsonify({"endpoint_class": endpoint_class, **config.model_dump(mode="json")})


@admin_bp.route("/rate-limits/<endpoint_class>/identities/<identity>", methods=["DELETE"])
@inject
async def clear_identity_for_class(
    endpoint_class: str, identity: str, limiter: FromDishka[RateLimiter]
) -> Response:
    deleted = await limiter.clear_identity(identity, endpoint_class)
    return jsonify(
        {"identity": identity, "endpoint_class": endpoint_class, "deleted_keys": deleted}
    )


@admin_bp.route("/rate-limits/identities/<identity>", methods=["DELETE"])
@inject
async def clear_identity(identity: str, limiter: FromDishka[RateLimiter]) -> Response:
    deleted = await limiter.clear_identity(identity)
    return jsonify({"identity": identity, "endpoint_class": None, "deleted_keys": deleted})


# Outbox


@admin_bp.route("/outbox/metrics", methods=["GET"])
@inject
async def outbox_metrics(dispatcher: FromDishka[OutboxDispatcher]) -> Response:
    metrics = await dispatcher.get_metrics()
    return jsonify(metrics.model_dump(mode="json"))


@admin_bp.route("/outbox/retry", methods=["POST"])
@inject
async def retry_failed(
    dispatcher: FromDishka[OutboxDispatcher], settings: FromDishka[Settings]
) -> Response:
    body = await _json_body()
    batch_size = _positive_int(
        body.get("batch_size"),
        "batch_size",
        settings.OUTBOX_RETRY_BATCH_SIZE,
        _extract_correlation_id(),
    )
    requeued = await dispatcher.retry_failed(batch_size)
    return jsonify({"requeued": requeued, "batch_size": batch_size})


@admin_bp.route("/outbox/process", methods=["POST"])
@inject
async def process_pending(
    dispatcher: FromDishka[OutboxDispatcher], settings: FromDishka[Settings]
) -> Response:
    body = await _json_body()
    batch_size = _positive_int(
        body.get("batch_size"),
        "batch_size",
        settings.OUTBOX_BATCH_SIZE,
        _extract_correlation_id(),
    )
    completed = await dispatcher.process_pending(batch_size)
    return jsonify({"completed": completed, "batch_size": batch_size})


@admin_bp.route("/outbox/failed", methods=["GET"])
@inject
async def list_failed(
    repository: FromDishka[OutboxRepositoryProtocol], settings: FromDishka[Settings]
) -> Response:
    correlation_id = _extract_correlation_id()
    limit = _positive_int(request.args.get("limit"), "limit", 100, correlation_id)
    exhausted_only = request.args.get("exhausted_only", "false").lower() in ("1", "true", "yes")

    events = await repository.list_failed(
        limit, max_retries=settings.OUTBOX_MAX_RETRIES if exhausted_only else None
    )
    return jsonify(
        {
            "events": [event.model_dump(mode="json") for event in events],
            "count": len(events),
            "exhausted_only": exhausted_only,
        }
    )


@admin_bp.route("/outbox/events/<event_id>/requeue", methods=["POST"])
@inject
async def requeue_event(
    event_id: str, repository: FromDishka[OutboxRepositoryProtocol]
) -> Response:
    correlation_id = _extract_correlation_id()
    try:
        parsed_id = UUID(event_id)
    except ValueError:
        raise_validation_error(
            service=SERVICE_NAME,
            operation="requeue_event",
            field="event_id",
            message="event_id must be a UUID",
            correlation_id=correlation_id,
            value=event_id,
        )

    event = await repository.get_event_by_id(parsed_id)
    if event is None:
        raise_resource_not_found(
            service=SERVICE_NAME,
            operation="requeue_event",
            resource_type="OutboxEvent",
            resource_id=event_id,
            correlation_id=correlation_id,
        )
    if event.status is not OutboxStatus.FAILED:
        raise_validation_error(
            service=SERVICE_NAME,
            operation="requeue_event",
            field="status",
            message=f"Only failed events can be requeued, event is '{event.status.value}'",
            correlation_id=correlation_id,
            value=event.status.value,
        )

    await repository.requeue_event(parsed_id)
    logger.info(
        "Operator requeued outbox event",
        extra={
            "event_id": event_id,
            "previous_retry_count": event.retry_count,
            "correlation_id": str(correlation_id),
        },
    )
    return jsonify({"event_id": event_id, "status": OutboxStatus.PENDING.value})
