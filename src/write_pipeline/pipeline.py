"""
The reliable write path.

A state-mutating request passes through the rate limiter, the idempotency
key policy and the idempotency guard before the business operation runs in
a database transaction. Outbox events appended through ``WriteContext`` share
that transaction, so the mutation and its notifications commit or roll back
together.
"""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID, uuid4

from opentelemetry import trace
from opentelemetry.trace import Tracer
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from write_pipeline.config import Settings
from write_pipeline.error_handling import (
    raise_idempotency_key_required,
    raise_rate_limit_exceeded,
)
from write_pipeline.idempotency import (
    IdempotencyGuard,
    IdempotencyPolicy,
    ResponseSnapshot,
    build_scope_key,
    compute_request_fingerprint,
    validate_idempotency_key,
)
from write_pipeline.logging_utils import bind_request_context, create_service_logger
from write_pipeline.metrics import get_metrics
from write_pipeline.protocols import OutboxRepositoryProtocol
from write_pipeline.rate_limiting import CallerIdentity, RateLimitDecision, RateLimiter
from write_pipeline.rate_limiting.limiter import SYSTEM_LOAD_CONTEXT_KEY

logger = create_service_logger("write_pipeline.pipeline")

SERVICE_NAME = "write_pipeline"

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
REQUEST_ID_HEADER = "X-Request-Id"
IDEMPOTENCY_CACHE_HEADER = "X-Idempotency-Cache"
IDEMPOTENT_REPLAYED_HEADER = "X-Idempotent-Replayed"
RATE_LIMIT_LIMIT_HEADER = "X-RateLimit-Limit"
RATE_LIMIT_REMAINING_HEADER = "X-RateLimit-Remaining"


class WriteRequest(BaseModel):
    """Inbound write as seen by the pipeline, independent of the web framework."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    identity: CallerIdentity
    method: str
    route_template: str
    endpoint_class: str = "api"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    params: dict[str, Any] = Field(default_factory=dict)
    system_load: float | None = None

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class OperationResult(BaseModel):
    """What a business operation returns; the body is serialized as JSON."""

    status_code: int = 200
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


class WriteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int
    headers: dict[str, str]
    body: bytes
    replayed: bool = False
    request_id: str

    def json_body(self) -> Any:
        return json.loads(self.body) if self.body else None


class WriteContext:
    """
    Handle passed to a business operation.

    ``session`` is inside an open transaction; ``add_event`` appends an outbox
    row to that same transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        outbox: OutboxRepositoryProtocol,
        request: WriteRequest,
        request_id: str,
    ) -> None:
        self.session = session
        self.request = request
        self.request_id = request_id
        self._outbox = outbox
        self.event_ids: list[UUID] = []

    @property
    def tenant_id(self) -> str:
        return self.request.tenant_id

    async def add_event(
        self, event_type: str, event_name: str, payload: dict[str, Any]
    ) -> UUID:
        event_id = await self._outbox.append(
            self.session,
            tenant_id=self.request.tenant_id,
            event_type=event_type,
            event_name=event_name,
            payload=payload,
            correlation_id=self.request_id,
        )
        self.event_ids.append(event_id)
        get_metrics()["outbox_appends"].labels(event_name=event_name).inc()
        return event_id


WriteOperation = Callable[[WriteContext], Awaitable[OperationResult]]


class _RollbackWithResponse(Exception):
    """Aborts the transaction for a server-error result while keeping the result."""

    def __init__(self, result: OperationResult) -> None:
        super().__init__(f"Operation returned status {result.status_code}")
        self.result = result


def resolve_request_id(raw: str | None) -> tuple[str, UUID]:
    """
    Return the request id to echo and the correlation UUID used in errors.

    A caller-supplied id is echoed unchanged; when it is not a UUID a fresh
    correlation UUID is used for error details.
    """
    if raw:
        try:
            return raw, UUID(raw)
        except ValueError:
            return raw, uuid4()
    correlation_id = uuid4()
    return str(correlation_id), correlation_id


class WritePipeline:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        guard: IdempotencyGuard,
        policy: IdempotencyPolicy,
        outbox: OutboxRepositoryProtocol,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_key_length: int = 255,
        replay_headers: list[str] | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.guard = guard
        self.policy = policy
        self.outbox = outbox
        self.session_factory = session_factory
        self.max_key_length = max_key_length
        self.replay_headers = replay_headers
        self.tracer = tracer or trace.get_tracer(__name__)

    @classmethod
    def from_settings(
        cls,
        rate_limiter: RateLimiter,
        guard: IdempotencyGuard,
        outbox: OutboxRepositoryProtocol,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        tracer: Tracer | None = None,
    ) -> WritePipeline:
        return cls(
            rate_limiter,
            guard,
            IdempotencyPolicy(settings.IDEMPOTENCY_REQUIRED_ROUTES),
            outbox,
            session_factory,
            max_key_length=settings.IDEMPOTENCY_MAX_KEY_LENGTH,
            replay_headers=settings.IDEMPOTENCY_REPLAY_HEADERS,
            tracer=tracer,
        )

    async def execute(self, request: WriteRequest, operation: WriteOperation) -> WriteResponse:
        """
        Run ``operation`` through the full write path.

        Raises:
            WritePipelineError: RATE_LIMIT_EXCEEDED, IDEMPOTENCY_KEY_REQUIRED,
                IDEMPOTENCY_KEY_INVALID, IDEMPOTENCY_KEY_CONFLICT,
                IDEMPOTENCY_REQUEST_IN_PROGRESS or COUNTER_STORE_UNAVAILABLE
        """
        with self.tracer.start_as_current_span(
            "write_pipeline.execute",
            attributes={
                "write.route": request.route_template,
                "write.endpoint_class": request.endpoint_class,
                "write.tenant_id": request.tenant_id,
            },
        ):
            return await self._execute(request, operation)

    async def _execute(self, request: WriteRequest, operation: WriteOperation) -> WriteResponse:
        request_id, correlation_id = resolve_request_id(request.header(REQUEST_ID_HEADER))
        raw_key = request.header(IDEMPOTENCY_KEY_HEADER)
        bind_request_context(
            request_id,
            tenant_id=request.tenant_id,
            idempotency_key=raw_key,
            route=f"{request.method.upper()} {request.route_template}",
        )

        decision = await self._admit(request, correlation_id)

        idempotency_key = self._resolve_key(request, raw_key, correlation_id)

        async def run() -> ResponseSnapshot:
            return await self._run_transaction(request, request_id, operation)

        if idempotency_key is None:
            snapshot = await run()
            return self._build_response(snapshot, request_id, decision, cache=None)

        scope_key = build_scope_key(
            request.tenant_id,
            request.identity.user_id,
            request.method,
            request.route_template,
            idempotency_key,
        )
        fingerprint = compute_request_fingerprint(
            request.method, request.route_template, request.body, request.params
        )
        result = await self.guard.execute(scope_key, fingerprint, run, correlation_id)
        return self._build_response(
            result.response,
            request_id,
            decision,
            cache="hit" if result.replayed else "miss",
        )

    async def _admit(self, request: WriteRequest, correlation_id: UUID) -> RateLimitDecision:
        context: dict[str, Any] = {}
        if request.system_load is not None:
            context[SYSTEM_LOAD_CONTEXT_KEY] = request.system_load

        decision = await self.rate_limiter.check(request.identity, request.endpoint_class, context)
        if not decision.allowed:
            raise_rate_limit_exceeded(
                service=SERVICE_NAME,
                operation="write",
                endpoint_class=decision.endpoint_class,
                limit=decision.limit,
                retry_after=decision.retry_after,
                correlation_id=correlation_id,
                remaining=decision.remaining,
            )
        return decision

    def _resolve_key(
        self, request: WriteRequest, raw_key: str | None, correlation_id: UUID
    ) -> str | None:
        if raw_key is None or not raw_key.strip():
            if self.policy.requires_key(request.method, request.route_template):
                raise_idempotency_key_required(
                    service=SERVICE_NAME,
                    operation="write",
                    route=f"{request.method.upper()} {request.route_template}",
                    correlation_id=correlation_id,
                )
            return None
        return validate_idempotency_key(raw_key, self.max_key_length, correlation_id, SERVICE_NAME)

    async def _run_transaction(
        self, request: WriteRequest, request_id: str, operation: WriteOperation
    ) -> ResponseSnapshot:
        started = time.perf_counter()
        try:
            async with self.session_factory() as session, session.begin():
                context = WriteContext(session, self.outbox, request, request_id)
                result = await operation(context)
                if result.status_code >= 500:
                    raise _RollbackWithResponse(result)
        except _RollbackWithResponse as rollback:
            result = rollback.result
            logger.warning(
                "Write operation returned a server error; transaction rolled back",
                extra={"status_code": result.status_code},
            )
        finally:
            get_metrics()["write_duration"].labels(route=request.route_template).observe(
                time.perf_counter() - started
            )

        headers = {"Content-Type": "application/json", **result.headers}
        body = b"" if result.body is None else json.dumps(result.body).encode("utf-8")
        return ResponseSnapshot.capture(result.status_code, headers, body, self.replay_headers)

    @staticmethod
    def _build_response(
        snapshot: ResponseSnapshot,
        request_id: str,
        decision: RateLimitDecision,
        cache: str | None,
    ) -> WriteResponse:
        headers = dict(snapshot.headers)
        headers[REQUEST_ID_HEADER] = request_id
        headers[RATE_LIMIT_LIMIT_HEADER] = str(decision.limit)
        headers[RATE_LIMIT_REMAINING_HEADER] = str(decision.remaining)
        replayed = cache == "hit"
        if cache is not None:
            headers[IDEMPOTENCY_CACHE_HEADER] = cache
        headers[IDEMPOTENT_REPLAYED_HEADER] = "true" if replayed else "false"
        return WriteResponse(
            status_code=snapshot.status_code,
            headers=headers,
            body=snapshot.body,
            replayed=replayed,
            request_id=request_id,
        )

