"""Error detail carried by every WritePipelineError and rendered into error responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from write_pipeline.error_handling.error_enums import ErrorCode, WritePipelineErrorCode


class ErrorDetail(BaseModel):
    """
    What went wrong, where, and for which request.

    ``details`` holds code-specific context, e.g. the budget numbers of a
    rate-limit rejection or the original correlation id of a key conflict.
    ``trace_id``/``span_id`` are filled from the active span when there is one.
    """

    model_config = ConfigDict(frozen=True)

    error_code: ErrorCode | WritePipelineErrorCode
    message: str
    correlation_id: UUID
    timestamp: datetime
    service: str
    operation: str
    details: dict[str, Any] = Field(default_factory=dict)
    stack_trace: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
