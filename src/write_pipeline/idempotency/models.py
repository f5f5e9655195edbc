"""Data records for the idempotency guard."""

from __future__ import annotations

import base64
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ResponseSnapshot(BaseModel):
    """Status, header subset and body needed to replay a response byte-for-byte."""

    model_config = ConfigDict(frozen=True)

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body_b64: str = ""

    @classmethod
    def capture(
        cls,
        status_code: int,
        headers: Mapping[str, str],
        body: bytes,
        replay_headers: Iterable[str] | None = None,
    ) -> ResponseSnapshot:
        """Build a snapshot, keeping only the allowed headers when a list is given."""
        if replay_headers is None:
            kept = dict(headers)
        else:
            allowed = {name.lower() for name in replay_headers}
            kept = {name: value for name, value in headers.items() if name.lower() in allowed}
        return cls(
            status_code=status_code,
            headers=kept,
            body_b64=base64.b64encode(body).decode("ascii"),
        )

    @property
    def body(self) -> bytes:
        return base64.b64decode(self.body_b64)


class IdempotencyRecord(BaseModel):
    """
    Record stored under a scope key.

    Created as PENDING when a request claims the key, finalized to COMPLETED
    with the response snapshot, and never updated otherwise.
    """

    model_config = ConfigDict(frozen=True)

    scope_key: str
    request_fingerprint: str
    status: IdempotencyStatus
    response: ResponseSnapshot | None = None
    correlation_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class GuardResult(BaseModel):
    """Response produced by the guard, flagged as replay or fresh execution."""

    model_config = ConfigDict(frozen=True)

    response: ResponseSnapshot
    replayed: bool
    original_correlation_id: str
