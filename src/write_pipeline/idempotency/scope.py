"""
Scope keys, request fingerprints and the required-key policy.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from write_pipeline.error_handling import raise_idempotency_key_invalid

_KEY_PATTERN = re.compile(r"^[\x21-\x7e]+$")


def build_scope_key(
    tenant_id: str,
    actor_id: str | None,
    method: str,
    route_template: str,
    idempotency_key: str,
) -> str:
    """Compose the unique scope of a key: tenant, actor, METHOD + route template, key."""
    return json.dumps(
        [tenant_id, actor_id or "", method.upper(), route_template, idempotency_key],
        separators=(",", ":"),
    )


def _canonical(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {"__raw_sha256__": hashlib.sha256(raw).hexdigest()}
    return value


def compute_request_fingerprint(
    method: str,
    route_template: str,
    body: Any = None,
    params: Mapping[str, Any] | None = None,
) -> str:
    """
    Hash the normalized request.

    JSON bodies are compared structurally (key order and whitespace do not
    matter); other bodies are compared byte-for-byte.
    """
    document = {
        "method": method.upper(),
        "route": route_template,
        "body": _canonical(body),
        "params": dict(sorted((params or {}).items())),
    }
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_idempotency_key(
    key: str,
    max_length: int,
    correlation_id: UUID,
    service: str = "write_pipeline",
) -> str:
    """Keys are 1..max_length printable ASCII characters without spaces."""
    key = key.strip()
    if not key or len(key) > max_length:
        raise_idempotency_key_invalid(
            service=service,
            operation="validate_idempotency_key",
            message=f"Idempotency-Key must be between 1 and {max_length} characters",
            correlation_id=correlation_id,
            key_length=len(key),
        )
    if not _KEY_PATTERN.match(key):
        raise_idempotency_key_invalid(
            service=service,
            operation="validate_idempotency_key",
            message="Idempotency-Key must contain printable ASCII characters only",
            correlation_id=correlation_id,
        )
    return key


class IdempotencyPolicy:
    """Fixed allow-list of write endpoints that must carry an Idempotency-Key."""

    def __init__(self, required_routes: Iterable[str]) -> None:
        self._required: set[tuple[str, str]] = set()
        for entry in required_routes:
            method, _, template = entry.strip().partition(" ")
            if not template:
                raise ValueError(f"Expected 'METHOD /route/template', got '{entry}'")
            self._required.add((method.upper(), template.strip()))

    def requires_key(self, method: str, route_template: str) -> bool:
        return (method.upper(), route_template) in self._required

    @property
    def required_routes(self) -> list[str]:
        return sorted(f"{method} {template}" for method, template in self._required)
