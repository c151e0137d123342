"""Idempotency keys for gateway operations and client requests."""

import hashlib
import json
from typing import Any
from uuid import UUID

from app.core.exceptions import ValidationError

MAX_REQUEST_ID_LENGTH = 128


def generate_idempotency_key(
    operation: str,
    entity_id: UUID | str,
    params: dict[str, Any] | None = None,
) -> str:
    """Generate a deterministic idempotency key.

    Args:
        operation: Operation name (e.g., "capture", "payout", "refund")
        entity_id: Primary entity ID
        params: Additional parameters to include in key

    Returns:
        SHA256 hash of operation + entity + params
    """
    key_data = {
        "operation": operation,
        "entity_id": str(entity_id),
        "params": params or {},
    }
    key_str = json.dumps(key_data, sort_keys=True)
    return hashlib.sha256(key_str.encode()).hexdigest()


def gateway_idempotency_key(operation: str, booking_id: UUID | str, attempt: int) -> str:
    """Key sent to the processor for one attempt of a money movement.

    The attempt number only advances after a terminal failure, so a retry
    following a timeout sends the same key and the processor deduplicates it.
    """
    return generate_idempotency_key(operation, booking_id, {"attempt": attempt})


def normalize_request_id(request_id: str | None) -> str | None:
    """Validate a client supplied ``Idempotency-Key`` value."""
    if request_id is None:
        return None
    request_id = request_id.strip()
    if not request_id:
        return None
    if len(request_id) > MAX_REQUEST_ID_LENGTH:
        raise ValidationError(
            f"Idempotency key must be at most {MAX_REQUEST_ID_LENGTH} characters"
        )
    return request_id
