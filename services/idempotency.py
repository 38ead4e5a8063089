from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

from app.escrow.errors import ValidationError


def request_hash(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_key(value: Optional[str]) -> Optional[str]:
    """Header value -> stored key; blank means "no idempotency requested"."""
    key = (value or "").strip()
    if not key:
        return None
    if len(key) > 200:
        raise ValidationError("Idempotency-Key is too long (max 200 chars)")
    return key


def assert_same_request(stored: dict[str, Any], request_hash_value: str) -> None:
    if stored.get("request_hash") != request_hash_value:
        raise ValidationError(
            "Idempotency-Key was already used for a different request",
            code="IDEMPOTENCY_CONFLICT",
        )
