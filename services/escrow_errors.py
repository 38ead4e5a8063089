# services/escrow_errors.py
from __future__ import annotations

import logging

from app.escrow.errors import EscrowError

logger = logging.getLogger("escrow.http")

ESCROW_ERROR_HTTP_MAP: dict[str, tuple[int, str]] = {
    "INVALID_INPUT": (422, "Invalid input"),
    "INVALID_RATE": (422, "Invalid commission rate"),
    "INVALID_TRANSITION": (409, "Operation not allowed in the project's current escrow state"),
    "TERMINAL_STATE": (409, "Project escrow is already closed"),
    "INSUFFICIENT_BALANCE": (409, "Insufficient escrow balance"),
    "STORE_UNAVAILABLE": (503, "Escrow store unavailable, retry later"),
    "CONCURRENT_MODIFICATION": (409, "Project is being modified, retry"),
    "IDEMPOTENCY_CONFLICT": (409, "Idempotency-Key reused with a different request"),
    "DUPLICATE_PAYMENT": (409, "Payment already held"),
    "NOT_FOUND": (404, "Not found"),
}


def escrow_error_response(exc: EscrowError) -> tuple[int, dict]:
    """
    (status, body) for an engine error. The 4xx messages carry the engine's
    own text so callers see e.g. "cannot refund: project escrow is already released".
    Unknown codes fail closed to 500 without leaking detail.
    """
    mapped = ESCROW_ERROR_HTTP_MAP.get(exc.code)
    if mapped is None:
        logger.error("unmapped escrow error code=%s", exc.code)
        return 500, {"detail": "Internal server error"}

    status, message = mapped
    if status >= 500:
        return status, {"detail": message, "code": exc.code}
    return status, {"detail": f"{message}: {exc}", "code": exc.code}
