from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_PHONE_RE = re.compile(r"\+\d{6,15}")
# bank account / card / IBAN-like runs: keep only the last 4
_ACCOUNT_RE = re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{8,30}\b|\b\d{9,19}\b")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "password",
    "iban",
    "account_number",
    "card",
)


def _mask_email(match: re.Match) -> str:
    return f"{match.group(1)}***{match.group(3)}"


def _mask_phone(match: re.Match) -> str:
    value = match.group(0)
    if len(value) <= 8:
        return value
    return f"{value[:6]}****{value[-2:]}"


def _mask_account(match: re.Match) -> str:
    value = match.group(0)
    return f"****{value[-4:]}"


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    masked = _PHONE_RE.sub(_mask_phone, masked)
    masked = _ACCOUNT_RE.sub(_mask_account, masked)

    if "bearer" in masked.lower():
        return "[REDACTED]"
    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        k: "[REDACTED]" if _is_sensitive_key(k) else redact_value(v)
        for k, v in payload.items()
    }
