from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import requests

from services.observability import get_request_id
from services.redaction import redact_dict, redact_text

logger = logging.getLogger("escrow.notify")


class NotificationError(Exception):
    pass


class NotificationSink(Protocol):
    def notify(self, user_id: str, title: str, body: str, metadata: dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    """Writes notifications to the log only. Default when no webhook is configured."""

    def notify(self, user_id: str, title: str, body: str, metadata: dict[str, Any]) -> None:
        logger.info(
            "notification user_id=%s title=%s body=%s metadata=%s",
            user_id,
            title,
            redact_text(body),
            redact_dict(metadata or {}),
        )


class HttpNotificationSink:
    def __init__(self, url: str, *, timeout_s: float = 3.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._session = session or requests.Session()

    def notify(self, user_id: str, title: str, body: str, metadata: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id

        payload = {"user_id": user_id, "title": title, "body": body, "metadata": metadata or {}}
        try:
            resp = self._session.post(self.url, json=payload, headers=headers, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise NotificationError(f"notification transport failed: {type(e).__name__}") from e

        if resp.status_code >= 400:
            raise NotificationError(f"notification rejected: HTTP {resp.status_code}")
        logger.info("notification delivered user_id=%s status=%s", user_id, resp.status_code)


def build_notifier(s: Any = None) -> NotificationSink:
    if s is None:
        from settings import settings as s
    url = (getattr(s, "NOTIFY_WEBHOOK_URL", "") or "").strip()
    if url:
        return HttpNotificationSink(url, timeout_s=float(s.NOTIFY_HTTP_TIMEOUT_S))
    return LoggingNotificationSink()
