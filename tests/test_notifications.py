import logging
from types import SimpleNamespace

import pytest
import requests

from app.escrow.service import EscrowEngine
from app.notifications.sink import (
    HttpNotificationSink,
    LoggingNotificationSink,
    NotificationError,
    build_notifier,
)
from services.metrics import counter_value
from services.observability import set_request_id
from tests.conftest import held_project


class FailingSink:
    def notify(self, user_id, title, body, metadata):
        raise ConnectionError("smtp down")


class _Resp:
    def __init__(self, status_code):
        self.status_code = status_code


class FakeSession:
    def __init__(self, status_code=200, exc=None):
        self.status_code = status_code
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc:
            raise self.exc
        return _Resp(self.status_code)


def test_release_notifies_each_payee(engine, sink):
    held_project(engine, "p", 100_000)
    sink.sent.clear()
    engine.release("p", 100_000, "dev-1", "com-1", "25", referrer_id="ref-1")
    assert sorted(n["user_id"] for n in sink.sent) == ["com-1", "dev-1", "ref-1"]
    assert all(n["metadata"]["project_id"] == "p" for n in sink.sent)


def test_refund_notifies_payer(engine, sink):
    held_project(engine, "p", 50_000)
    engine.refund("p", "pay-1", 50_000, "cancel", "client-1")
    assert sink.sent[-1]["user_id"] == "client-1"
    assert "550.00" in sink.sent[-1]["body"]


def test_notifications_run_after_commit(store, config):
    seen = []

    class PeekingSink:
        def notify(self, user_id, title, body, metadata):
            seen.append(store.get_project("p").escrow_balance_cents)

    engine = EscrowEngine(store, config_source=lambda: config, notifier=PeekingSink())
    engine.hold("p", "pay-1", 1_000)
    engine.release("p", 1_000, "dev-1", "com-1", "25")
    assert seen and all(balance == 0 for balance in seen)


def test_failing_sink_never_fails_the_operation(store, config, caplog):
    engine = EscrowEngine(store, config_source=lambda: config, notifier=FailingSink())
    before = counter_value("notification_failures_total")
    caplog.set_level(logging.WARNING, logger="escrow.engine")

    engine.hold("p", "pay-1", 1_000)
    result = engine.release("p", 1_000, "dev-1", "com-1", "25")

    assert result.ledger_entry.balance_after == 0
    assert engine.get_balance("p") == 0
    assert counter_value("notification_failures_total") == before + 2
    assert any("notification failed" in r.message and "ConnectionError" in r.message for r in caplog.records)


def test_http_sink_posts_payload_with_request_id():
    session = FakeSession(200)
    sink = HttpNotificationSink("https://hooks.example/notify", timeout_s=2.5, session=session)
    set_request_id("req-42")
    try:
        sink.notify("dev-1", "Escrow funds released", "A payout", {"project_id": "p"})
    finally:
        set_request_id(None)

    [call] = session.calls
    assert call["url"] == "https://hooks.example/notify"
    assert call["timeout"] == 2.5
    assert call["headers"]["X-Request-ID"] == "req-42"
    assert call["json"]["user_id"] == "dev-1"


def test_http_sink_raises_on_rejection_and_transport_errors():
    with pytest.raises(NotificationError):
        HttpNotificationSink("https://x", session=FakeSession(500)).notify("u", "t", "b", {})
    with pytest.raises(NotificationError):
        HttpNotificationSink("https://x", session=FakeSession(exc=requests.ConnectionError("boom"))).notify(
            "u", "t", "b", {}
        )


def test_logging_sink_redacts(caplog):
    caplog.set_level(logging.INFO, logger="escrow.notify")
    LoggingNotificationSink().notify(
        "client-1",
        "Refund scheduled",
        "Contact jane.doe@example.com",
        {"iban": "DE89370400440532013000"},
    )
    assert "jane.doe@example.com" not in caplog.text
    assert "DE89370400440532013000" not in caplog.text


def test_build_notifier_picks_sink_from_settings():
    assert isinstance(build_notifier(SimpleNamespace(NOTIFY_WEBHOOK_URL="")), LoggingNotificationSink)
    sink = build_notifier(SimpleNamespace(NOTIFY_WEBHOOK_URL="https://hooks", NOTIFY_HTTP_TIMEOUT_S=1))
    assert isinstance(sink, HttpNotificationSink)
    assert sink.timeout_s == 1.0
