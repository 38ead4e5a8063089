from __future__ import annotations

import logging

import pytest

from app.escrow.errors import (
    ConcurrentModificationError,
    EscrowError,
    InsufficientBalanceError,
    InvalidRateError,
    InvalidTransition,
    NotFoundError,
    StoreUnavailableError,
    TerminalStateError,
    ValidationError,
)
from services.escrow_errors import escrow_error_response


@pytest.mark.parametrize(
    "exc, status",
    [
        (ValidationError("amount_cents must be positive"), 422),
        (InvalidRateError("rate out of range"), 422),
        (InvalidTransition("cannot release: no escrow"), 409),
        (TerminalStateError("cannot refund: project escrow is already released"), 409),
        (InsufficientBalanceError("need 500, have 100"), 409),
        (ConcurrentModificationError("project p is busy"), 409),
        (NotFoundError("payout x not found"), 404),
        (ValidationError("payment pay-1 already held", code="DUPLICATE_PAYMENT"), 409),
    ],
)
def test_client_errors_carry_engine_message(exc, status):
    got_status, body = escrow_error_response(exc)
    assert got_status == status
    assert body["code"] == exc.code
    assert str(exc) in body["detail"]


def test_store_unavailable_hides_driver_detail():
    status, body = escrow_error_response(StoreUnavailableError("could not connect to 10.0.0.4"))
    assert status == 503
    assert body["code"] == "STORE_UNAVAILABLE"
    assert "10.0.0.4" not in body["detail"]


def test_unknown_code_fails_closed(caplog):
    caplog.set_level(logging.ERROR, logger="escrow.http")
    status, body = escrow_error_response(EscrowError("boom", code="SOMETHING_NEW"))
    assert status == 500
    assert body == {"detail": "Internal server error"}
    assert "SOMETHING_NEW" in caplog.text


def test_terminal_state_is_an_invalid_transition():
    assert issubclass(TerminalStateError, InvalidTransition)
