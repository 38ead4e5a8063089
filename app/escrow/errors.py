# app/escrow/errors.py
from __future__ import annotations


class EscrowError(Exception):
    """Base for every error the escrow engine raises on purpose."""

    code = "ESCROW_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class ValidationError(EscrowError):
    code = "INVALID_INPUT"


class InvalidRateError(EscrowError):
    code = "INVALID_RATE"


class InvalidTransition(EscrowError):
    code = "INVALID_TRANSITION"


class TerminalStateError(InvalidTransition):
    code = "TERMINAL_STATE"


class InsufficientBalanceError(EscrowError):
    code = "INSUFFICIENT_BALANCE"


class StoreUnavailableError(EscrowError):
    code = "STORE_UNAVAILABLE"


class ConcurrentModificationError(EscrowError):
    code = "CONCURRENT_MODIFICATION"


class NotFoundError(EscrowError):
    code = "NOT_FOUND"


# Errors callers may safely retry without checking state first.
RETRYABLE_ERRORS = (StoreUnavailableError, ConcurrentModificationError)
