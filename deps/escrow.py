# deps/escrow.py
from __future__ import annotations

from threading import Lock

from app.escrow.service import EscrowEngine

_engine: EscrowEngine | None = None
_engine_lock = Lock()


def get_engine() -> EscrowEngine:
    """Process-wide engine built from settings on first use."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                from settings import settings

                _engine = EscrowEngine.from_settings(settings)
    return _engine


def reset_engine() -> None:
    global _engine
    with _engine_lock:
        _engine = None
