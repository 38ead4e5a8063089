# tests/conftest.py

from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.escrow.config import EscrowConfig
from app.escrow.service import EscrowEngine
from app.escrow.store import MemoryStore
from deps.escrow import get_engine
from main import create_app
from security import ROLE_ADMIN, ROLE_USER, create_access_token


# ---------------------------
# Engine fixtures
# ---------------------------

class RecordingSink:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def notify(self, user_id: str, title: str, body: str, metadata: dict) -> None:
        self.sent.append({"user_id": user_id, "title": title, "body": body, "metadata": metadata})


@pytest.fixture()
def config() -> EscrowConfig:
    return EscrowConfig(
        tier_rates={"tier1": Decimal("25"), "tier2": Decimal("27"), "tier3": Decimal("30")},
    )


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def engine(store: MemoryStore, config: EscrowConfig, sink: RecordingSink) -> EscrowEngine:
    return EscrowEngine(
        store,
        config_source=lambda: config,
        notifier=sink,
        lock_timeout_s=1.0,
        lock_retries=3,
        lock_backoff_s=0.01,
    )


def held_project(engine: EscrowEngine, project_id: str = "proj-1", amount_cents: int = 100_000,
                 payment_id: str = "pay-1") -> str:
    engine.hold(project_id, payment_id, amount_cents, actor_id="admin-1")
    return project_id


# ---------------------------
# Client + Auth Helpers
# ---------------------------

@pytest.fixture()
def client(engine: EscrowEngine) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)


def _auth_headers(token: str, idem: Optional[str] = None) -> Dict[str, str]:
    h = {"Authorization": f"Bearer {token}"}
    if idem:
        h["Idempotency-Key"] = idem
    return h


@pytest.fixture()
def admin_token() -> str:
    return create_access_token("admin-1", role=ROLE_ADMIN)


@pytest.fixture()
def user_token() -> str:
    return create_access_token("client-1", role=ROLE_USER)
