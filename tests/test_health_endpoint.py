from __future__ import annotations

from fastapi.testclient import TestClient

from main import create_app
from settings import settings


def test_health_reports_env_and_store(monkeypatch):
    monkeypatch.setattr(settings, "ESCROW_STORE", "memory", raising=False)
    client = TestClient(create_app(), raise_server_exceptions=False)

    r = client.get("/health")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body.get("ok") is True
    assert body.get("store") == "memory"


def test_readyz_with_memory_store_skips_db(monkeypatch):
    monkeypatch.setattr(settings, "ESCROW_STORE", "memory", raising=False)
    client = TestClient(create_app(), raise_server_exceptions=False)

    r = client.get("/readyz")
    assert r.status_code == 200, r.text
    assert r.json()["ready"] is True
    assert r.json()["migration_revision"] == "0001_escrow_schema"
