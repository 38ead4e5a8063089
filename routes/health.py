from __future__ import annotations

import os

from fastapi import APIRouter

from settings import settings

router = APIRouter(tags=["health"])

MIGRATION_REVISION = "0001_escrow_schema"


def _check_db() -> tuple[bool, str | None]:
    if settings.ESCROW_STORE != "postgres":
        return True, None
    try:
        from db import get_conn

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, type(exc).__name__


def _check_migrations() -> bool:
    if settings.ESCROW_STORE != "postgres":
        return True
    try:
        from db import get_conn

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT version_num FROM alembic_version LIMIT 1;")
                row = cur.fetchone()
                return bool(row and row[0])
    except Exception:
        return False


def _resolve_git_sha() -> str | None:
    return (os.getenv("GIT_SHA") or "").strip() or None


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": settings.ENV,
        "store": settings.ESCROW_STORE,
        "git_sha": _resolve_git_sha(),
    }


@router.get("/readyz")
def readyz():
    db_ok, db_error = _check_db()
    migrations_ok = _check_migrations()
    return {
        "ready": bool(db_ok and migrations_ok),
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "db_ok": db_ok,
        "db_error": db_error,
        "migrations_ok": migrations_ok,
        "migration_revision": MIGRATION_REVISION,
    }
