# db.py
from contextlib import contextmanager

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from settings import settings

_pool: ThreadedConnectionPool | None = None


def init_pool(dsn: str | None = None):
    """
    Initialize the PostgreSQL connection pool.
    Called lazily on first use; the API and the reconcile scripts share it.
    """
    psycopg2.extras.register_uuid()
    global _pool
    if _pool is None:
        _pool = ThreadedConnectionPool(
            minconn=settings.DB_POOL_MIN,
            maxconn=settings.DB_POOL_MAX,
            dsn=dsn or settings.DATABASE_URL,
            connect_timeout=settings.DB_CONNECT_TIMEOUT_S,
        )


def close_pool():
    """
    Gracefully close all pooled connections.
    """
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn():
    """
    Provides a transactional DB connection.
    Auto-commits on success, rolls back on error.
    """
    if _pool is None:
        init_pool()

    conn = _pool.getconn()

    try:
        # Safety: never allow long-running queries or a lock holder that went idle
        timeout_ms = int(settings.DB_STATEMENT_TIMEOUT_MS)
        with conn.cursor() as cur:
            cur.execute(f"SET statement_timeout = '{timeout_ms}ms';")
            cur.execute(f"SET idle_in_transaction_session_timeout = '{timeout_ms}ms';")
            cur.execute("SET application_name = 'escrow_api';")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        _pool.putconn(conn)
