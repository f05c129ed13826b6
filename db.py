# db.py
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Iterator

import psycopg2.extras
from psycopg2.extensions import connection as Connection
from psycopg2.pool import ThreadedConnectionPool

from settings import settings

_pool: ThreadedConnectionPool | None = None
_pool_lock = Lock()

# Row locks taken for single-flight checks must not wait forever on a stuck request.
SESSION_SETTINGS = (
    "SET statement_timeout = '5000ms';",
    "SET lock_timeout = '3000ms';",
    "SET idle_in_transaction_session_timeout = '5000ms';",
    "SET application_name = 'ioupay_api';",
)


def init_pool() -> ThreadedConnectionPool:
    """
    Create the PostgreSQL pool once. Request threads share it, hence ThreadedConnectionPool.
    """
    global _pool
    with _pool_lock:
        if _pool is None:
            dsn = (settings.DATABASE_URL or "").strip()
            if not dsn:
                raise RuntimeError("DATABASE_URL is not set.")
            psycopg2.extras.register_uuid()
            _pool = ThreadedConnectionPool(
                minconn=settings.DB_POOL_MIN,
                maxconn=settings.DB_POOL_MAX,
                dsn=dsn,
                connect_timeout=5,
            )
    return _pool


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool:
            _pool.closeall()
            _pool = None


@contextmanager
def get_conn() -> Iterator[Connection]:
    """
    One transaction per block: commit on success, rollback on any error.
    """
    pool = _pool or init_pool()
    conn = pool.getconn()

    try:
        with conn.cursor() as cur:
            for stmt in SESSION_SETTINGS:
                cur.execute(stmt)

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        pool.putconn(conn)
