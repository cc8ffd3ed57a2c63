from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.pool import ThreadedConnectionPool

from settings import settings

_pool: Optional[ThreadedConnectionPool] = None
_pool_lock = threading.Lock()

# Run at the start of every transactional checkout.
_SESSION_SETUP = (
    "SET statement_timeout = '5000ms'",
    "SET idle_in_transaction_session_timeout = '5000ms'",
    "SET application_name = 'seller_payouts'",
)


def init_pool() -> ThreadedConnectionPool:
    """
    Create the shared pool on first use. Request handlers and the sweep
    worker check connections out concurrently.
    """
    global _pool
    with _pool_lock:
        if _pool is None:
            psycopg2.extras.register_uuid()
            _pool = ThreadedConnectionPool(
                minconn=settings.DB_POOL_MIN,
                maxconn=settings.DB_POOL_MAX,
                dsn=settings.DATABASE_URL,
                connect_timeout=5,
            )
        return _pool


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.closeall()
            _pool = None


@contextmanager
def get_conn() -> Iterator[PgConnection]:
    """
    Transactional connection: commits when the block exits cleanly,
    rolls back and re-raises otherwise.
    """
    pool = _pool or init_pool()
    conn = pool.getconn()
    try:
        with conn.cursor() as cur:
            for statement in _SESSION_SETUP:
                cur.execute(statement)
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def get_session_conn() -> Iterator[PgConnection]:
    """
    Autocommit connection for session-scoped state such as advisory locks,
    which must outlive individual transactions.
    """
    pool = _pool or init_pool()
    conn = pool.getconn()
    conn.autocommit = True
    try:
        yield conn
    finally:
        conn.autocommit = False
        pool.putconn(conn)
