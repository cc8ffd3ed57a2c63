from __future__ import annotations

import os

import psycopg2
from fastapi import APIRouter

from db import get_conn
from settings import settings

router = APIRouter(tags=["health"])

MIGRATION_REVISION = "0001_create_payouts"


def _probe_database() -> dict:
    """
    One round trip: connectivity, payouts table, and the applied Alembic head.
    """
    status = {"db_ok": False, "db_error": None, "payouts_table": False, "migrations_ok": False}
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass('app.payouts') IS NOT NULL")
                status["db_ok"] = True
                status["payouts_table"] = bool(cur.fetchone()[0])

                cur.execute("SELECT to_regclass('public.alembic_version') IS NOT NULL")
                if cur.fetchone()[0]:
                    cur.execute("SELECT version_num FROM alembic_version")
                    applied = {row[0] for row in cur.fetchall()}
                    status["migrations_ok"] = MIGRATION_REVISION in applied
    except psycopg2.Error as exc:
        status["db_error"] = type(exc).__name__
    return status


@router.get("/health", operation_id="health")
def health():
    return {
        "ok": True,
        "env": settings.ENV,
        "payouts_enabled": bool(settings.PAYOUTS_ENABLED),
        "git_sha": (os.getenv("GIT_SHA") or "").strip() or None,
    }


@router.get("/readyz", operation_id="readyz")
def readyz():
    status = _probe_database()
    return {
        "ready": status["db_ok"] and status["payouts_table"] and status["migrations_ok"],
        **status,
        "migration_revision": MIGRATION_REVISION,
    }
