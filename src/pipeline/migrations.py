"""Idempotent schema bootstrap and audit for the analytics tables."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import psycopg2

from db_utils import get_conn_str

log = logging.getLogger("pipeline.migrations")


SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS timeseries_samples (
        user_id      TEXT NOT NULL,
        metric_name  TEXT NOT NULL,
        recorded_at  TIMESTAMP NOT NULL,
        value        DOUBLE PRECISION,
        PRIMARY KEY (user_id, metric_name, recorded_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS raw_events (
        id           BIGSERIAL PRIMARY KEY,
        user_id      TEXT NOT NULL,
        domain       TEXT NOT NULL,
        started_at   TIMESTAMP NOT NULL,
        ended_at     TIMESTAMP,
        amount       DOUBLE PRECISION,
        attributes   JSONB DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_raw_events_user_domain
    ON raw_events(user_id, domain, started_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS correlation_patterns (
        user_id            TEXT NOT NULL,
        pattern_type       TEXT NOT NULL,
        document           JSONB NOT NULL,
        is_active          BOOLEAN DEFAULT TRUE,
        validation_status  TEXT DEFAULT 'monitoring',
        confidence         REAL,
        updated_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (user_id, pattern_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS predictions (
        prediction_id    TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        prediction_type  TEXT NOT NULL,
        status           TEXT DEFAULT 'active',
        created_at       TIMESTAMP NOT NULL,
        document         JSONB NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_predictions_user
    ON predictions(user_id, created_at)
    """,
]

REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "timeseries_samples": ["user_id", "metric_name", "recorded_at", "value"],
    "raw_events": ["user_id", "domain", "started_at", "ended_at", "amount", "attributes"],
    "correlation_patterns": ["user_id", "pattern_type", "document", "is_active", "validation_status"],
    "predictions": ["prediction_id", "user_id", "prediction_type", "status", "created_at", "document"],
}


def ensure_startup_schema(conn_str: Optional[str] = None) -> None:
    """Create any missing analytics tables and indexes."""
    cs = conn_str or get_conn_str()
    if not cs:
        raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")

    conn = psycopg2.connect(cs)
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
    finally:
        conn.close()

    log.info("Startup migrations completed.")


def schema_audit(conn_str: Optional[str] = None) -> Dict[str, Any]:
    """Return table/column audit data for runtime inspection."""
    cs = conn_str or get_conn_str()
    if not cs:
        return {
            "ok": False,
            "error": "POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured",
            "tables": {},
            "missing_tables": [],
        }

    out: Dict[str, Any] = {"ok": True, "tables": {}, "missing_tables": []}
    conn = psycopg2.connect(cs)
    try:
        with conn.cursor() as cur:
            for table, expected in REQUIRED_COLUMNS.items():
                cur.execute(
                    """
                    SELECT column_name
                    FROM information_schema.columns
                    WHERE table_schema = 'public' AND table_name = %s
                    ORDER BY ordinal_position
                    """,
                    (table,),
                )
                cols = [r[0] for r in cur.fetchall()]
                if not cols:
                    out["missing_tables"].append(table)
                out["tables"][table] = {
                    "exists": bool(cols),
                    "columns": cols,
                    "missing_columns": [c for c in expected if c not in cols] if cols else [],
                }

        out["ok"] = not out["missing_tables"] and not any(
            info["missing_columns"] for info in out["tables"].values()
        )
        return out
    finally:
        conn.close()
