"""
Shared database utilities.
Single source of truth for PostgreSQL connection-string resolution and
the small fetch/execute helpers the stores build on.
"""

from __future__ import annotations

import os
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

# Connection-level failures worth retrying; anything else surfaces at once
TRANSIENT_DB_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class StorageError(RuntimeError):
    """Persistence layer unavailable.  Retryable by the caller."""


def get_conn_str() -> str:
    """Return PostgreSQL connection string.

    Checks POSTGRES_CONNECTION_STRING first, falls back to DATABASE_URL
    (Heroku standard).  Normalises postgres:// to postgresql:// for psycopg2.
    """
    url = (os.getenv("POSTGRES_CONNECTION_STRING") or os.getenv("DATABASE_URL") or "").strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _to_plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def _require(conn_str: Optional[str]) -> str:
    cs = conn_str or get_conn_str()
    if not cs:
        raise RuntimeError("POSTGRES_CONNECTION_STRING is not set")
    return cs


def fetch_all(query: str, params: Optional[tuple] = None,
              conn_str: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = psycopg2.connect(_require(conn_str))
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params or ())
            return [{k: _to_plain(v) for k, v in dict(row).items()} for row in cur.fetchall()]
    finally:
        conn.close()


def fetch_one(query: str, params: Optional[tuple] = None,
              conn_str: Optional[str] = None) -> Optional[Dict[str, Any]]:
    rows = fetch_all(query, params, conn_str)
    return rows[0] if rows else None


def execute(query: str, params: Optional[tuple] = None,
            conn_str: Optional[str] = None) -> int:
    """Run a single write statement in autocommit mode; returns rowcount."""
    conn = psycopg2.connect(_require(conn_str))
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            cur.execute(query, params or ())
            return cur.rowcount
    finally:
        conn.close()


def as_datetime(value: Any) -> Optional[datetime]:
    """Coerce DB/date values to datetime (dates become midnight)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value))


def execute_returning(query: str, params: Optional[tuple] = None,
                      conn_str: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Run a write with a RETURNING clause in autocommit mode; returns the first row."""
    conn = psycopg2.connect(_require(conn_str))
    conn.autocommit = True
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params or ())
            row = cur.fetchone()
            return {k: _to_plain(v) for k, v in dict(row).items()} if row else None
    finally:
        conn.close()


def run_with_retry(fn, *args, attempts: int = 3, wait=None, **kwargs):
    """Call *fn* with exponential backoff on transient psycopg2 errors.

    Any database error left after the last attempt is raised as StorageError.
    """
    retryer = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait if wait is not None else wait_exponential(multiplier=2, min=2, max=30),
        retry=retry_if_exception_type(TRANSIENT_DB_ERRORS),
        reraise=True,
    )
    try:
        return retryer(fn, *args, **kwargs)
    except psycopg2.Error as e:
        raise StorageError(f"{getattr(fn, '__name__', 'db call')} failed: {e}") from e
