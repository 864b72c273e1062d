"""Nightly pattern re-validation with explicit health signaling."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from cache import TTLCache
from config import (
    DEFAULT_MIN_CONFIDENCE,
    LOG_LEVEL,
    PIPELINE_STATUS_PATH,
    SERIES_CACHE_TTL_SECONDS,
    STRICT_PIPELINE_HEALTH,
)
from correlation_engine import CorrelationEngine, PatternPersistenceError, resolve_pattern_types
from db_utils import fetch_all, get_conn_str
from pattern_store import PostgresPatternStore
from pipeline.migrations import ensure_startup_schema
from timeseries_repository import CachedTimeSeriesRepository, PostgresTimeSeriesRepository

log = logging.getLogger("revalidation_pipeline")


def discover_users(conn_str: Optional[str] = None) -> List[str]:
    rows = fetch_all(
        "SELECT DISTINCT user_id FROM timeseries_samples ORDER BY user_id",
        conn_str=conn_str,
    )
    return [r["user_id"] for r in rows]


class RevalidationPipeline:
    """Re-run correlation analysis for every user and persist a status file."""

    def __init__(self, engine: Optional[CorrelationEngine] = None,
                 conn_str: Optional[str] = None,
                 domains: Iterable[str] = ("all",),
                 min_confidence: float = DEFAULT_MIN_CONFIDENCE,
                 run_migrations: bool = True,
                 status_path: Optional[str] = None,
                 strict_health: bool = STRICT_PIPELINE_HEALTH):
        self.conn_str = conn_str if conn_str is not None else get_conn_str()
        self.engine = engine or self._build_engine(self.conn_str)
        self.domains = list(domains)
        resolve_pattern_types(self.domains)
        self.min_confidence = min_confidence
        self.run_migrations = run_migrations
        self.status_path = status_path or PIPELINE_STATUS_PATH or None
        self.strict_health = strict_health

    @staticmethod
    def _build_engine(conn_str: str) -> CorrelationEngine:
        repository = CachedTimeSeriesRepository(
            PostgresTimeSeriesRepository(conn_str),
            TTLCache(SERIES_CACHE_TTL_SECONDS),
        )
        return CorrelationEngine(repository, PostgresPatternStore(conn_str))

    def run(self, user_ids: Optional[Iterable[str]] = None) -> bool:
        """Execute the pipeline; returns whether the run counts as healthy."""
        status: Dict[str, Any] = {
            "run_date": date.today().isoformat(),
            "run_started_at": datetime.utcnow().isoformat() + "Z",
            "migrations_ok": not self.run_migrations,
            "domains": self.domains,
            "min_confidence": self.min_confidence,
            "users": {},
            "analysis_status": "unknown",
            "degraded_reasons": [],
        }

        log.info("=" * 60)
        log.info("  PATTERN RE-VALIDATION STARTED")
        log.info("  Date: %s", date.today())
        log.info("=" * 60)

        try:
            if self.run_migrations:
                log.info("Step 0/2: Running startup migrations...")
                ensure_startup_schema(self.conn_str)
                status["migrations_ok"] = True

            users = list(user_ids) if user_ids is not None else discover_users(self.conn_str)
            log.info("Step 1/2: Re-analyzing %d user(s)...", len(users))
            for user_id in users:
                status["users"][user_id] = self._analyze_user(user_id)

            log.info("Step 2/2: Summarizing...")
            status["analysis_status"], status["degraded_reasons"] = self._analysis_status(status["users"])
            if status["analysis_status"] == "degraded":
                log.warning("Re-validation degraded: %s", ", ".join(status["degraded_reasons"]))

        except Exception as e:
            status["analysis_status"] = "failed"
            status["degraded_reasons"] = ["pipeline_exception"]
            log.exception("Pipeline failed: %s", e)
        finally:
            status["run_finished_at"] = datetime.utcnow().isoformat() + "Z"
            status["overall_status"] = self._overall_status(status)
            self._write_pipeline_status_file(status)
            log.info("=" * 60)
            log.info("  RE-VALIDATION COMPLETE (status=%s)", status["overall_status"])
            log.info("=" * 60)

        if self.strict_health:
            return status["overall_status"] == "success"
        return status["overall_status"] != "failed"

    def _analyze_user(self, user_id: str) -> Dict[str, Any]:
        try:
            result = self.engine.analyze(user_id, self.domains, self.min_confidence)
            log.info("  %s: %d pattern(s)", user_id, len(result.patterns))
            return {"status": "ok", "patterns": [p.pattern_type for p in result.patterns]}
        except PatternPersistenceError as e:
            log.error("  %s: patterns computed but not saved: %s", user_id, e)
            return {
                "status": "persistence_failed",
                "patterns": [p.pattern_type for p in e.result.patterns],
                "error": str(e),
            }
        except Exception as e:
            log.error("  %s: analysis failed: %s", user_id, e)
            return {"status": "failed", "patterns": [], "error": str(e)}

    @staticmethod
    def _analysis_status(users: Dict[str, Dict[str, Any]]):
        if not users:
            return "degraded", ["no_users"]
        reasons = [f"{info['status']}:{uid}" for uid, info in users.items() if info["status"] != "ok"]
        if not reasons:
            return "success", []
        if len(reasons) == len(users):
            return "failed", reasons
        return "degraded", reasons

    @staticmethod
    def _overall_status(status: Dict[str, Any]) -> str:
        if not status.get("migrations_ok", False):
            return "failed"
        if status.get("analysis_status") in ("failed", "unknown"):
            return "failed"
        if status.get("analysis_status") == "degraded":
            return "degraded"
        return "success"

    def _write_pipeline_status_file(self, status: Dict[str, Any]) -> None:
        path = self.status_path or f"revalidation_status_{date.today().isoformat()}.json"
        try:
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(status, fh, indent=2, ensure_ascii=False)
            log.info("Pipeline status written to %s", path)
        except OSError as e:
            log.warning("Failed to write pipeline status file: %s", e)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(description="Correlation pattern re-validation")
    parser.add_argument("--users", default="",
                        help="Comma-separated user ids (default: every user with samples)")
    parser.add_argument("--min-confidence", type=float, default=DEFAULT_MIN_CONFIDENCE,
                        help=f"Minimum pattern confidence (default: {DEFAULT_MIN_CONFIDENCE:g})")
    parser.add_argument("--domains", default="all",
                        help="Comma-separated domains: sleep, workout, finance, calendar, performance, all")
    parser.add_argument("--skip-migrations", action="store_true",
                        help="Do not run startup migrations")
    args = parser.parse_args(argv)

    users = [u.strip() for u in args.users.split(",") if u.strip()] or None
    domains = [d.strip() for d in args.domains.split(",") if d.strip()] or ["all"]

    pipeline = RevalidationPipeline(
        domains=domains,
        min_confidence=args.min_confidence,
        run_migrations=not args.skip_migrations,
    )
    sys.exit(0 if pipeline.run(users) else 1)


if __name__ == "__main__":
    main()
