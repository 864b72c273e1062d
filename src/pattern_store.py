"""
Persisted correlation patterns and their lifecycle.
==================================================

One record per ``(user_id, pattern_type)``.  Records are never deleted:
deactivation flips ``is_active`` and keeps the row for audit.

Lifecycle:

    monitoring ──confirm──▶ validated
        └──────reject────▶ invalidated
    is_active=True ──deactivate──▶ is_active=False   (terminal for triggering)

Re-analysis only ever refreshes the correlation block; it never changes
``validation_status``.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from psycopg2.extras import Json

from constants import (
    OUTCOME_HISTORY_FOR_SUCCESS_RATE,
    VALIDATION_INVALIDATED,
    VALIDATION_MONITORING,
    VALIDATION_VALIDATED,
)
from db_utils import execute, execute_returning, fetch_all, fetch_one, run_with_retry
from models import CorrelationPattern, Outcome, TriggerResult

log = logging.getLogger("pattern_store")


class InvalidTransition(ValueError):
    """Lifecycle change not allowed from the record's current state."""


class PatternNotFound(KeyError):
    pass


def outcome_accuracy(predicted: float, actual: float) -> float:
    """Percentage accuracy of *predicted* against *actual*, floored at 0."""
    if actual == 0:
        return 100.0 if predicted == 0 else 0.0
    return max(0.0, 100.0 - abs(predicted - actual) / abs(actual) * 100.0)


def _utcnow() -> datetime:
    return datetime.utcnow()


class PatternStore(ABC):
    """Lifecycle rules on top of three persistence primitives.

    Subclasses provide ``_load``, ``_load_user`` and ``_save`` (plus an
    optional per-user lock); everything else lives here.
    """

    # ─── Persistence primitives ────────────────────────────

    @abstractmethod
    def _load(self, user_id: str, pattern_type: str) -> Optional[CorrelationPattern]:
        ...

    @abstractmethod
    def _load_user(self, user_id: str) -> List[CorrelationPattern]:
        ...

    @abstractmethod
    def _save(self, pattern: CorrelationPattern) -> None:
        ...

    def _lock(self, user_id: str):
        return nullcontext()

    def _save_trigger_state(self, pattern: CorrelationPattern,
                            previous: Optional[datetime]) -> bool:
        """Persist ``last_triggered``/``trigger_count``; False if the write lost a race."""
        self._save(pattern)
        return True

    def _save_outcome(self, pattern: CorrelationPattern) -> None:
        """Persist the newest outcome and ``success_rate``."""
        self._save(pattern)

    # ─── Reads ─────────────────────────────────────────────

    def get(self, user_id: str, pattern_type: str) -> Optional[CorrelationPattern]:
        return self._load(user_id, pattern_type)

    def list_for_user(self, user_id: str, active_only: bool = False) -> List[CorrelationPattern]:
        patterns = self._load_user(user_id)
        if active_only:
            patterns = [p for p in patterns if p.is_active]
        return patterns

    def strongest_patterns(self, user_id: str, limit: int = 5,
                           min_confidence: float = 70) -> List[CorrelationPattern]:
        """Active patterns at or above *min_confidence*, strongest |r| first."""
        candidates = [p for p in self.list_for_user(user_id, active_only=True)
                      if p.correlation.confidence >= min_confidence]
        candidates.sort(key=lambda p: abs(p.correlation.strength), reverse=True)
        return candidates[:limit]

    def patterns_ready_to_trigger(self, user_id: str, now: Optional[datetime] = None) -> List[CorrelationPattern]:
        """Active patterns whose trigger cooldown has elapsed."""
        now = now or _utcnow()
        return [p for p in self.list_for_user(user_id, active_only=True)
                if p.triggers and not self._cooling_down(p, now)]

    # ─── Writes ────────────────────────────────────────────

    def upsert(self, candidate: CorrelationPattern, now: Optional[datetime] = None) -> CorrelationPattern:
        """Insert a new pattern or refresh an existing one's correlation block.

        The candidate is validated before anything is written.
        """
        candidate.validate()
        now = now or _utcnow()
        with self._lock(candidate.user_id):
            existing = self._load(candidate.user_id, candidate.pattern_type)
            if existing is None:
                record = copy.deepcopy(candidate)
                record.is_active = True
                record.validation_status = VALIDATION_MONITORING
                record.discovered_at = record.discovered_at or now
                record.last_validated = now
                log.info("New pattern %s for user %s (r=%.2f)",
                         record.pattern_type, record.user_id, record.correlation.strength)
            else:
                record = existing
                record.correlation = copy.deepcopy(candidate.correlation)
                record.stability = candidate.stability
                record.last_validated = now
                log.info("Refreshed pattern %s for user %s", record.pattern_type, record.user_id)
            self._save(record)
            return record

    def evaluate_triggers(self, pattern: CorrelationPattern, sample: Dict[str, float],
                          now: Optional[datetime] = None) -> Optional[TriggerResult]:
        """Fire the first matching trigger unless inactive or cooling down.

        *pattern* only identifies the record: activity, cooldown and the
        triggers themselves are read from the stored copy, and only the
        trigger bookkeeping is written back.
        """
        now = now or _utcnow()
        with self._lock(pattern.user_id):
            current = self._require(pattern.user_id, pattern.pattern_type)
            if not current.is_active or self._cooling_down(current, now):
                return None
            trigger = next((t for t in current.triggers if t.matches(sample)), None)
            if trigger is None:
                return None
            previous = current.last_triggered
            current.last_triggered = now
            current.trigger_count += 1
            if not self._save_trigger_state(current, previous):
                return None
        log.info("Trigger fired: %s (%s)", current.pattern_type, trigger.condition)
        return TriggerResult(
            pattern_type=current.pattern_type,
            trigger=trigger,
            value=float(sample[trigger.metric]),
            fired_at=now,
        )

    def record_outcome(self, pattern: CorrelationPattern, predicted: float, actual: float,
                       now: Optional[datetime] = None) -> Outcome:
        outcome = Outcome(
            date=now or _utcnow(),
            predicted=float(predicted),
            actual=float(actual),
            accuracy=round(outcome_accuracy(predicted, actual), 2),
        )
        with self._lock(pattern.user_id):
            current = self._require(pattern.user_id, pattern.pattern_type)
            current.outcomes.append(outcome)
            recent = current.outcomes[-OUTCOME_HISTORY_FOR_SUCCESS_RATE:]
            current.success_rate = round(float(np.mean([o.accuracy for o in recent])))
            self._save_outcome(current)
        return outcome

    def confirm(self, user_id: str, pattern_type: str) -> CorrelationPattern:
        return self._transition(user_id, pattern_type, VALIDATION_VALIDATED)

    def reject(self, user_id: str, pattern_type: str) -> CorrelationPattern:
        return self._transition(user_id, pattern_type, VALIDATION_INVALIDATED)

    def deactivate(self, user_id: str, pattern_type: str) -> CorrelationPattern:
        with self._lock(user_id):
            pattern = self._require(user_id, pattern_type)
            pattern.is_active = False
            self._save(pattern)
        log.info("Deactivated pattern %s for user %s", pattern_type, user_id)
        return pattern

    # ─── Helpers ───────────────────────────────────────────

    def _transition(self, user_id: str, pattern_type: str, target: str) -> CorrelationPattern:
        with self._lock(user_id):
            pattern = self._require(user_id, pattern_type)
            if pattern.validation_status != VALIDATION_MONITORING:
                raise InvalidTransition(
                    f"{pattern_type}: cannot move from {pattern.validation_status} to {target}"
                )
            pattern.validation_status = target
            self._save(pattern)
        log.info("Pattern %s for user %s is now %s", pattern_type, user_id, target)
        return pattern

    def _require(self, user_id: str, pattern_type: str) -> CorrelationPattern:
        pattern = self._load(user_id, pattern_type)
        if pattern is None:
            raise PatternNotFound(f"{user_id}/{pattern_type}")
        return pattern

    @staticmethod
    def _cooling_down(pattern: CorrelationPattern, now: datetime) -> bool:
        if pattern.last_triggered is None:
            return False
        window = timedelta(hours=pattern.time_relationship.window_hours)
        return now - pattern.last_triggered < window


# ─── In-memory ─────────────────────────────────────────────


class InMemoryPatternStore(PatternStore):
    """Dict-backed store; writes for one user are serialised by a lock."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], CorrelationPattern] = {}
        self._user_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._guard = threading.Lock()

    @contextmanager
    def _lock(self, user_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._user_locks[user_id]
        with lock:
            yield

    def _load(self, user_id, pattern_type):
        record = self._records.get((user_id, pattern_type))
        return copy.deepcopy(record) if record is not None else None

    def _load_user(self, user_id):
        return [copy.deepcopy(p) for (uid, _), p in sorted(self._records.items()) if uid == user_id]

    def _save(self, pattern):
        self._records[pattern.key] = copy.deepcopy(pattern)

    def __len__(self) -> int:
        return len(self._records)


# ─── PostgreSQL ────────────────────────────────────────────


class PostgresPatternStore(PatternStore):
    """JSONB-document store on ``correlation_patterns``.

    ``upsert`` is one ``INSERT ... ON CONFLICT DO UPDATE`` statement, so
    concurrent re-analysis of the same pattern is last-writer-wins.
    Trigger bookkeeping and outcomes are ``jsonb ||`` merges of their own
    keys, so they never overwrite lifecycle fields.
    """

    def __init__(self, conn_str: Optional[str] = None, retry_wait=None):
        self.conn_str = conn_str
        self.retry_wait = retry_wait

    def _call(self, fn, *args):
        return run_with_retry(fn, *args, conn_str=self.conn_str, wait=self.retry_wait)

    def _load(self, user_id, pattern_type):
        row = self._call(
            fetch_one,
            "SELECT document FROM correlation_patterns WHERE user_id = %s AND pattern_type = %s",
            (user_id, pattern_type),
        )
        return CorrelationPattern.from_dict(row["document"]) if row else None

    def _load_user(self, user_id):
        rows = self._call(
            fetch_all,
            "SELECT document FROM correlation_patterns WHERE user_id = %s ORDER BY pattern_type",
            (user_id,),
        )
        return [CorrelationPattern.from_dict(r["document"]) for r in rows]

    def _save(self, pattern):
        self._call(
            execute,
            """
            INSERT INTO correlation_patterns
                (user_id, pattern_type, document, is_active, validation_status, confidence, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, pattern_type) DO UPDATE SET
                document = EXCLUDED.document,
                is_active = EXCLUDED.is_active,
                validation_status = EXCLUDED.validation_status,
                confidence = EXCLUDED.confidence,
                updated_at = NOW()
            """,
            self._row_params(pattern),
        )

    def _save_trigger_state(self, pattern, previous):
        # Compare-and-set on last_triggered so two callers cannot both fire
        # inside one cooldown window; inactive rows are never touched.
        row = self._call(
            execute_returning,
            """
            UPDATE correlation_patterns SET
                document = document || jsonb_build_object(
                    'last_triggered', %s::text,
                    'trigger_count', COALESCE((document ->> 'trigger_count')::int, 0) + 1
                ),
                updated_at = NOW()
            WHERE user_id = %s AND pattern_type = %s
              AND is_active
              AND (document ->> 'last_triggered') IS NOT DISTINCT FROM %s
            RETURNING document
            """,
            (pattern.last_triggered.isoformat(), pattern.user_id, pattern.pattern_type,
             previous.isoformat() if previous else None),
        )
        if row is None:
            log.info("Trigger for %s/%s skipped: record changed concurrently",
                     pattern.user_id, pattern.pattern_type)
            return False
        return True

    def _save_outcome(self, pattern):
        newest = pattern.to_dict()["outcomes"][-1]
        row = self._call(
            execute_returning,
            """
            UPDATE correlation_patterns SET
                document = document || jsonb_build_object(
                    'outcomes', COALESCE(document -> 'outcomes', '[]'::jsonb) || %s::jsonb,
                    'success_rate', %s
                ),
                updated_at = NOW()
            WHERE user_id = %s AND pattern_type = %s
            RETURNING document
            """,
            (Json([newest]), pattern.success_rate, pattern.user_id, pattern.pattern_type),
        )
        if row is None:
            raise PatternNotFound(f"{pattern.user_id}/{pattern.pattern_type}")

    def upsert(self, candidate: CorrelationPattern, now: Optional[datetime] = None) -> CorrelationPattern:
        candidate.validate()
        now = now or _utcnow()
        record = copy.deepcopy(candidate)
        record.is_active = True
        record.validation_status = VALIDATION_MONITORING
        record.discovered_at = record.discovered_at or now
        record.last_validated = now
        doc = record.to_dict()
        row = self._call(
            execute_returning,
            """
            INSERT INTO correlation_patterns
                (user_id, pattern_type, document, is_active, validation_status, confidence, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, pattern_type) DO UPDATE SET
                document = correlation_patterns.document || jsonb_build_object(
                    'correlation', EXCLUDED.document -> 'correlation',
                    'stability', EXCLUDED.document -> 'stability',
                    'last_validated', EXCLUDED.document -> 'last_validated'
                ),
                confidence = EXCLUDED.confidence,
                updated_at = NOW()
            RETURNING document
            """,
            (record.user_id, record.pattern_type, Json(doc), True,
             VALIDATION_MONITORING, record.correlation.confidence),
        )
        stored = CorrelationPattern.from_dict(row["document"]) if row else record
        log.info("Upserted pattern %s for user %s", stored.pattern_type, stored.user_id)
        return stored

    @staticmethod
    def _row_params(pattern: CorrelationPattern) -> tuple:
        return (
            pattern.user_id,
            pattern.pattern_type,
            Json(pattern.to_dict()),
            pattern.is_active,
            pattern.validation_status,
            pattern.correlation.confidence,
        )
