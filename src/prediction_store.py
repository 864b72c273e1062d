"""Persisted predictions (in-memory and PostgreSQL)."""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from psycopg2.extras import Json

from db_utils import execute, execute_returning, fetch_all, fetch_one, run_with_retry
from models import Prediction

log = logging.getLogger("prediction_store")


class PredictionAlreadyResolved(ValueError):
    """An outcome was already recorded for this prediction."""


class PredictionNotFound(KeyError):
    pass


class PredictionStore(ABC):

    @abstractmethod
    def save(self, prediction: Prediction) -> Prediction:
        ...

    @abstractmethod
    def get(self, prediction_id: str) -> Optional[Prediction]:
        ...

    @abstractmethod
    def list_for_user(self, user_id: str, status: Optional[str] = None) -> List[Prediction]:
        """Predictions for *user_id*, oldest first."""

    @abstractmethod
    def resolve(self, prediction_id: str, actual_value: float, accuracy: float) -> Prediction:
        """Mark an active prediction completed with its outcome."""


class InMemoryPredictionStore(PredictionStore):

    def __init__(self) -> None:
        self._records: Dict[str, Prediction] = {}
        self._lock = threading.Lock()

    def save(self, prediction):
        with self._lock:
            self._records[prediction.prediction_id] = copy.deepcopy(prediction)
        return prediction

    def get(self, prediction_id):
        with self._lock:
            record = self._records.get(prediction_id)
        return copy.deepcopy(record) if record is not None else None

    def list_for_user(self, user_id, status=None):
        with self._lock:
            rows = [copy.deepcopy(p) for p in self._records.values() if p.user_id == user_id]
        if status:
            rows = [p for p in rows if p.status == status]
        rows.sort(key=lambda p: p.created_at)
        return rows

    def resolve(self, prediction_id, actual_value, accuracy):
        with self._lock:
            record = self._records.get(prediction_id)
            if record is None:
                raise PredictionNotFound(prediction_id)
            if record.status != "active":
                raise PredictionAlreadyResolved(prediction_id)
            record.status = "completed"
            record.actual_value = float(actual_value)
            record.accuracy = accuracy
            return copy.deepcopy(record)


class PostgresPredictionStore(PredictionStore):
    """Predictions as JSONB documents keyed by ``prediction_id``."""

    def __init__(self, conn_str: Optional[str] = None, retry_wait=None):
        self.conn_str = conn_str
        self.retry_wait = retry_wait

    def _call(self, fn, *args):
        return run_with_retry(fn, *args, conn_str=self.conn_str, wait=self.retry_wait)

    def save(self, prediction):
        self._call(
            execute,
            """
            INSERT INTO predictions
                (prediction_id, user_id, prediction_type, status, created_at, document)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (prediction_id) DO UPDATE SET
                status = EXCLUDED.status,
                document = EXCLUDED.document
            """,
            (
                prediction.prediction_id,
                prediction.user_id,
                prediction.prediction_type,
                prediction.status,
                prediction.created_at,
                Json(prediction.to_dict()),
            ),
        )
        return prediction

    def get(self, prediction_id):
        row = self._call(
            fetch_one,
            "SELECT document FROM predictions WHERE prediction_id = %s",
            (prediction_id,),
        )
        return Prediction.from_dict(row["document"]) if row else None

    def list_for_user(self, user_id, status=None):
        if status:
            rows = self._call(
                fetch_all,
                "SELECT document FROM predictions WHERE user_id = %s AND status = %s ORDER BY created_at",
                (user_id, status),
            )
        else:
            rows = self._call(
                fetch_all,
                "SELECT document FROM predictions WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            )
        return [Prediction.from_dict(r["document"]) for r in rows]

    def resolve(self, prediction_id, actual_value, accuracy):
        # Single conditional UPDATE: a second resolve matches no row
        row = self._call(
            execute_returning,
            """
            UPDATE predictions SET
                status = 'completed',
                document = document || jsonb_build_object(
                    'status', 'completed',
                    'actual_value', %s::double precision,
                    'accuracy', %s::double precision
                )
            WHERE prediction_id = %s AND status = 'active'
            RETURNING document
            """,
            (float(actual_value), accuracy, prediction_id),
        )
        if row:
            return Prediction.from_dict(row["document"])
        if self.get(prediction_id) is None:
            raise PredictionNotFound(prediction_id)
        log.warning("Prediction %s already resolved", prediction_id)
        raise PredictionAlreadyResolved(prediction_id)
