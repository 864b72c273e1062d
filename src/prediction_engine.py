"""
Prediction Engine
=================
Bounded, explainable predictions built from a user's recent history.

Each prediction type is a small model over the injected repository:

  recovery        linear trend on recovery_score, clamped [30, 100]
  illness/injury/
  burnout         additive risk factors (analytics.risk_model)
  performance     trend on workout performance ratings (recovery proxy when sparse)
  energy          blend of recovery and sleep, projected and scaled to 1-10
  goal_success    progress velocity vs. time remaining
  weight_change   linear trend on body weight

Every result carries factor names only.  When history is missing the
value is ``None`` with ``factors=['insufficient_data']``; nothing is
invented.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np

from analytics.forecast_composer import ForecastComposer, confidence_for_day, find_optimal_window
from analytics.risk_model import RiskInputs, RiskModel
from analytics.trend_projector import fit_trend, project
from config import DEFAULT_MIN_CONFIDENCE
from constants import INSUFFICIENT_DATA, METRIC_ALIASES, PREDICTION_TYPES, RISK_TYPES
from db_utils import StorageError, as_datetime
from models import ForecastPoint, Prediction, RiskAssessment
from prediction_store import PredictionAlreadyResolved, PredictionNotFound, PredictionStore
from timeseries_repository import TimeSeriesRepository, load_daily_metric

log = logging.getLogger("prediction_engine")

FORECAST_HISTORY_DAYS = 30

PREDICTION_MODELS = {
    "recovery": "linear_regression",
    "illness": "risk_assessment",
    "injury": "risk_assessment",
    "burnout": "risk_assessment",
    "performance": "trend_analysis",
    "energy": "time_series",
    "goal_success": "probability_model",
    "weight_change": "linear_regression",
}

BELOW_REQUESTED_CONFIDENCE = "below_requested_confidence"


class PredictionPersistenceError(StorageError):
    """The prediction was computed but not saved; ``prediction`` holds it."""

    def __init__(self, message: str, prediction: Prediction):
        super().__init__(message)
        self.prediction = prediction


@dataclass
class _Estimate:
    value: Optional[float]
    confidence: float
    factors: List[str] = field(default_factory=list)


def _insufficient() -> _Estimate:
    return _Estimate(value=None, confidence=0, factors=[INSUFFICIENT_DATA])


def prediction_accuracy(predicted: Optional[float], actual: Optional[float]) -> int:
    """100 minus the percentage error relative to the mean of both values."""
    if not predicted or not actual:
        return 0
    average = (predicted + actual) / 2
    error = abs(predicted - actual) / abs(average) * 100
    return round(max(0.0, 100 - error))


def _values(series) -> List[float]:
    return [float(v) for v in series.dropna().tolist()]


class PredictionEngine:

    def __init__(self, repository: TimeSeriesRepository, prediction_store: PredictionStore,
                 risk_model: Optional[RiskModel] = None,
                 composer: Optional[ForecastComposer] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.prediction_store = prediction_store
        self.risk_model = risk_model or RiskModel()
        self.composer = composer or ForecastComposer()
        self._clock = clock or datetime.utcnow
        self._estimators = {
            "recovery": self._predict_recovery,
            "illness": self._predict_risk,
            "injury": self._predict_risk,
            "burnout": self._predict_risk,
            "performance": self._predict_performance,
            "energy": self._predict_energy,
            "goal_success": self._predict_goal_success,
            "weight_change": self._predict_weight_change,
        }

    # ═══════════════════════════════════════════════════════
    #  PUBLIC
    # ═══════════════════════════════════════════════════════

    def predict(self, user_id: str, prediction_type: str, horizon_days: int = 7,
                min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> Prediction:
        """Compute, persist and return one prediction.

        A result whose confidence falls short of *min_confidence* is still
        returned, flagged with the ``below_requested_confidence`` factor.
        """
        if prediction_type not in PREDICTION_TYPES:
            raise ValueError(f"Invalid prediction type '{prediction_type}'")
        if horizon_days < 0:
            raise ValueError("horizon_days must be non-negative")

        now = self._clock()
        estimate = self._estimators[prediction_type](user_id, prediction_type, horizon_days, now)
        factors = list(estimate.factors)
        if estimate.value is not None and estimate.confidence < min_confidence:
            factors.append(BELOW_REQUESTED_CONFIDENCE)

        prediction = Prediction(
            user_id=user_id,
            prediction_type=prediction_type,
            horizon_days=horizon_days,
            predicted_value=estimate.value,
            confidence_level=estimate.confidence,
            prediction_model=PREDICTION_MODELS[prediction_type],
            factors=factors,
            created_at=now,
            prediction_date=now + timedelta(days=horizon_days),
        )
        log.info("Prediction %s for user %s: %s (%s)", prediction_type, user_id,
                 prediction.predicted_value, ", ".join(factors))
        try:
            self.prediction_store.save(prediction)
        except StorageError as e:
            log.error("Failed to persist %s prediction: %s", prediction_type, e)
            raise PredictionPersistenceError(str(e), prediction) from e
        return prediction

    def forecast(self, user_id: str, metric_names: Iterable[str], days: int = 7) -> Dict[str, List[ForecastPoint]]:
        """Per-metric day-by-day forecast; metrics with no history map to []."""
        now = self._clock()
        out: Dict[str, List[ForecastPoint]] = {}
        for name in metric_names:
            metric = METRIC_ALIASES.get(name, name)
            source = self.composer.proxy_source(metric)
            if source:
                base = self._forecast_metric(user_id, source, days, now)
                out[name] = self.composer.from_proxy(metric, base)
            else:
                out[name] = self._forecast_metric(user_id, metric, days, now)
        return out

    def assess_risk(self, user_id: str, risk_type: str) -> RiskAssessment:
        if risk_type not in RISK_TYPES:
            raise ValueError(f"Invalid risk type '{risk_type}'")
        inputs = self._risk_inputs(user_id, risk_type, self._clock())
        return self.risk_model.evaluate(risk_type, inputs)

    def find_optimal_window(self, user_id: str, activity: str, days: int = 7) -> Dict[str, Any]:
        forecast = self._forecast_metric(user_id, "recovery_score", days, self._clock())
        return find_optimal_window(forecast, activity)

    def record_outcome(self, prediction_id: str, actual_value: float) -> Prediction:
        prediction = self.prediction_store.get(prediction_id)
        if prediction is None:
            raise PredictionNotFound(prediction_id)
        if prediction.status != "active":
            raise PredictionAlreadyResolved(prediction_id)
        accuracy = prediction_accuracy(prediction.predicted_value, actual_value)
        return self.prediction_store.resolve(prediction_id, actual_value, accuracy)

    def accuracy_stats(self, user_id: str) -> Dict[str, Any]:
        predictions = self.prediction_store.list_for_user(user_id, status="completed")
        if not predictions:
            return {
                "average_accuracy": 0,
                "total_predictions": 0,
                "by_type": {},
                "trend": INSUFFICIENT_DATA,
            }

        accuracies = [p.accuracy or 0 for p in predictions]
        by_type: Dict[str, Dict[str, Any]] = {}
        for p in predictions:
            bucket = by_type.setdefault(p.prediction_type, {"count": 0, "total_accuracy": 0.0})
            bucket["count"] += 1
            bucket["total_accuracy"] += p.accuracy or 0
        for bucket in by_type.values():
            bucket["avg_accuracy"] = round(bucket["total_accuracy"] / bucket["count"])

        recent_avg = float(np.mean(accuracies[-10:]))
        older_avg = float(np.mean(accuracies[:10]))
        trend = "stable"
        if recent_avg > older_avg + 5:
            trend = "improving"
        elif recent_avg < older_avg - 5:
            trend = "declining"

        return {
            "average_accuracy": round(float(np.mean(accuracies))),
            "total_predictions": len(predictions),
            "by_type": by_type,
            "trend": trend,
            "recent_accuracy": round(recent_avg),
        }

    # ═══════════════════════════════════════════════════════
    #  DATA ACCESS
    # ═══════════════════════════════════════════════════════

    def _daily(self, user_id: str, metric: str, days: int, now: datetime) -> List[float]:
        series = load_daily_metric(self.repository, user_id, metric, now - timedelta(days=days), now)
        return _values(series)

    def _forecast_metric(self, user_id: str, metric: str, days: int, now: datetime) -> List[ForecastPoint]:
        history = self._daily(user_id, metric, FORECAST_HISTORY_DAYS, now)
        return self.composer.compose(metric, history, days, now.date())

    def _workouts(self, user_id: str, days: int, now: datetime):
        return self.repository.fetch_raw_events(user_id, "workout", now - timedelta(days=days), now)

    def _risk_inputs(self, user_id: str, risk_type: str, now: datetime) -> RiskInputs:
        window = self.risk_model.rule(risk_type).window_days
        return RiskInputs(
            hrv=self._daily(user_id, "hrv", window, now),
            recovery=self._daily(user_id, "recovery_score", window, now),
            sleep_minutes=self._daily(user_id, "sleep_duration", window, now),
            resting_hr=self._daily(user_id, "resting_hr", window, now),
            workouts=self._workouts(user_id, window, now),
            window_days=window,
        )

    # ═══════════════════════════════════════════════════════
    #  ESTIMATORS
    # ═══════════════════════════════════════════════════════

    def _predict_recovery(self, user_id, _type, horizon, now) -> _Estimate:
        scores = self._daily(user_id, "recovery_score", 30, now)
        if not scores:
            return _insufficient()
        fit = fit_trend(scores)
        factors = []
        if fit.slope > 0.5:
            factors.append("improving_trend")
        elif fit.slope < -0.5:
            factors.append("declining_trend")
        else:
            factors.append("stable_trend")

        hrv = self._daily(user_id, "hrv", 7, now)
        if hrv:
            if hrv[-1] > 60:
                factors.append("good_hrv")
            elif hrv[-1] < 40:
                factors.append("low_hrv")

        recent_workouts = len(self._workouts(user_id, 7, now))
        if recent_workouts > 5:
            factors.append("high_training_volume")
        elif recent_workouts < 2:
            factors.append("low_training_volume")
        if fit.low_confidence:
            factors.append("limited_history")

        return _Estimate(
            value=round(project(fit, horizon, metric="recovery_score")),
            confidence=confidence_for_day(horizon, fit.low_confidence),
            factors=factors,
        )

    def _predict_risk(self, user_id, risk_type, horizon, now) -> _Estimate:
        assessment = self.risk_model.evaluate(
            risk_type, self._risk_inputs(user_id, risk_type, now), horizon_days=horizon
        )
        if assessment.insufficient_data:
            return _insufficient()
        return _Estimate(
            value=assessment.score,
            confidence=confidence_for_day(horizon),
            factors=list(assessment.factors),
        )

    def _predict_performance(self, user_id, _type, horizon, now) -> _Estimate:
        workouts = self._workouts(user_id, 60, now)
        ratings = [float(w.attributes["performance_rating"]) for w in workouts
                   if w.attributes.get("performance_rating") is not None]

        if len(ratings) < 10:
            # Too few ratings: fall back to the recovery forecast on a 1-10 scale
            proxy = self.forecast(user_id, ["performance"], max(horizon, 1))["performance"]
            if not proxy:
                return _insufficient()
            point = proxy[max(horizon, 1) - 1]
            return _Estimate(value=point.value, confidence=point.confidence,
                             factors=["recovery_proxy"])

        fit = fit_trend(ratings)
        value = project(fit, horizon * 0.1, metric="performance_rating")
        factors = []
        if fit.slope > 0.1:
            factors.append("improving_performance")
        elif fit.slope < -0.1:
            factors.append("declining_performance")
        else:
            factors.append("stable_performance")

        recent = sum(1 for w in workouts if w.started_at >= now - timedelta(days=14))
        if recent >= 8:
            factors.append("consistent_training")
        elif recent < 4:
            factors.append("inconsistent_training")

        return _Estimate(value=round(value, 1), confidence=confidence_for_day(horizon), factors=factors)

    def _predict_energy(self, user_id, _type, horizon, now) -> _Estimate:
        start = now - timedelta(days=14)
        recovery = load_daily_metric(self.repository, user_id, "recovery_score", start, now).dropna()
        if recovery.empty:
            return _insufficient()
        sleep = load_daily_metric(self.repository, user_id, "sleep_duration", start, now).dropna()

        # 8 hours of sleep scores 100; nights without a reading count as 7 hours
        sleep_by_day = sleep.reindex(recovery.index).fillna(420)
        sleep_score = (sleep_by_day / 480 * 100).clip(upper=100)
        energy = (recovery * 0.6 + sleep_score * 0.4).tolist()

        fit = fit_trend(energy)
        value = project(fit, horizon, metric="energy") / 10
        factors = []
        if fit.slope > 1:
            factors.append("energy_improving")
        elif fit.slope < -1:
            factors.append("energy_declining")
        else:
            factors.append("energy_stable")
        if not sleep.empty:
            avg_sleep = float(sleep.mean())
            if avg_sleep < 6.5 * 60:
                factors.append("insufficient_sleep")
            elif avg_sleep >= 8 * 60:
                factors.append("good_sleep")

        return _Estimate(
            value=round(value, 1),
            confidence=confidence_for_day(horizon, fit.low_confidence),
            factors=factors,
        )

    def _predict_goal_success(self, user_id, _type, horizon, now) -> _Estimate:
        events = self.repository.fetch_raw_events(user_id, "goal", now - timedelta(days=365), now)
        goals = [g for g in events if g.attributes.get("status", "active") == "active"]
        if not goals:
            return _Estimate(value=0, confidence=confidence_for_day(horizon), factors=["no_active_goals"])

        probabilities = []
        near_completion = on_track = 0
        for goal in goals:
            progress = float(goal.attributes.get("progress") or 0) / float(goal.attributes.get("target") or 1)
            elapsed = max((now - goal.started_at).total_seconds() / 86400, 1e-6)
            due = as_datetime(goal.attributes.get("due_date"))
            remaining = (due - now).total_seconds() / 86400 if isinstance(due, datetime) else 90.0
            probabilities.append(_goal_probability(progress, elapsed, remaining))

            if progress > 0.7:
                near_completion += 1
            expected = elapsed / (elapsed + remaining) if elapsed + remaining > 0 else 1.0
            if progress >= expected * 0.9:
                on_track += 1

        factors = []
        if near_completion > len(goals) / 2:
            factors.append("multiple_goals_near_completion")
        factors.append("on_track" if on_track > len(goals) / 2 else "behind_schedule")

        return _Estimate(
            value=round(float(np.mean(probabilities))),
            confidence=confidence_for_day(horizon),
            factors=factors,
        )

    def _predict_weight_change(self, user_id, _type, horizon, now) -> _Estimate:
        weights = self._daily(user_id, "weight", 60, now)
        if len(weights) < 4:
            return _insufficient()
        fit = fit_trend(weights)
        predicted = project(fit, horizon)

        factors = []
        workouts = len(self._workouts(user_id, 60, now))
        if workouts >= 20:
            factors.append("consistent_training")
        elif workouts < 8:
            factors.append("inconsistent_training")
        if fit.slope > 0.05:
            factors.append("weight_gain_trend")
        elif fit.slope < -0.05:
            factors.append("weight_loss_trend")
        else:
            factors.append("weight_stable")

        data_quality = min(100.0, len(weights) / 30 * 100)
        consistency = 90 if abs(fit.slope) < 0.5 else 70
        return _Estimate(
            value=round(predicted, 1),
            confidence=round((data_quality + consistency) / 2),
            factors=factors,
        )


def _goal_probability(progress: float, elapsed_days: float, remaining_days: float) -> float:
    """Chance (0-100) of finishing a goal at its current pace."""
    if progress >= 1:
        return 100.0
    if remaining_days <= 0:
        return 0.0
    velocity = progress / elapsed_days
    if velocity <= 0:
        return 0.0
    needed = (1 - progress) / velocity
    if needed <= remaining_days:
        return 75 + min(25.0, (remaining_days - needed) * 2)
    return 75 * (remaining_days / needed)
