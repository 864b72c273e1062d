"""Day-by-day forecasts with decaying confidence, plus recovery-window picking."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

from analytics.trend_projector import fit_trend, project
from constants import (
    FORECAST_CONFIDENCE_FLOOR,
    FORECAST_CONFIDENCE_START,
    FORECAST_CONFIDENCE_STEP,
    PROXY_METRICS,
)
from models import ForecastPoint

log = logging.getLogger("forecast_composer")


def confidence_for_day(day: int, low_confidence: bool = False) -> int:
    if low_confidence:
        return FORECAST_CONFIDENCE_FLOOR
    return max(FORECAST_CONFIDENCE_FLOOR,
               FORECAST_CONFIDENCE_START - FORECAST_CONFIDENCE_STEP * day)


class ForecastComposer:

    def compose(self, metric: str, history: Sequence[float], days: int,
                start: date) -> List[ForecastPoint]:
        """Project *metric* for days 1..days after *start*.

        An empty history yields an empty list.  Fits on fewer than seven
        points still project, but every day carries the floor confidence.
        """
        values = [v for v in history if v is not None]
        if not values or days <= 0:
            return []
        fit = fit_trend(values)
        if fit.low_confidence:
            log.info("   %s: only %d points, forecast pinned at floor confidence", metric, fit.n)
        return [
            ForecastPoint(
                day=day,
                date=start + timedelta(days=day),
                value=round(project(fit, day, metric=metric), 2),
                confidence=confidence_for_day(day, fit.low_confidence),
            )
            for day in range(1, days + 1)
        ]

    @staticmethod
    def proxy_source(metric: str) -> Optional[str]:
        entry = PROXY_METRICS.get(metric)
        return entry[0] if entry else None

    def from_proxy(self, metric: str, source_points: Sequence[ForecastPoint]) -> List[ForecastPoint]:
        """Re-scale another metric's forecast onto *metric* and mark it proxy-derived."""
        source, scale = PROXY_METRICS[metric]
        return [
            ForecastPoint(
                day=p.day,
                date=p.date,
                value=round(p.value * scale, 1),
                confidence=p.confidence,
                proxy_of=source,
            )
            for p in source_points
        ]


# ─── Optimal window ────────────────────────────────────────


def readiness_bucket(value: float) -> str:
    if value >= 75:
        return "optimal"
    if value >= 65:
        return "good"
    if value >= 50:
        return "moderate"
    return "poor"


def find_optimal_window(forecast: Sequence[ForecastPoint], activity: str) -> Dict[str, Any]:
    """Bucket forecast days by projected readiness and pick the best one."""
    windows = [
        {
            "date": p.date,
            "score": p.value,
            "bucket": readiness_bucket(p.value),
            "confidence": p.confidence,
        }
        for p in forecast
    ]
    # max() keeps the earliest day on ties
    best = max(windows, key=lambda w: w["score"]) if windows else None
    return {
        "activity": activity,
        "timeframe": f"{len(windows)} days",
        "optimal_days": [w for w in windows if w["bucket"] == "optimal"],
        "good_days": [w for w in windows if w["bucket"] == "good"],
        "best_day": best,
        "all_windows": windows,
    }
