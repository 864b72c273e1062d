"""
Pairwise correlation analysis between two daily metric series.
==============================================================

For one user and one pattern definition the analyzer:

  1. Aligns primary day D with secondary day D + lag (continuous daily
     index, so gaps never create false pairs; unmatched days are dropped).
  2. Applies the hard minimum-pairs gate for the pattern type.
  3. Computes Pearson r and a two-tailed p-value from

         t = r·√(n−2) / √(1−r²)        (Student-t, df = n−2)

  4. Rejects signs that contradict the expected physiological direction.
  5. Scores confidence = min(100, (n / n_expected)·50 + r²·50).
  6. Derives per-user trigger thresholds from the observed primary mean.

Pure functions only; persistence belongs to the pattern store.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats

from constants import VALIDATION_MONITORING
from models import (
    CorrelationPattern,
    CorrelationStats,
    MetricSpec,
    TimeRelationship,
    Trigger,
)

log = logging.getLogger("correlation_analyzer")

# Variance below this is treated as constant
_ZERO_VARIANCE = 1e-10

# Rolling stability (same bands as the weekly correlation report)
ROLLING_WINDOW = 30


# ─── Definitions ───────────────────────────────────────────


@dataclass(frozen=True)
class TriggerTemplate:
    side: str          # "high" or "low" threshold
    action: str
    severity: str


@dataclass(frozen=True)
class PatternDefinition:
    pattern_type: str
    primary: str
    primary_source: str
    primary_direction: str
    secondary: str
    secondary_source: str
    secondary_threshold: Optional[float]
    secondary_direction: str
    lag_hours: int
    min_pairs: int
    expected_sample_size: int
    threshold_offset: float
    relative_offset: bool = False
    expected_sign: int = 0           # -1 / +1 / 0 (no direction gate)
    min_signed_strength: float = 0.0
    window_hours: int = 24
    triggers: Tuple[TriggerTemplate, ...] = field(default_factory=tuple)

    def thresholds(self, mean: float) -> Tuple[float, float]:
        """Return (low, high) thresholds around the observed mean."""
        if self.relative_offset:
            return mean * (1 - self.threshold_offset), mean * (1 + self.threshold_offset)
        return mean - self.threshold_offset, mean + self.threshold_offset


DEFINITIONS: Dict[str, PatternDefinition] = {
    d.pattern_type: d
    for d in (
        PatternDefinition(
            pattern_type="sleep_performance",
            primary="sleep_duration", primary_source="wearable", primary_direction="increase",
            secondary="recovery_score", secondary_source="wearable",
            secondary_threshold=70, secondary_direction="increase",
            lag_hours=24, min_pairs=14, expected_sample_size=30,
            threshold_offset=60,  # minutes
            triggers=(
                TriggerTemplate("low", "alert_poor_sleep", "medium"),
                TriggerTemplate("high", "acknowledge_good_sleep", "low"),
            ),
        ),
        PatternDefinition(
            pattern_type="workout_recovery",
            primary="workout_load", primary_source="workout", primary_direction="increase",
            secondary="recovery_score", secondary_source="wearable",
            secondary_threshold=60, secondary_direction="decrease",
            lag_hours=24, min_pairs=10, expected_sample_size=20,
            threshold_offset=0.5, relative_offset=True,
            expected_sign=-1,
            triggers=(TriggerTemplate("high", "warn_high_load", "high"),),
        ),
        PatternDefinition(
            pattern_type="stress_spending",
            primary="hrv", primary_source="wearable", primary_direction="decrease",
            secondary="spending", secondary_source="finance",
            secondary_threshold=0, secondary_direction="increase",
            lag_hours=0, min_pairs=15, expected_sample_size=30,
            threshold_offset=0.15, relative_offset=True,
            expected_sign=-1, min_signed_strength=0.3,
            triggers=(TriggerTemplate("low", "warn_stress_spending", "medium"),),
        ),
        PatternDefinition(
            pattern_type="calendar_recovery",
            primary="meeting_hours", primary_source="calendar", primary_direction="increase",
            secondary="recovery_score", secondary_source="wearable",
            secondary_threshold=65, secondary_direction="decrease",
            lag_hours=24, min_pairs=10, expected_sample_size=20,
            threshold_offset=2,  # hours
            expected_sign=-1, min_signed_strength=0.25,
            triggers=(TriggerTemplate("high", "warn_meeting_overload", "medium"),),
        ),
        PatternDefinition(
            pattern_type="hrv_performance",
            primary="hrv", primary_source="wearable", primary_direction="increase",
            secondary="performance_rating", secondary_source="workout",
            secondary_threshold=7, secondary_direction="increase",
            lag_hours=0, min_pairs=10, expected_sample_size=20,
            threshold_offset=0.1, relative_offset=True,
            expected_sign=1, min_signed_strength=0.3,
        ),
    )
}


# ─── Statistics ────────────────────────────────────────────


def p_value_from_r(r: float, n: int) -> float:
    """Two-tailed p-value for Pearson r with n pairs (exact Student-t)."""
    if n <= 2:
        return 1.0
    if abs(r) >= 1.0:
        return 0.0
    t_stat = r * math.sqrt(n - 2) / math.sqrt(1 - r * r)
    p = 2 * sp_stats.t.sf(abs(t_stat), n - 2)
    return float(min(1.0, max(0.0, p)))


def pearson(x: Sequence[float], y: Sequence[float]) -> Tuple[float, float]:
    """Pearson (r, p).  Constant or empty input yields the neutral (0.0, 1.0)."""
    xs = np.asarray(x, dtype=np.float64)
    ys = np.asarray(y, dtype=np.float64)
    n = len(xs)
    if n != len(ys) or n < 2:
        return 0.0, 1.0
    if np.std(xs) < _ZERO_VARIANCE or np.std(ys) < _ZERO_VARIANCE:
        return 0.0, 1.0
    r = float(np.corrcoef(xs, ys)[0, 1])
    if not math.isfinite(r):
        return 0.0, 1.0
    r = max(-1.0, min(1.0, r))
    return r, p_value_from_r(r, n)


def compute_confidence(sample_size: int, r_squared: float,
                       expected_sample_size: int) -> float:
    """Blend sample volume and explanatory power into a 0-100 score.

    Non-decreasing in both ``sample_size`` and ``r_squared``.
    """
    if expected_sample_size <= 0:
        raise ValueError("expected_sample_size must be positive")
    volume = (max(sample_size, 0) / expected_sample_size) * 50
    power = min(max(r_squared, 0.0), 1.0) * 50
    return min(100.0, volume + power)


def align_pairs(primary: pd.Series, secondary: pd.Series, lag_hours: int) -> pd.DataFrame:
    """Pair primary day D with secondary day D + lag; drop unmatched days."""
    if primary.empty or secondary.empty:
        return pd.DataFrame(columns=["primary", "secondary"], dtype="float64")
    lag_days = int(round(lag_hours / 24))
    start = min(primary.index.min(), secondary.index.min())
    end = max(primary.index.max(), secondary.index.max())
    full = pd.date_range(start, end + pd.Timedelta(days=lag_days), freq="D")
    frame = pd.DataFrame({
        "primary": primary.reindex(full),
        "secondary": secondary.reindex(full).shift(-lag_days),
    })
    return frame.dropna()


def rolling_stability(pairs: pd.DataFrame, window: int = ROLLING_WINDOW) -> Optional[str]:
    """Label how stable r is across rolling windows.

    High variance of rolling-r means the relationship drifts over time.
    Returns None when there are too few pairs or windows to judge.
    """
    if len(pairs) < window + 5:
        return None
    rolling_r = []
    for start in range(len(pairs) - window + 1):
        chunk = pairs.iloc[start:start + window]
        if chunk["primary"].std() < _ZERO_VARIANCE or chunk["secondary"].std() < _ZERO_VARIANCE:
            continue
        r_win, _ = pearson(chunk["primary"].values, chunk["secondary"].values)
        rolling_r.append(r_win)
    if len(rolling_r) < 3:
        return None
    std_r = float(np.std(rolling_r))
    if std_r < 0.15:
        return "STABLE"
    if std_r < 0.25:
        return "MODERATE"
    return "UNSTABLE"


# ─── Analyzer ──────────────────────────────────────────────


class CorrelationAnalyzer:
    """Turns two aligned daily series into a pattern candidate or None."""

    def __init__(self, definitions: Optional[Dict[str, PatternDefinition]] = None):
        self.definitions = definitions or DEFINITIONS

    def definition(self, pattern_type: str) -> PatternDefinition:
        try:
            return self.definitions[pattern_type]
        except KeyError:
            raise ValueError(f"No analyzer definition for pattern type '{pattern_type}'") from None

    def analyze(self, user_id: str, pattern_type: str,
                primary: pd.Series, secondary: pd.Series,
                min_confidence: float,
                now: Optional[datetime] = None) -> Optional[CorrelationPattern]:
        d = self.definition(pattern_type)
        pairs = align_pairs(primary, secondary, d.lag_hours)
        n = len(pairs)
        if n < d.min_pairs:
            log.info("   %s: %d pairs < %d required, skipped", pattern_type, n, d.min_pairs)
            return None

        r, p = pearson(pairs["primary"].values, pairs["secondary"].values)
        if d.expected_sign:
            signed = r * d.expected_sign
            if signed <= 0 or signed < d.min_signed_strength:
                log.info("   %s: direction contradicts expectation, skipped", pattern_type)
                return None

        r_squared = r * r
        confidence = compute_confidence(n, r_squared, d.expected_sample_size)
        if confidence < min_confidence:
            log.info("   %s: confidence %.0f < %.0f, skipped", pattern_type, confidence, min_confidence)
            return None

        mean = float(pairs["primary"].mean())
        low, high = d.thresholds(mean)
        triggers = [
            Trigger(
                metric=d.primary,
                comparator="<" if t.side == "low" else ">",
                threshold=round(low if t.side == "low" else high, 2),
                action=t.action,
                severity=t.severity,
            )
            for t in d.triggers
        ]
        log.debug("   %s: r=%.3f p=%.4f n=%d", pattern_type, r, p, n)

        return CorrelationPattern(
            user_id=user_id,
            pattern_type=pattern_type,
            primary_metric=MetricSpec(
                name=d.primary,
                source=d.primary_source,
                threshold=round(high if d.primary_direction == "increase" else low, 2),
                direction=d.primary_direction,
            ),
            secondary_metric=MetricSpec(
                name=d.secondary,
                source=d.secondary_source,
                threshold=d.secondary_threshold,
                direction=d.secondary_direction,
            ),
            correlation=CorrelationStats(
                strength=r,
                confidence=round(confidence),
                sample_size=n,
                p_value=p,
                r_squared=r_squared,
            ),
            time_relationship=TimeRelationship(
                lag_hours=d.lag_hours,
                window_hours=d.window_hours,
                periodicity="daily",
            ),
            triggers=triggers,
            discovered_at=now,
            last_validated=now,
            validation_status=VALIDATION_MONITORING,
            stability=rolling_stability(pairs),
        )
