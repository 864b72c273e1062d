"""
Additive rule-based risk scoring (illness, injury, burnout).

Each risk type is an ordered list of independent boolean factors; every
factor that fires adds its fixed points.  The total is capped at 100 and,
for multi-day horizons, linearly discounted (never below 0).  Results
carry factor names only, never the thresholds behind them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from analytics.trend_projector import fit_trend
from constants import INSUFFICIENT_DATA, NORMAL_RANGE, RISK_HORIZON_DISCOUNT_PER_DAY
from models import RawEvent, RiskAssessment

log = logging.getLogger("risk_model")


@dataclass
class RiskInputs:
    """Recent raw samples (oldest first) feeding one risk evaluation."""
    hrv: List[float] = field(default_factory=list)
    recovery: List[float] = field(default_factory=list)
    sleep_minutes: List[float] = field(default_factory=list)
    resting_hr: List[float] = field(default_factory=list)
    workouts: List[RawEvent] = field(default_factory=list)
    window_days: int = 30


@dataclass(frozen=True)
class RiskFactor:
    name: str
    points: int
    test: Callable[[RiskInputs], bool]


@dataclass(frozen=True)
class RiskRule:
    risk_type: str
    window_days: int
    min_samples: int
    sample_count: Callable[[RiskInputs], int]
    factors: Tuple[RiskFactor, ...]


# ─── Helpers ───────────────────────────────────────────────


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def _recent_vs_baseline(values: Sequence[float], recent: int = 3,
                        baseline_days: int = 14) -> Tuple[float, float]:
    """Mean of the last *recent* values vs. the preceding ≤14-day baseline."""
    tail = values[-recent:]
    base = values[:-recent][-baseline_days:]
    return _mean(tail), _mean(base)


def _max_run(flags: Sequence[bool]) -> int:
    best = run = 0
    for flag in flags:
        run = run + 1 if flag else 0
        best = max(best, run)
    return best


def _volume(w: RawEvent) -> float:
    return float(w.attributes.get("total_volume") or 0)


# ─── Illness ───────────────────────────────────────────────


def _declining_hrv(x: RiskInputs) -> bool:
    if len(x.hrv) < 7:
        return False
    recent, baseline = _recent_vs_baseline(x.hrv)
    return baseline > 0 and recent < baseline * 0.9


def _chronic_low_recovery(x: RiskInputs) -> bool:
    return len(x.recovery) >= 7 and _mean(x.recovery) < 60


def _insufficient_sleep(x: RiskInputs) -> bool:
    return len(x.sleep_minutes) >= 7 and _mean(x.sleep_minutes) < 6 * 60


def _high_training_frequency(x: RiskInputs) -> bool:
    weeks = max(x.window_days / 7.0, 1.0)
    return len(x.workouts) / weeks > 6


def _elevated_rhr(x: RiskInputs) -> bool:
    if len(x.resting_hr) < 7:
        return False
    recent, baseline = _recent_vs_baseline(x.resting_hr)
    return baseline > 0 and recent > baseline * 1.1


# ─── Injury ────────────────────────────────────────────────


def _rapid_volume_increase(x: RiskInputs) -> bool:
    if len(x.workouts) < 4:
        return False
    last = max(w.started_at for w in x.workouts).date()
    week2 = sum(_volume(w) for w in x.workouts if 0 <= (last - w.started_at.date()).days < 7)
    week1 = sum(_volume(w) for w in x.workouts if 7 <= (last - w.started_at.date()).days < 14)
    return week1 > 0 and week2 > week1 * 1.3


def _insufficient_recovery(x: RiskInputs) -> bool:
    return _max_run([_volume(w) > 5000 for w in x.workouts[-14:]]) >= 4


def _training_through_fatigue(x: RiskInputs) -> bool:
    if len(x.recovery) < 7:
        return False
    low_days = sum(1 for r in x.recovery[-7:] if r < 60)
    return low_days >= 4 and len(x.workouts) >= 4


def _lack_of_variety(x: RiskInputs) -> bool:
    kinds = {w.attributes.get("workout_type") for w in x.workouts}
    return len(kinds) == 1 and len(x.workouts) > 10


def _previous_injury(x: RiskInputs) -> bool:
    return any("injury" in str(w.attributes.get("notes") or "").lower() for w in x.workouts)


# ─── Burnout ───────────────────────────────────────────────


def _burnout_chronic_low(x: RiskInputs) -> bool:
    return _mean(x.recovery) < 60


def _below_optimal(x: RiskInputs) -> bool:
    return 60 <= _mean(x.recovery) < 70


def _declining_recovery_trend(x: RiskInputs) -> bool:
    return len(x.recovery) >= 2 and fit_trend(x.recovery).slope < -1


def _extended_low_period(x: RiskInputs) -> bool:
    return _max_run([r < 60 for r in x.recovery]) >= 5


def _consecutive_low_days(x: RiskInputs) -> bool:
    return 3 <= _max_run([r < 60 for r in x.recovery]) < 5


def _high_load_low_recovery(x: RiskInputs) -> bool:
    return len(x.workouts) > 10 and _mean(x.recovery) < 65


RULES: Dict[str, RiskRule] = {
    "illness": RiskRule(
        risk_type="illness",
        window_days=30,
        min_samples=7,
        sample_count=lambda x: len(x.hrv),
        factors=(
            RiskFactor("declining_hrv", 25, _declining_hrv),
            RiskFactor("chronic_low_recovery", 25, _chronic_low_recovery),
            RiskFactor("insufficient_sleep", 20, _insufficient_sleep),
            RiskFactor("high_training_frequency", 15, _high_training_frequency),
            RiskFactor("elevated_rhr", 15, _elevated_rhr),
        ),
    ),
    "injury": RiskRule(
        risk_type="injury",
        window_days=30,
        min_samples=4,
        sample_count=lambda x: len(x.workouts),
        factors=(
            RiskFactor("rapid_volume_increase", 30, _rapid_volume_increase),
            RiskFactor("insufficient_recovery", 25, _insufficient_recovery),
            RiskFactor("training_through_fatigue", 25, _training_through_fatigue),
            RiskFactor("lack_of_variety", 15, _lack_of_variety),
            RiskFactor("previous_injury_history", 10, _previous_injury),
        ),
    ),
    "burnout": RiskRule(
        risk_type="burnout",
        window_days=14,
        min_samples=7,
        sample_count=lambda x: len(x.recovery),
        factors=(
            RiskFactor("chronic_low_recovery", 35, _burnout_chronic_low),
            RiskFactor("below_optimal_recovery", 20, _below_optimal),
            RiskFactor("declining_recovery_trend", 25, _declining_recovery_trend),
            RiskFactor("extended_low_recovery_period", 30, _extended_low_period),
            RiskFactor("multiple_consecutive_low_days", 15, _consecutive_low_days),
            RiskFactor("high_load_low_recovery", 20, _high_load_low_recovery),
        ),
    ),
}


RECOMMENDATIONS = {
    "high": [
        "Take 2-3 complete rest days immediately",
        "Reduce training volume by 40-50%",
        "Prioritize 8+ hours of sleep",
        "Consider scheduling recovery activities (massage, stretching)",
    ],
    "moderate": [
        "Add 1-2 extra rest days this week",
        "Reduce training intensity by 20-30%",
        "Focus on recovery protocols",
        "Monitor recovery scores daily",
    ],
    "low": [
        "Maintain current routine",
        "Continue monitoring recovery",
        "Ensure adequate sleep (7-9 hours)",
    ],
    "unknown": ["Keep tracking for at least one more week"],
}

MESSAGES = {
    "low": "Your {risk} risk is low. Continue monitoring recovery and maintaining balance.",
    "moderate": "Moderate {risk} risk detected. Consider adding recovery days and reducing training intensity.",
    "high": "High {risk} risk! Immediate action recommended: reduce training load, prioritize sleep and recovery.",
    "unknown": "Insufficient data to assess {risk} risk",
}


def risk_level(score: int) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "moderate"
    return "low"


def discount_for_horizon(score: float, horizon_days: int) -> float:
    """Longer horizons lower immediate urgency; never below 0."""
    return max(0.0, score * (1 - max(horizon_days, 0) * RISK_HORIZON_DISCOUNT_PER_DAY))


class RiskModel:

    def __init__(self, rules: Optional[Dict[str, RiskRule]] = None):
        self.rules = rules or RULES

    def rule(self, risk_type: str) -> RiskRule:
        try:
            return self.rules[risk_type]
        except KeyError:
            raise ValueError(f"Unknown risk type '{risk_type}'") from None

    def evaluate(self, risk_type: str, inputs: RiskInputs, horizon_days: int = 0) -> RiskAssessment:
        rule = self.rule(risk_type)
        if rule.sample_count(inputs) < rule.min_samples:
            log.info("   %s risk: insufficient data", risk_type)
            return RiskAssessment(
                risk_type=risk_type,
                score=None,
                level="unknown",
                factors=[INSUFFICIENT_DATA],
                recommendations=list(RECOMMENDATIONS["unknown"]),
                message=MESSAGES["unknown"].format(risk=risk_type),
            )

        score = 0
        fired: List[str] = []
        for factor in rule.factors:
            if factor.test(inputs):
                score += factor.points
                fired.append(factor.name)
        score = min(100, score)
        score = int(round(discount_for_horizon(score, horizon_days)))
        level = risk_level(score)

        return RiskAssessment(
            risk_type=risk_type,
            score=score,
            level=level,
            factors=fired or [NORMAL_RANGE],
            recommendations=list(RECOMMENDATIONS[level]),
            message=MESSAGES[level].format(risk=risk_type),
        )
