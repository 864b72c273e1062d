"""
Correlation Engine
==================
Discovers per-user relationships between daily series from independent
life domains and keeps the persisted pattern set current.

  analyze()            load → align → score each domain's pattern type,
                       upsert survivors, attach insight/recommendation text
  generate_insights()  summary of the strongest active pattern
  check_triggers()     sweep active patterns against a fresh sample

Inputs come only from the injected ``TimeSeriesRepository``; the only
writes go to the injected ``PatternStore``.  User-facing text never
carries p-values or t-statistics, only confidence and labels.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from analytics.correlation_analyzer import CorrelationAnalyzer
from config import ANALYSIS_WINDOW_DAYS, DEFAULT_MIN_CONFIDENCE
from constants import DOMAIN_PATTERNS
from db_utils import StorageError
from models import AnalysisResult, CorrelationPattern, TriggerResult
from pattern_store import PatternStore
from timeseries_repository import TimeSeriesRepository, load_daily_metric

log = logging.getLogger("correlation_engine")


# ═══════════════════════════════════════════════════════════
#  TEXT TABLES
# ═══════════════════════════════════════════════════════════

PATTERN_INSIGHTS = {
    "sleep_performance": "Sleep quality significantly impacts recovery",
    "workout_recovery": "Training volume affects next-day recovery",
    "stress_spending": "Stress levels correlate with spending behavior",
    "calendar_recovery": "Meeting load impacts recovery",
    "hrv_performance": "HRV predicts workout performance",
}

PATTERN_DESCRIPTIONS = {
    "sleep_performance": "Sleep quality strongly impacts recovery scores",
    "workout_recovery": "Training volume affects next-day recovery",
    "stress_spending": "Stress levels influence spending patterns",
    "calendar_recovery": "Meeting load impacts recovery capacity",
    "hrv_performance": "HRV predicts workout performance",
    "nutrition_energy": "Diet quality affects energy levels",
    "goal_motivation": "Goal progress influences motivation levels",
}

PATTERN_RECOMMENDATIONS = {
    "sleep_performance": "Prioritize 7-9 hours of sleep to optimize recovery",
    "workout_recovery": "Monitor training load to prevent overtraining",
    "stress_spending": "Be aware of stress-driven purchases - use mindful spending",
    "calendar_recovery": "Protect recovery time after heavy meeting days",
    "hrv_performance": "Use HRV to guide training intensity decisions",
}

NO_PATTERN_INSIGHT = "Need more data to detect significant patterns"
NO_PATTERN_RECOMMENDATION = {
    "priority": "low",
    "text": "Continue tracking for 2-4 more weeks",
    "action": "collect_data",
    "strength": None,
}

# Only relationships this strong earn an actionable recommendation
RECOMMENDATION_MIN_STRENGTH = 0.7


class PatternPersistenceError(StorageError):
    """Patterns were computed but could not all be saved.

    ``result`` holds the full analysis so the caller can retry the writes
    (``PatternStore.upsert`` on each pattern) without recomputing.
    """

    def __init__(self, message: str, result: AnalysisResult):
        super().__init__(message)
        self.result = result


def describe_pattern(pattern: CorrelationPattern) -> str:
    desc = PATTERN_DESCRIPTIONS.get(pattern.pattern_type, f"{pattern.pattern_type} pattern detected")
    strength = abs(pattern.correlation.strength)
    if strength > 0.7:
        return f"Strong correlation: {desc}"
    if strength > 0.5:
        return f"Moderate correlation: {desc}"
    return f"Weak correlation: {desc}"


def recommendation_for(pattern: CorrelationPattern) -> Optional[Dict[str, Any]]:
    strength = pattern.correlation.strength
    if abs(strength) <= RECOMMENDATION_MIN_STRENGTH:
        return None
    return {
        "priority": "high",
        "text": PATTERN_RECOMMENDATIONS.get(pattern.pattern_type, "Monitor this pattern closely"),
        "action": "optimize",
        "strength": strength,
    }


def resolve_pattern_types(domains: Iterable[str]) -> List[str]:
    """Map requested domains (or ``all``) to pattern types, in a stable order."""
    domains = list(domains)
    if not domains or "all" in domains:
        return list(DOMAIN_PATTERNS.values())
    unknown = [d for d in domains if d not in DOMAIN_PATTERNS]
    if unknown:
        raise ValueError(f"Unknown analysis domain(s): {', '.join(unknown)}")
    seen: List[str] = []
    for d in domains:
        if DOMAIN_PATTERNS[d] not in seen:
            seen.append(DOMAIN_PATTERNS[d])
    return seen


class CorrelationEngine:
    """Pattern discovery over one user's recent history."""

    def __init__(self, repository: TimeSeriesRepository, pattern_store: PatternStore,
                 analyzer: Optional[CorrelationAnalyzer] = None,
                 window_days: int = ANALYSIS_WINDOW_DAYS,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.pattern_store = pattern_store
        self.analyzer = analyzer or CorrelationAnalyzer()
        self.window_days = window_days
        self._clock = clock or datetime.utcnow

    # ─── Analysis ──────────────────────────────────────────

    def analyze(self, user_id: str, domains: Iterable[str] = ("all",),
                min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> AnalysisResult:
        """Score every requested domain's pattern type and persist survivors.

        Raises ``PatternPersistenceError`` (carrying the result) if any
        upsert fails; the statistics themselves are never discarded.
        """
        now = self._clock()
        start = now - timedelta(days=self.window_days)
        pattern_types = resolve_pattern_types(domains)
        log.info("Analyzing user %s: %s", user_id, ", ".join(pattern_types))

        result = AnalysisResult()
        for pattern_type in pattern_types:
            candidate = self._analyze_one(user_id, pattern_type, start, now, min_confidence)
            if candidate is None:
                continue
            result.patterns.append(candidate)
            result.insights.append(PATTERN_INSIGHTS.get(pattern_type, describe_pattern(candidate)))

        if result.patterns:
            for pattern in result.patterns:
                rec = recommendation_for(pattern)
                if rec:
                    result.recommendations.append(rec)
        else:
            result.insights.append(NO_PATTERN_INSIGHT)
            result.recommendations.append(dict(NO_PATTERN_RECOMMENDATION))

        self._persist(result, now)
        log.info("User %s: %d pattern(s) found", user_id, len(result.patterns))
        return result

    def _analyze_one(self, user_id: str, pattern_type: str, start: datetime, end: datetime,
                     min_confidence: float) -> Optional[CorrelationPattern]:
        d = self.analyzer.definition(pattern_type)
        primary = load_daily_metric(self.repository, user_id, d.primary, start, end)
        secondary = load_daily_metric(self.repository, user_id, d.secondary, start, end)
        return self.analyzer.analyze(user_id, pattern_type, primary, secondary,
                                     min_confidence=min_confidence, now=end)

    def _persist(self, result: AnalysisResult, now: datetime) -> None:
        stored: List[CorrelationPattern] = []
        failures: List[str] = []
        for pattern in result.patterns:
            try:
                stored.append(self.pattern_store.upsert(pattern, now=now))
            except StorageError as e:
                log.error("Failed to persist %s: %s", pattern.pattern_type, e)
                failures.append(pattern.pattern_type)
                stored.append(pattern)
        result.patterns = stored
        if failures:
            raise PatternPersistenceError(
                f"Could not persist pattern(s): {', '.join(failures)}", result
            )

    # ─── Insights & triggers ───────────────────────────────

    def generate_insights(self, user_id: str) -> Dict[str, Any]:
        patterns = self.pattern_store.list_for_user(user_id, active_only=True)
        patterns.sort(key=lambda p: abs(p.correlation.strength), reverse=True)
        insights: Dict[str, Any] = {
            "patterns": len(patterns),
            "strongest": None,
            "recommendations": [],
        }
        if not patterns:
            return insights

        top = patterns[0]
        insights["strongest"] = {
            "type": top.pattern_type,
            "strength": top.correlation.strength,
            "confidence": top.correlation.confidence,
            "quality_score": top.quality_score,
            "description": describe_pattern(top),
        }
        for pattern in patterns:
            rec = recommendation_for(pattern)
            if rec:
                insights["recommendations"].append(rec)
        return insights

    def check_triggers(self, user_id: str, sample: Dict[str, float],
                       now: Optional[datetime] = None) -> List[TriggerResult]:
        """Evaluate every active pattern's triggers against *sample*."""
        now = now or self._clock()
        fired = []
        for pattern in self.pattern_store.list_for_user(user_id, active_only=True):
            hit = self.pattern_store.evaluate_triggers(pattern, sample, now=now)
            if hit:
                fired.append(hit)
        return fired
