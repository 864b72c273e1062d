"""
Data model for the analytics core.

Samples and raw events are produced by collaborators and are read-only
here.  Patterns and predictions are the only records the engine writes;
both serialise to plain dicts (JSONB in PostgreSQL) via ``to_dict`` /
``from_dict``.
"""

from __future__ import annotations

import operator
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from constants import (
    DIRECTIONS,
    METRIC_SOURCES,
    PATTERN_TYPES,
    PERIODICITIES,
    SEVERITIES,
    VALIDATION_MONITORING,
    VALIDATION_STATUSES,
)


# ─── Collaborator-supplied records ────────────────────────────


@dataclass(frozen=True)
class TimeSeriesSample:
    user_id: str
    metric_name: str
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class RawEvent:
    """Non-scalar input (calendar event, transaction, workout, goal, ...)."""
    user_id: str
    domain: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    amount: Optional[float] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


# ─── Correlation patterns ─────────────────────────────────────


_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass
class MetricSpec:
    name: str
    source: str
    threshold: Optional[float] = None
    direction: str = "stable"


@dataclass
class CorrelationStats:
    strength: float
    confidence: float
    sample_size: int
    p_value: float
    r_squared: float

    def validate(self) -> None:
        """Raise ValueError if any field is outside its legal range."""
        if not -1.0 <= self.strength <= 1.0:
            raise ValueError(f"strength out of range: {self.strength}")
        if not 0.0 <= self.confidence <= 100.0:
            raise ValueError(f"confidence out of range: {self.confidence}")
        if self.sample_size < 0:
            raise ValueError(f"negative sample size: {self.sample_size}")
        if not 0.0 <= self.r_squared <= 1.0:
            raise ValueError(f"r_squared out of range: {self.r_squared}")


@dataclass
class TimeRelationship:
    lag_hours: int = 0
    window_hours: int = 24
    periodicity: str = "daily"


@dataclass
class Trigger:
    metric: str
    comparator: str
    threshold: float
    action: str
    severity: str = "medium"

    @property
    def condition(self) -> str:
        return f"{self.metric} {self.comparator} {self.threshold:g}"

    def matches(self, sample: Dict[str, float]) -> bool:
        value = sample.get(self.metric)
        if value is None:
            return False
        return _COMPARATORS[self.comparator](float(value), self.threshold)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["condition"] = self.condition
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trigger":
        return cls(
            metric=data["metric"],
            comparator=data["comparator"],
            threshold=float(data["threshold"]),
            action=data["action"],
            severity=data.get("severity", "medium"),
        )


@dataclass
class Outcome:
    date: datetime
    predicted: float
    actual: float
    accuracy: float


@dataclass
class TriggerResult:
    pattern_type: str
    trigger: Trigger
    value: float
    fired_at: datetime


@dataclass
class CorrelationPattern:
    user_id: str
    pattern_type: str
    primary_metric: MetricSpec
    secondary_metric: MetricSpec
    correlation: CorrelationStats
    time_relationship: TimeRelationship = field(default_factory=TimeRelationship)
    triggers: List[Trigger] = field(default_factory=list)
    outcomes: List[Outcome] = field(default_factory=list)
    is_active: bool = True
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0
    success_rate: Optional[float] = None
    discovered_at: Optional[datetime] = None
    last_validated: Optional[datetime] = None
    validation_status: str = VALIDATION_MONITORING
    stability: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.user_id, self.pattern_type)

    def validate(self) -> None:
        """Raise ValueError unless every enumerated field holds a known value."""
        if self.pattern_type not in PATTERN_TYPES:
            raise ValueError(f"unknown pattern type: {self.pattern_type}")
        for spec in (self.primary_metric, self.secondary_metric):
            if spec.source not in METRIC_SOURCES:
                raise ValueError(f"unknown metric source: {spec.source}")
            if spec.direction not in DIRECTIONS:
                raise ValueError(f"unknown direction: {spec.direction}")
        if self.time_relationship.periodicity not in PERIODICITIES:
            raise ValueError(f"unknown periodicity: {self.time_relationship.periodicity}")
        for trigger in self.triggers:
            if trigger.comparator not in _COMPARATORS:
                raise ValueError(f"unknown comparator: {trigger.comparator}")
            if trigger.severity not in SEVERITIES:
                raise ValueError(f"unknown severity: {trigger.severity}")
        if self.validation_status not in VALIDATION_STATUSES:
            raise ValueError(f"unknown validation status: {self.validation_status}")
        self.correlation.validate()

    @property
    def quality_score(self) -> int:
        """Blend of strength, confidence, sample volume and track record."""
        c = self.correlation
        strength_w = abs(c.strength) * 0.4
        confidence_w = (c.confidence / 100) * 0.3
        sample_w = min(c.sample_size / 100, 1) * 0.2
        success_w = (self.success_rate if self.success_rate is not None else 50) / 100 * 0.1
        return round((strength_w + confidence_w + sample_w + success_w) * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "pattern_type": self.pattern_type,
            "primary_metric": asdict(self.primary_metric),
            "secondary_metric": asdict(self.secondary_metric),
            "correlation": asdict(self.correlation),
            "time_relationship": asdict(self.time_relationship),
            "triggers": [t.to_dict() for t in self.triggers],
            "outcomes": [
                {**asdict(o), "date": o.date.isoformat()} for o in self.outcomes
            ],
            "is_active": self.is_active,
            "last_triggered": _iso(self.last_triggered),
            "trigger_count": self.trigger_count,
            "success_rate": self.success_rate,
            "discovered_at": _iso(self.discovered_at),
            "last_validated": _iso(self.last_validated),
            "validation_status": self.validation_status,
            "stability": self.stability,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorrelationPattern":
        return cls(
            user_id=data["user_id"],
            pattern_type=data["pattern_type"],
            primary_metric=MetricSpec(**data["primary_metric"]),
            secondary_metric=MetricSpec(**data["secondary_metric"]),
            correlation=CorrelationStats(**data["correlation"]),
            time_relationship=TimeRelationship(**data.get("time_relationship", {})),
            triggers=[Trigger.from_dict(t) for t in data.get("triggers", [])],
            outcomes=[
                Outcome(
                    date=_parse_dt(o["date"]),
                    predicted=o["predicted"],
                    actual=o["actual"],
                    accuracy=o["accuracy"],
                )
                for o in data.get("outcomes", [])
            ],
            is_active=data.get("is_active", True),
            last_triggered=_parse_dt(data.get("last_triggered")),
            trigger_count=data.get("trigger_count", 0),
            success_rate=data.get("success_rate"),
            discovered_at=_parse_dt(data.get("discovered_at")),
            last_validated=_parse_dt(data.get("last_validated")),
            validation_status=data.get("validation_status", VALIDATION_MONITORING),
            stability=data.get("stability"),
        )


# ─── Predictions, risk, forecasts ─────────────────────────────


@dataclass
class Prediction:
    user_id: str
    prediction_type: str
    horizon_days: int
    predicted_value: Optional[float]
    confidence_level: float
    prediction_model: str
    factors: List[str]
    created_at: datetime
    prediction_date: datetime
    status: str = "active"
    actual_value: Optional[float] = None
    accuracy: Optional[float] = None
    prediction_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = self.created_at.isoformat()
        out["prediction_date"] = self.prediction_date.isoformat()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Prediction":
        data = dict(data)
        data["created_at"] = _parse_dt(data["created_at"])
        data["prediction_date"] = _parse_dt(data["prediction_date"])
        return cls(**data)


@dataclass
class RiskAssessment:
    risk_type: str
    score: Optional[int]
    level: str
    factors: List[str]
    recommendations: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def insufficient_data(self) -> bool:
        return self.score is None


@dataclass
class ForecastPoint:
    day: int
    date: date
    value: float
    confidence: int
    proxy_of: Optional[str] = None


@dataclass
class AnalysisResult:
    patterns: List[CorrelationPattern] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    recommendations: List[Dict[str, Any]] = field(default_factory=list)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
