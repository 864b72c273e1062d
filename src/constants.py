"""
Shared constants used across the analytics modules.
Single source of truth for taxonomies, lifecycle states and metric bounds.
"""

# Pattern taxonomy (one persisted record per user and type)
PATTERN_TYPES = (
    "workout_recovery",
    "sleep_performance",
    "stress_spending",
    "nutrition_energy",
    "calendar_recovery",
    "hrv_performance",
    "goal_motivation",
    "illness_prediction",
    "injury_risk",
)

METRIC_SOURCES = ("wearable", "workout", "nutrition", "calendar", "finance")
DIRECTIONS = ("increase", "decrease", "stable")
PERIODICITIES = ("daily", "weekly", "monthly", "none")
SEVERITIES = ("low", "medium", "high", "critical")

# Pattern lifecycle
VALIDATION_PENDING = "pending"
VALIDATION_MONITORING = "monitoring"
VALIDATION_VALIDATED = "validated"
VALIDATION_INVALIDATED = "invalidated"
VALIDATION_STATUSES = (
    VALIDATION_PENDING,
    VALIDATION_VALIDATED,
    VALIDATION_INVALIDATED,
    VALIDATION_MONITORING,
)

# Analysis domains -> pattern types they unlock
DOMAIN_PATTERNS = {
    "sleep": "sleep_performance",
    "workout": "workout_recovery",
    "finance": "stress_spending",
    "calendar": "calendar_recovery",
    "performance": "hrv_performance",
}

# Outcome bookkeeping
OUTCOME_HISTORY_FOR_SUCCESS_RATE = 20

# Forecast confidence decay
FORECAST_CONFIDENCE_START = 90
FORECAST_CONFIDENCE_STEP = 2
FORECAST_CONFIDENCE_FLOOR = 40

# Trend fits with fewer points than this are low-confidence
TREND_MIN_RELIABLE_POINTS = 7

# Valid projection ranges (recovery floor of 30 avoids degenerate extrapolation)
METRIC_BOUNDS = {
    "recovery_score": (30.0, 100.0),
    "performance_rating": (1.0, 10.0),
    "energy": (20.0, 100.0),
}

# Metrics forecast through another metric's projection: target -> (source, scale)
PROXY_METRICS = {
    "energy": ("recovery_score", 0.1),
    "performance": ("recovery_score", 0.1),
}

METRIC_ALIASES = {
    "recovery": "recovery_score",
    "sleep": "sleep_duration",
}

# Risk scoring
RISK_TYPES = ("illness", "injury", "burnout")
RISK_HORIZON_DISCOUNT_PER_DAY = 0.02
INSUFFICIENT_DATA = "insufficient_data"
NORMAL_RANGE = "normal_range"

PREDICTION_TYPES = (
    "recovery",
    "illness",
    "injury",
    "burnout",
    "performance",
    "energy",
    "goal_success",
    "weight_change",
)
