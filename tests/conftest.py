"""
Shared test configuration.

Adds src/ to sys.path so the flat modules (correlation_engine,
pattern_store, ...) and the analytics/ and pipeline/ directories import
with plain ``import module_name``, and provides small synthetic-data
builders used across the suite.
"""

import os
import sys
from datetime import datetime, timedelta

import pytest

_src_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from models import (
    CorrelationPattern,
    CorrelationStats,
    MetricSpec,
    TimeRelationship,
    Trigger,
)
from timeseries_repository import InMemoryTimeSeriesRepository

BASE = datetime(2026, 3, 1)


def daily_points(values, start=BASE, hour=7):
    """[(timestamp, value)] one per day starting at *start*."""
    return [(start + timedelta(days=i, hours=hour), float(v)) for i, v in enumerate(values)]


def make_pattern(user_id="u1", pattern_type="sleep_performance", strength=0.8,
                 confidence=80, sample_size=30, triggers=None, window_hours=24):
    return CorrelationPattern(
        user_id=user_id,
        pattern_type=pattern_type,
        primary_metric=MetricSpec("sleep_duration", "wearable", 480.0, "increase"),
        secondary_metric=MetricSpec("recovery_score", "wearable", 70, "increase"),
        correlation=CorrelationStats(
            strength=strength,
            confidence=confidence,
            sample_size=sample_size,
            p_value=0.001,
            r_squared=strength * strength,
        ),
        time_relationship=TimeRelationship(lag_hours=24, window_hours=window_hours),
        triggers=triggers if triggers is not None else [
            Trigger("sleep_duration", "<", 360.0, "alert_poor_sleep", "medium"),
            Trigger("sleep_duration", ">", 480.0, "acknowledge_good_sleep", "low"),
        ],
    )


@pytest.fixture
def repo():
    return InMemoryTimeSeriesRepository()
