"""
Time-series access for the analytics core.

The engine never talks to wearables, calendars or banks directly; it asks a
``TimeSeriesRepository`` for already-cleaned samples and raw events.  This
module also holds the daily reducers that turn raw events (meetings,
transactions, workouts) into scalar daily series.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from cache import TTLCache
from db_utils import as_datetime, fetch_all
from models import RawEvent, TimeSeriesSample

log = logging.getLogger("timeseries_repository")

SeriesPoints = List[Tuple[datetime, float]]


class TimeSeriesRepository(ABC):
    """Read-only accessor for per-user samples and raw events."""

    @abstractmethod
    def fetch_series(self, user_id: str, metric_name: str,
                     start: datetime, end: datetime) -> SeriesPoints:
        """Return ``[(timestamp, value)]`` in ascending timestamp order."""

    @abstractmethod
    def fetch_raw_events(self, user_id: str, domain: str,
                         start: datetime, end: datetime) -> List[RawEvent]:
        """Return raw events of *domain* that started within the window."""


# ─── In-memory ─────────────────────────────────────────────


class InMemoryTimeSeriesRepository(TimeSeriesRepository):

    def __init__(self) -> None:
        self._samples: Dict[Tuple[str, str], List[TimeSeriesSample]] = defaultdict(list)
        self._events: Dict[Tuple[str, str], List[RawEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def add_samples(self, samples: Iterable[TimeSeriesSample]) -> None:
        with self._lock:
            for s in samples:
                self._samples[(s.user_id, s.metric_name)].append(s)

    def add_series(self, user_id: str, metric_name: str,
                   points: Iterable[Tuple[datetime, float]]) -> None:
        self.add_samples(
            TimeSeriesSample(user_id, metric_name, ts, float(v)) for ts, v in points
        )

    def add_events(self, events: Iterable[RawEvent]) -> None:
        with self._lock:
            for e in events:
                self._events[(e.user_id, e.domain)].append(e)

    def fetch_series(self, user_id, metric_name, start, end) -> SeriesPoints:
        with self._lock:
            rows = list(self._samples.get((user_id, metric_name), []))
        rows = [s for s in rows if start <= s.timestamp <= end]
        rows.sort(key=lambda s: s.timestamp)
        return [(s.timestamp, s.value) for s in rows]

    def fetch_raw_events(self, user_id, domain, start, end) -> List[RawEvent]:
        with self._lock:
            rows = list(self._events.get((user_id, domain), []))
        rows = [e for e in rows if start <= e.started_at <= end]
        rows.sort(key=lambda e: e.started_at)
        return rows


# ─── PostgreSQL ────────────────────────────────────────────


class PostgresTimeSeriesRepository(TimeSeriesRepository):
    """Reads ``timeseries_samples`` / ``raw_events`` (see pipeline.migrations)."""

    def __init__(self, conn_str: Optional[str] = None):
        self.conn_str = conn_str

    def fetch_series(self, user_id, metric_name, start, end) -> SeriesPoints:
        rows = fetch_all(
            """
            SELECT recorded_at, value
            FROM timeseries_samples
            WHERE user_id = %s AND metric_name = %s
              AND recorded_at >= %s AND recorded_at <= %s
            ORDER BY recorded_at ASC
            """,
            (user_id, metric_name, start, end),
            conn_str=self.conn_str,
        )
        return [(as_datetime(r["recorded_at"]), float(r["value"]))
                for r in rows if r.get("value") is not None]

    def fetch_raw_events(self, user_id, domain, start, end) -> List[RawEvent]:
        rows = fetch_all(
            """
            SELECT started_at, ended_at, amount, attributes
            FROM raw_events
            WHERE user_id = %s AND domain = %s
              AND started_at >= %s AND started_at <= %s
            ORDER BY started_at ASC
            """,
            (user_id, domain, start, end),
            conn_str=self.conn_str,
        )
        return [
            RawEvent(
                user_id=user_id,
                domain=domain,
                started_at=as_datetime(r["started_at"]),
                ended_at=as_datetime(r.get("ended_at")),
                amount=r.get("amount"),
                attributes=r.get("attributes") or {},
            )
            for r in rows
        ]


# ─── Cached wrapper ────────────────────────────────────────


class CachedTimeSeriesRepository(TimeSeriesRepository):
    """Wraps any repository with an injected TTL cache keyed by user."""

    def __init__(self, inner: TimeSeriesRepository, cache: TTLCache):
        self.inner = inner
        self.cache = cache

    def fetch_series(self, user_id, metric_name, start, end) -> SeriesPoints:
        key = (user_id, "series", metric_name, start, end)
        hit = self.cache.get(key)
        if hit is not None:
            return list(hit)
        points = self.inner.fetch_series(user_id, metric_name, start, end)
        self.cache.set(key, tuple(points))
        return points

    def fetch_raw_events(self, user_id, domain, start, end) -> List[RawEvent]:
        key = (user_id, "events", domain, start, end)
        hit = self.cache.get(key)
        if hit is not None:
            return list(hit)
        events = self.inner.fetch_raw_events(user_id, domain, start, end)
        self.cache.set(key, tuple(events))
        return events

    def invalidate(self, user_id: str) -> None:
        dropped = self.cache.invalidate_user(user_id)
        log.debug("Invalidated %d cached entries for user %s", dropped, user_id)


# ─── Daily reducers ────────────────────────────────────────


def to_daily(points: Sequence[Tuple[datetime, float]], how: str = "mean") -> pd.Series:
    """Collapse timestamped points to one value per calendar day.

    The result has a continuous daily DatetimeIndex (gaps are NaN) so that
    day-offset shifts never pair non-adjacent days.
    """
    if not points:
        return pd.Series(dtype="float64")
    df = pd.DataFrame(points, columns=["ts", "value"])
    df["date"] = pd.to_datetime(df["ts"]).dt.normalize()
    grouped = df.groupby("date")["value"]
    daily = grouped.sum() if how == "sum" else grouped.mean()
    return daily.astype("float64").asfreq("D")


def daily_meeting_hours(events: Sequence[RawEvent]) -> pd.Series:
    """Total meeting hours per start day."""
    pairs = []
    for e in events:
        if e.ended_at is None:
            continue
        hours = (e.ended_at - e.started_at).total_seconds() / 3600.0
        if hours > 0:
            pairs.append((e.started_at, hours))
    return to_daily(pairs, how="sum")


def daily_spending(events: Sequence[RawEvent]) -> pd.Series:
    """Total spend per day; only expenses (negative amounts) count."""
    pairs = [(e.started_at, abs(e.amount)) for e in events
             if e.amount is not None and e.amount < 0]
    return to_daily(pairs, how="sum")


def daily_workout_load(events: Sequence[RawEvent]) -> pd.Series:
    """Load per day = duration * volume / 100 (volume defaults to 100)."""
    pairs = []
    for e in events:
        duration = e.attributes.get("duration") or 0
        volume = e.attributes.get("total_volume") or 100
        pairs.append((e.started_at, float(duration) * float(volume) / 100.0))
    return to_daily(pairs, how="sum")


def daily_performance_rating(events: Sequence[RawEvent]) -> pd.Series:
    pairs = [(e.started_at, float(e.attributes["performance_rating"])) for e in events
             if e.attributes.get("performance_rating") is not None]
    return to_daily(pairs, how="mean")


# Derived daily metrics: name -> (event domain, reducer)
EVENT_METRICS = {
    "meeting_hours": ("calendar", daily_meeting_hours),
    "spending": ("finance", daily_spending),
    "workout_load": ("workout", daily_workout_load),
    "performance_rating": ("workout", daily_performance_rating),
}


def load_daily_metric(repo: TimeSeriesRepository, user_id: str, metric: str,
                      start: datetime, end: datetime) -> pd.Series:
    """Daily series for *metric*, reducing raw events where the metric is derived."""
    if metric in EVENT_METRICS:
        domain, reducer = EVENT_METRICS[metric]
        return reducer(repo.fetch_raw_events(user_id, domain, start, end))
    return to_daily(repo.fetch_series(user_id, metric, start, end), how="mean")
