"""Tests for repositories, the TTL cache and the daily reducers."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from cache import TTLCache
from models import RawEvent
from timeseries_repository import (
    CachedTimeSeriesRepository,
    InMemoryTimeSeriesRepository,
    PostgresTimeSeriesRepository,
    daily_meeting_hours,
    daily_performance_rating,
    daily_spending,
    daily_workout_load,
    load_daily_metric,
    to_daily,
)
from conftest import BASE, daily_points


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ─── In-memory repository ─────────────────────────────────────


class TestInMemoryRepository:

    def test_window_and_order(self, repo):
        points = daily_points([1, 2, 3, 4, 5])
        repo.add_series("u1", "hrv", reversed(points))
        got = repo.fetch_series("u1", "hrv", BASE + timedelta(days=1), BASE + timedelta(days=3, hours=12))
        assert [v for _, v in got] == [2.0, 3.0, 4.0]

    def test_users_isolated(self, repo):
        repo.add_series("u1", "hrv", daily_points([50]))
        assert repo.fetch_series("u2", "hrv", BASE, BASE + timedelta(days=1)) == []

    def test_events_by_domain(self, repo):
        repo.add_events([
            RawEvent("u1", "finance", BASE + timedelta(hours=9), amount=-20.0),
            RawEvent("u1", "calendar", BASE + timedelta(hours=10), BASE + timedelta(hours=11)),
        ])
        events = repo.fetch_raw_events("u1", "finance", BASE, BASE + timedelta(days=1))
        assert [e.amount for e in events] == [-20.0]


class TestPostgresRepository:

    @patch("timeseries_repository.fetch_all")
    def test_series_rows_mapped(self, mock_fetch):
        mock_fetch.return_value = [
            {"recorded_at": BASE, "value": 55.0},
            {"recorded_at": BASE + timedelta(days=1), "value": None},
        ]
        repo = PostgresTimeSeriesRepository("postgresql://x")
        assert repo.fetch_series("u1", "hrv", BASE, BASE + timedelta(days=2)) == [(BASE, 55.0)]
        assert mock_fetch.call_args.kwargs["conn_str"] == "postgresql://x"

    @patch("timeseries_repository.fetch_all")
    def test_events_mapped(self, mock_fetch):
        mock_fetch.return_value = [{
            "started_at": BASE, "ended_at": None, "amount": -12.5,
            "attributes": {"category": "food"},
        }]
        events = PostgresTimeSeriesRepository("postgresql://x").fetch_raw_events(
            "u1", "finance", BASE, BASE + timedelta(days=1))
        assert events[0].amount == -12.5
        assert events[0].attributes == {"category": "food"}
        assert events[0].domain == "finance"


# ─── Cache ────────────────────────────────────────────────────


class TestTTLCache:

    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(60, clock=clock)
        cache.set(("u1", "k"), 1)
        clock.now += 59
        assert cache.get(("u1", "k")) == 1
        clock.now += 1
        assert cache.get(("u1", "k")) is None
        assert len(cache) == 0

    def test_expired_entries_dropped_on_write(self):
        clock = FakeClock()
        cache = TTLCache(60, clock=clock)
        for i in range(200):
            cache.set(("u1", i), i)
            clock.now += 100
        assert len(cache) == 1

    def test_live_entries_survive_write(self):
        clock = FakeClock()
        cache = TTLCache(60, clock=clock)
        cache.set(("u1", "a"), 1)
        clock.now += 30
        cache.set(("u1", "b"), 2)
        assert len(cache) == 2
        assert cache.get(("u1", "a")) == 1

    def test_invalidate_user(self):
        cache = TTLCache(60)
        cache.set(("u1", "a"), 1)
        cache.set(("u1", "b"), 2)
        cache.set(("u2", "a"), 3)
        assert cache.invalidate_user("u1") == 2
        assert cache.get(("u2", "a")) == 3

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValueError):
            TTLCache(0)


class TestCachedRepository:

    def setup_method(self):
        self.inner = MagicMock()
        self.inner.fetch_series.return_value = [(BASE, 60.0)]
        self.inner.fetch_raw_events.return_value = []
        self.clock = FakeClock()
        self.repo = CachedTimeSeriesRepository(self.inner, TTLCache(300, clock=self.clock))

    def test_second_read_is_cached(self):
        end = BASE + timedelta(days=1)
        first = self.repo.fetch_series("u1", "hrv", BASE, end)
        second = self.repo.fetch_series("u1", "hrv", BASE, end)
        assert first == second == [(BASE, 60.0)]
        assert self.inner.fetch_series.call_count == 1

    def test_expired_entry_refetched(self):
        end = BASE + timedelta(days=1)
        self.repo.fetch_series("u1", "hrv", BASE, end)
        self.clock.now += 301
        self.repo.fetch_series("u1", "hrv", BASE, end)
        assert self.inner.fetch_series.call_count == 2

    def test_sliding_windows_stay_bounded(self):
        for day in range(200):
            start = BASE + timedelta(days=day)
            self.repo.fetch_series("u1", "hrv", start, start + timedelta(days=30))
            self.clock.now += 400
        assert len(self.repo.cache) == 1
        assert self.inner.fetch_series.call_count == 200

    def test_invalidate_forces_reload(self):
        end = BASE + timedelta(days=1)
        self.repo.fetch_raw_events("u1", "workout", BASE, end)
        self.repo.invalidate("u1")
        self.repo.fetch_raw_events("u1", "workout", BASE, end)
        assert self.inner.fetch_raw_events.call_count == 2


# ─── Daily reducers ───────────────────────────────────────────


class TestReducers:

    def test_to_daily_mean_and_gaps(self):
        points = [(BASE + timedelta(hours=6), 10.0), (BASE + timedelta(hours=20), 20.0),
                  (BASE + timedelta(days=2, hours=6), 40.0)]
        daily = to_daily(points)
        assert len(daily) == 3
        assert daily.iloc[0] == 15.0
        assert daily.isna().iloc[1]

    def test_to_daily_empty(self):
        assert to_daily([]).empty

    def test_meeting_hours(self):
        start = BASE + timedelta(hours=9)
        events = [
            RawEvent("u1", "calendar", start, start + timedelta(minutes=90)),
            RawEvent("u1", "calendar", start + timedelta(hours=3), start + timedelta(hours=4)),
            RawEvent("u1", "calendar", start + timedelta(hours=5)),
        ]
        assert daily_meeting_hours(events).iloc[0] == pytest.approx(2.5)

    def test_spending_counts_expenses_only(self):
        events = [
            RawEvent("u1", "finance", BASE + timedelta(hours=9), amount=-30.0),
            RawEvent("u1", "finance", BASE + timedelta(hours=12), amount=-12.5),
            RawEvent("u1", "finance", BASE + timedelta(hours=15), amount=1000.0),
        ]
        assert daily_spending(events).iloc[0] == pytest.approx(42.5)

    def test_workout_load(self):
        events = [
            RawEvent("u1", "workout", BASE + timedelta(hours=18),
                     attributes={"duration": 60, "total_volume": 200}),
            RawEvent("u1", "workout", BASE + timedelta(hours=19), attributes={"duration": 30}),
        ]
        assert daily_workout_load(events).iloc[0] == pytest.approx(150.0)

    def test_performance_rating(self):
        events = [
            RawEvent("u1", "workout", BASE + timedelta(hours=8), attributes={"performance_rating": 6}),
            RawEvent("u1", "workout", BASE + timedelta(hours=18), attributes={"performance_rating": 8}),
            RawEvent("u1", "workout", BASE + timedelta(hours=20), attributes={}),
        ]
        assert daily_performance_rating(events).iloc[0] == pytest.approx(7.0)


class TestLoadDailyMetric:

    def test_scalar_metric(self, repo):
        repo.add_series("u1", "hrv", daily_points([50, 60]))
        series = load_daily_metric(repo, "u1", "hrv", BASE, BASE + timedelta(days=3))
        assert list(series) == [50.0, 60.0]

    def test_derived_metric_uses_events(self, repo):
        repo.add_events([RawEvent("u1", "finance", BASE + timedelta(hours=9), amount=-25.0)])
        series = load_daily_metric(repo, "u1", "spending", BASE, datetime(2026, 3, 2))
        assert list(series) == [25.0]
