"""
Tests for pattern persistence and lifecycle.

In-memory store: upsert semantics, trigger cooldown, outcomes, state
transitions, deactivation and queries.  PostgreSQL store: SQL shape and
error mapping with the db helpers mocked out.
"""
from datetime import timedelta
from unittest.mock import patch

import psycopg2
import pytest
from tenacity import wait_none

from constants import VALIDATION_INVALIDATED, VALIDATION_MONITORING, VALIDATION_VALIDATED
from db_utils import StorageError
from models import CorrelationStats
from pattern_store import (
    InMemoryPatternStore,
    InvalidTransition,
    PatternNotFound,
    PostgresPatternStore,
    outcome_accuracy,
)
from conftest import BASE, make_pattern


@pytest.fixture
def store():
    return InMemoryPatternStore()


# ─── Upsert ───────────────────────────────────────────────────


class TestUpsert:

    def test_insert_starts_monitoring_and_active(self, store):
        saved = store.upsert(make_pattern(), now=BASE)
        assert saved.is_active
        assert saved.validation_status == VALIDATION_MONITORING
        assert saved.discovered_at == BASE
        assert saved.last_validated == BASE

    def test_second_upsert_refreshes_without_duplicate(self, store):
        store.upsert(make_pattern(strength=0.6), now=BASE)
        later = BASE + timedelta(days=1)
        saved = store.upsert(make_pattern(strength=0.9, sample_size=45), now=later)
        assert len(store) == 1
        assert saved.correlation.strength == 0.9
        assert saved.correlation.sample_size == 45
        assert saved.last_validated == later
        assert saved.discovered_at == BASE

    def test_refresh_keeps_lifecycle_state(self, store):
        store.upsert(make_pattern(), now=BASE)
        store.confirm("u1", "sleep_performance")
        saved = store.upsert(make_pattern(strength=0.5), now=BASE + timedelta(days=1))
        assert saved.validation_status == VALIDATION_VALIDATED

    def test_invalid_correlation_rejected_whole(self, store):
        bad = make_pattern()
        bad.correlation = CorrelationStats(strength=1.4, confidence=80, sample_size=30,
                                           p_value=0.01, r_squared=0.5)
        with pytest.raises(ValueError):
            store.upsert(bad)
        assert len(store) == 0

    def test_invalid_refresh_leaves_existing_untouched(self, store):
        store.upsert(make_pattern(strength=0.6), now=BASE)
        bad = make_pattern()
        bad.correlation.confidence = 140
        with pytest.raises(ValueError):
            store.upsert(bad)
        assert store.get("u1", "sleep_performance").correlation.strength == 0.6

    def test_unknown_enum_values_rejected(self, store):
        bad = make_pattern()
        bad.primary_metric.source = "horoscope"
        with pytest.raises(ValueError):
            store.upsert(bad)
        bad = make_pattern(pattern_type="mood_weather")
        with pytest.raises(ValueError):
            store.upsert(bad)
        assert len(store) == 0

    def test_one_record_per_user_and_type(self, store):
        store.upsert(make_pattern(user_id="u1"))
        store.upsert(make_pattern(user_id="u2"))
        store.upsert(make_pattern(user_id="u1", pattern_type="workout_recovery", strength=-0.7))
        assert len(store) == 3
        assert len(store.list_for_user("u1")) == 2


# ─── Triggers ─────────────────────────────────────────────────


class TestTriggers:

    def test_first_matching_trigger_fires(self, store):
        pattern = store.upsert(make_pattern(), now=BASE)
        hit = store.evaluate_triggers(pattern, {"sleep_duration": 300}, now=BASE)
        assert hit is not None
        assert hit.trigger.action == "alert_poor_sleep"
        assert hit.value == 300
        assert hit.pattern_type == "sleep_performance"
        stored = store.get("u1", "sleep_performance")
        assert stored.trigger_count == 1
        assert stored.last_triggered == BASE

    def test_no_match(self, store):
        pattern = store.upsert(make_pattern())
        assert store.evaluate_triggers(pattern, {"sleep_duration": 420}, now=BASE) is None
        assert store.evaluate_triggers(pattern, {"hrv": 10}, now=BASE) is None

    def test_cooldown(self, store):
        pattern = store.upsert(make_pattern(window_hours=24))
        assert store.evaluate_triggers(pattern, {"sleep_duration": 300}, now=BASE)
        assert store.evaluate_triggers(pattern, {"sleep_duration": 300},
                                       now=BASE + timedelta(hours=2)) is None
        assert store.evaluate_triggers(pattern, {"sleep_duration": 300},
                                       now=BASE + timedelta(hours=25))
        assert store.get("u1", "sleep_performance").trigger_count == 2

    def test_inactive_never_fires(self, store):
        store.upsert(make_pattern())
        pattern = store.deactivate("u1", "sleep_performance")
        assert store.evaluate_triggers(pattern, {"sleep_duration": 100}, now=BASE) is None

    def test_held_copy_after_deactivate_does_not_fire(self, store):
        held = store.upsert(make_pattern())
        store.deactivate("u1", "sleep_performance")
        assert store.evaluate_triggers(held, {"sleep_duration": 300}, now=BASE) is None
        stored = store.get("u1", "sleep_performance")
        assert stored.is_active is False
        assert stored.trigger_count == 0

    def test_held_copy_keeps_validation_status(self, store):
        held = store.upsert(make_pattern())
        store.confirm("u1", "sleep_performance")
        assert store.evaluate_triggers(held, {"sleep_duration": 300}, now=BASE)
        stored = store.get("u1", "sleep_performance")
        assert stored.validation_status == VALIDATION_VALIDATED
        assert stored.trigger_count == 1

    def test_cooldown_read_from_stored_record(self, store):
        held = store.upsert(make_pattern(window_hours=24))
        fresh = store.get("u1", "sleep_performance")
        assert store.evaluate_triggers(fresh, {"sleep_duration": 300}, now=BASE)
        assert store.evaluate_triggers(held, {"sleep_duration": 300},
                                       now=BASE + timedelta(hours=1)) is None

    def test_unknown_pattern(self, store):
        with pytest.raises(PatternNotFound):
            store.evaluate_triggers(make_pattern(), {"sleep_duration": 300}, now=BASE)

    def test_ready_to_trigger(self, store):
        pattern = store.upsert(make_pattern())
        store.evaluate_triggers(pattern, {"sleep_duration": 300}, now=BASE)
        assert store.patterns_ready_to_trigger("u1", now=BASE + timedelta(hours=1)) == []
        ready = store.patterns_ready_to_trigger("u1", now=BASE + timedelta(hours=30))
        assert [p.pattern_type for p in ready] == ["sleep_performance"]


# ─── Outcomes ─────────────────────────────────────────────────


class TestOutcomes:

    def test_accuracy_formula(self):
        assert outcome_accuracy(80, 100) == pytest.approx(80.0)
        assert outcome_accuracy(300, 100) == 0.0
        assert outcome_accuracy(0, 0) == 100.0
        assert outcome_accuracy(5, 0) == 0.0

    def test_success_rate_is_mean_of_outcomes(self, store):
        pattern = store.upsert(make_pattern())
        store.record_outcome(pattern, predicted=80, actual=100)
        store.record_outcome(pattern, predicted=100, actual=100)
        stored = store.get("u1", "sleep_performance")
        assert len(stored.outcomes) == 2
        assert stored.success_rate == 90

    def test_success_rate_uses_last_twenty(self, store):
        pattern = store.upsert(make_pattern())
        for _ in range(5):
            store.record_outcome(pattern, predicted=0.0, actual=10.0)
        for _ in range(20):
            store.record_outcome(pattern, predicted=10.0, actual=10.0)
        assert store.get("u1", "sleep_performance").success_rate == 100

    def test_held_copy_after_confirm_keeps_validated(self, store):
        held = store.upsert(make_pattern())
        store.confirm("u1", "sleep_performance")
        store.record_outcome(held, predicted=70, actual=75)
        stored = store.get("u1", "sleep_performance")
        assert stored.validation_status == VALIDATION_VALIDATED
        assert len(stored.outcomes) == 1

    def test_held_copy_keeps_refreshed_correlation(self, store):
        held = store.upsert(make_pattern(strength=0.6), now=BASE)
        store.upsert(make_pattern(strength=0.9), now=BASE + timedelta(days=1))
        store.record_outcome(held, predicted=70, actual=75)
        assert store.get("u1", "sleep_performance").correlation.strength == 0.9


# ─── Lifecycle ────────────────────────────────────────────────


class TestLifecycle:

    def test_confirm(self, store):
        store.upsert(make_pattern())
        assert store.confirm("u1", "sleep_performance").validation_status == VALIDATION_VALIDATED

    def test_reject(self, store):
        store.upsert(make_pattern())
        assert store.reject("u1", "sleep_performance").validation_status == VALIDATION_INVALIDATED

    def test_no_transition_out_of_terminal_states(self, store):
        store.upsert(make_pattern())
        store.confirm("u1", "sleep_performance")
        with pytest.raises(InvalidTransition):
            store.reject("u1", "sleep_performance")
        with pytest.raises(InvalidTransition):
            store.confirm("u1", "sleep_performance")

    def test_deactivate_keeps_record(self, store):
        store.upsert(make_pattern())
        store.deactivate("u1", "sleep_performance")
        assert store.get("u1", "sleep_performance") is not None
        assert store.list_for_user("u1", active_only=True) == []
        assert len(store.list_for_user("u1")) == 1

    def test_missing_pattern(self, store):
        with pytest.raises(PatternNotFound):
            store.confirm("nobody", "sleep_performance")

    def test_strongest_patterns(self, store):
        store.upsert(make_pattern(pattern_type="sleep_performance", strength=0.6, confidence=80))
        store.upsert(make_pattern(pattern_type="workout_recovery", strength=-0.9, confidence=85))
        store.upsert(make_pattern(pattern_type="hrv_performance", strength=0.95, confidence=60))
        strongest = store.strongest_patterns("u1")
        assert [p.pattern_type for p in strongest] == ["workout_recovery", "sleep_performance"]
        assert len(store.strongest_patterns("u1", limit=1)) == 1

    def test_returned_records_are_copies(self, store):
        saved = store.upsert(make_pattern())
        saved.correlation.strength = -1.0
        assert store.get("u1", "sleep_performance").correlation.strength == 0.8


# ─── PostgreSQL store ─────────────────────────────────────────


class TestPostgresPatternStore:

    def setup_method(self):
        self.store = PostgresPatternStore("postgresql://test", retry_wait=wait_none())

    def test_upsert_is_single_conflict_statement(self):
        pattern = make_pattern()
        with patch("pattern_store.execute_returning",
                   return_value={"document": pattern.to_dict()}) as mock_exec:
            stored = self.store.upsert(pattern, now=BASE)
        sql = mock_exec.call_args[0][0]
        assert "ON CONFLICT (user_id, pattern_type) DO UPDATE" in sql
        assert "RETURNING document" in sql
        assert stored.pattern_type == "sleep_performance"
        assert mock_exec.call_args.kwargs["conn_str"] == "postgresql://test"

    def test_invalid_candidate_never_hits_db(self):
        bad = make_pattern(strength=2.0)
        with patch("pattern_store.execute_returning") as mock_exec:
            with pytest.raises(ValueError):
                self.store.upsert(bad)
        mock_exec.assert_not_called()

    def test_get_round_trips_document(self):
        doc = make_pattern().to_dict()
        with patch("pattern_store.fetch_one", return_value={"document": doc}):
            pattern = self.store.get("u1", "sleep_performance")
        assert pattern.correlation.strength == 0.8
        assert pattern.triggers[0].condition == "sleep_duration < 360"

    def test_get_missing(self):
        with patch("pattern_store.fetch_one", return_value=None):
            assert self.store.get("u1", "sleep_performance") is None

    def test_transition_saves_full_document(self):
        doc = make_pattern().to_dict()
        with patch("pattern_store.fetch_one", return_value={"document": doc}), \
                patch("pattern_store.execute") as mock_exec:
            self.store.confirm("u1", "sleep_performance")
        params = mock_exec.call_args[0][1]
        assert params[4] == VALIDATION_VALIDATED

    def test_trigger_writes_only_bookkeeping_keys(self):
        doc = make_pattern().to_dict()
        with patch("pattern_store.fetch_one", return_value={"document": doc}), \
                patch("pattern_store.execute") as mock_exec, \
                patch("pattern_store.execute_returning", return_value={"document": doc}) as mock_ret:
            hit = self.store.evaluate_triggers(make_pattern(), {"sleep_duration": 300}, now=BASE)
        assert hit is not None
        mock_exec.assert_not_called()
        sql, params = mock_ret.call_args[0]
        assert "document || jsonb_build_object" in sql
        assert "AND is_active" in sql
        assert "IS NOT DISTINCT FROM" in sql
        assert params == (BASE.isoformat(), "u1", "sleep_performance", None)

    def test_trigger_lost_race_does_not_fire(self):
        doc = make_pattern().to_dict()
        with patch("pattern_store.fetch_one", return_value={"document": doc}), \
                patch("pattern_store.execute_returning", return_value=None):
            assert self.store.evaluate_triggers(make_pattern(), {"sleep_duration": 300}, now=BASE) is None

    def test_trigger_checks_stored_activity(self):
        doc = make_pattern().to_dict()
        doc["is_active"] = False
        with patch("pattern_store.fetch_one", return_value={"document": doc}), \
                patch("pattern_store.execute_returning") as mock_ret:
            assert self.store.evaluate_triggers(make_pattern(), {"sleep_duration": 300}, now=BASE) is None
        mock_ret.assert_not_called()

    def test_outcome_appends_without_full_save(self):
        doc = make_pattern().to_dict()
        doc["validation_status"] = VALIDATION_VALIDATED
        with patch("pattern_store.fetch_one", return_value={"document": doc}), \
                patch("pattern_store.execute") as mock_exec, \
                patch("pattern_store.execute_returning", return_value={"document": doc}) as mock_ret:
            self.store.record_outcome(make_pattern(), predicted=80, actual=100, now=BASE)
        mock_exec.assert_not_called()
        sql, params = mock_ret.call_args[0]
        assert "'outcomes'" in sql
        assert "validation_status" not in sql
        assert params[1] == 80
        assert params[2:] == ("u1", "sleep_performance")

    def test_connection_failure_becomes_storage_error(self):
        with patch("pattern_store.fetch_all", side_effect=psycopg2.OperationalError("down")) as mock_fetch:
            with pytest.raises(StorageError):
                self.store.list_for_user("u1")
        assert mock_fetch.call_count == 3
