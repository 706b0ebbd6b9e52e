"""
Unit tests for the SQLite DataLogger
"""

import sqlite3
from datetime import datetime, timedelta

import pytest
import pytz

from voltassist.logging.logger import DataLogger
from voltassist.models import DecisionRecord, HourlyStat, LoadActionRecord

T0 = datetime(2026, 10, 17, 8, 0, tzinfo=pytz.UTC)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def db(tmp_path, clock):
    return DataLogger(str(tmp_path / "test.db"), clock=clock)


def _decision(action="idle", **overrides):
    values = dict(ts=T0.isoformat(), soc=55.0, price=0.12, solar_watts=0.0, action=action,
                  reason="Standby", confidence=0.7, price_percentile=42)
    values.update(overrides)
    return DecisionRecord(**values)


class TestSchema:
    """Test database initialisation"""

    def test_tables_created(self, db):
        con = sqlite3.connect(db.path)
        try:
            names = {r[0] for r in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            con.close()

        assert {"decisions", "hourly_stats", "load_state", "load_actions"} <= names

    def test_reopen_existing_database(self, tmp_path, db):
        db.save_decision(_decision())
        again = DataLogger(db.path)

        assert again.get_last_decision() is not None


class TestDecisions:
    """Test decision persistence"""

    def test_save_and_get_last(self, db):
        first = db.save_decision(_decision("idle"))
        second = db.save_decision(_decision("discharge"))
        last = db.get_last_decision()

        assert second > first
        assert last.id == second
        assert last.action == "discharge"
        assert last.executed is False
        assert last.price_percentile == 42

    def test_empty(self, db):
        assert db.get_last_decision() is None
        assert db.get_recent_decisions() == []

    def test_update_execution(self, db):
        decision_id = db.save_decision(_decision())
        db.update_decision_execution(decision_id, False, "ActuationFailure: not confirmed")
        record = db.get_last_decision()

        assert record.executed is False
        assert record.error == "ActuationFailure: not confirmed"

        db.update_decision_execution(decision_id, True)
        record = db.get_last_decision()

        assert record.executed is True
        assert record.error is None

    def test_recent_newest_first(self, db):
        for action in ("idle", "discharge", "charge_from_grid"):
            db.save_decision(_decision(action))

        recent = db.get_recent_decisions(limit=2)

        assert [r.action for r in recent] == ["charge_from_grid", "discharge"]


class TestHourlyStats:
    """Test hourly statistics"""

    def _stat(self, hour, soc=50.0):
        return HourlyStat(date="2026-10-17", hour=hour, price=0.1, solar_kwh=1.0, consumption_kwh=0.5,
                          grid_import_kwh=0.0, grid_export_kwh=0.5, battery_soc=soc)

    def test_replace_same_hour(self, db):
        db.save_hourly_stat(self._stat(9, soc=50))
        db.save_hourly_stat(self._stat(9, soc=60))
        db.save_hourly_stat(self._stat(8))

        stats = db.get_hourly_stats("2026-10-17")

        assert [s.hour for s in stats] == [8, 9]
        assert stats[1].battery_soc == 60
        assert db.get_hourly_stats("2026-10-18") == []


class TestLoadState:
    """Test shed state and hysteresis timing"""

    def test_unknown_device(self, db):
        assert db.get_load_state("pump") is None
        assert db.get_shed_duration_minutes("pump") is None

    def test_shed_and_duration(self, db, clock):
        db.mark_load_shed("pump", "overload")
        clock.now = T0 + timedelta(minutes=12, seconds=30)
        state = db.get_load_state("pump")

        assert state.is_shed is True
        assert state.shed_reason == "overload"
        assert state.shed_since == T0.isoformat()
        assert db.get_shed_duration_minutes("pump") == pytest.approx(12.5)

    def test_restore_clears_state(self, db, clock):
        db.mark_load_shed("pump", "overload")
        clock.now = T0 + timedelta(minutes=20)
        db.mark_load_restored("pump")
        state = db.get_load_state("pump")

        assert state.is_shed is False
        assert state.shed_since is None
        assert state.updated_at == clock.now.isoformat()
        assert db.get_shed_duration_minutes("pump") is None

    def test_shed_again_resets_timer(self, db, clock):
        db.mark_load_shed("pump", "overload")
        clock.now = T0 + timedelta(minutes=30)
        db.mark_load_shed("pump", "critical_soc")

        assert db.get_shed_duration_minutes("pump") == pytest.approx(0.0)
        assert db.get_load_state("pump").shed_reason == "critical_soc"

    def test_shed_loads(self, db):
        db.mark_load_shed("pump", "overload")
        db.mark_load_shed("dryer", "overload")
        db.mark_load_restored("pump")

        assert [s.device_id for s in db.get_shed_loads()] == ["dryer"]


class TestLoadActions:
    """Test the load action log"""

    def test_save_and_list(self, db):
        db.save_load_action(LoadActionRecord(ts=T0.isoformat(), device_id="pump", device_name="Pool pump",
                                             action="shed", reason="[overload] too much", success=True))
        db.save_load_action(LoadActionRecord(ts=T0.isoformat(), device_id="pump", device_name="Pool pump",
                                             action="restore", reason="[good_soc_cheap] cheap", success=False,
                                             error="ActuationFailure: not shed"))

        actions = db.get_load_actions()

        assert [a.action for a in actions] == ["restore", "shed"]
        assert actions[0].success is False
        assert actions[0].error == "ActuationFailure: not shed"
        assert actions[1].device_name == "Pool pump"
