import sqlite3
import os
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional

from voltassist.models import DecisionRecord, HourlyStat, LoadActionRecord, LoadState
from voltassist.timezone_utils import now_configured, parse_iso_to_configured

log = logging.getLogger(__name__)


class DataLogger:
    """
    SQLite store for decisions, hourly statistics and load shed state.

    Every call opens its own short-lived connection; writes are serialised
    through one lock so the scheduler and the API can share an instance.
    """

    def __init__(self, path: str = None, clock: Callable[[], datetime] = now_configured):
        if path is None:
            base = os.path.expanduser("~/.voltassist")   # inside user home
            os.makedirs(base, exist_ok=True)
            path = os.path.join(base, "voltassist.db")
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._init()

    @contextmanager
    def _connect(self):
        with self._lock:
            con = sqlite3.connect(self.path)
            con.row_factory = sqlite3.Row
            try:
                yield con
                con.commit()
            finally:
                con.close()

    def _init(self):
        log.info(f"Initializing database at: {self.path}")
        with self._connect() as con:
            cur = con.cursor()
            cur.execute("""
                CREATE TABLE IF NOT EXISTS decisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    soc REAL NOT NULL,
                    price REAL NOT NULL,
                    solar_watts REAL NOT NULL,
                    action TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    confidence REAL,
                    price_percentile INTEGER,
                    executed INTEGER NOT NULL DEFAULT 0,
                    error TEXT
                )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_decisions_ts ON decisions(ts)")
            cur.execute("""
                CREATE TABLE IF NOT EXISTS hourly_stats (
                    date TEXT NOT NULL,
                    hour INTEGER NOT NULL,
                    price REAL,
                    solar_kwh REAL,
                    consumption_kwh REAL,
                    grid_import_kwh REAL,
                    grid_export_kwh REAL,
                    battery_soc REAL,
                    PRIMARY KEY (date, hour)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS load_state (
                    device_id TEXT PRIMARY KEY,
                    is_shed INTEGER NOT NULL DEFAULT 0,
                    shed_since TEXT,
                    shed_reason TEXT,
                    updated_at TEXT
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS load_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    device_name TEXT,
                    action TEXT NOT NULL,
                    reason TEXT,
                    success INTEGER NOT NULL,
                    error TEXT
                )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_load_actions_ts ON load_actions(ts)")

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def save_decision(self, record: DecisionRecord) -> int:
        with self._connect() as con:
            cur = con.execute(
                "INSERT INTO decisions (ts, soc, price, solar_watts, action, reason, confidence, "
                "price_percentile, executed, error) VALUES (?,?,?,?,?,?,?,?,?,?)",
                (record.ts, record.soc, record.price, record.solar_watts, record.action, record.reason,
                 record.confidence, record.price_percentile, int(record.executed), record.error),
            )
            decision_id = cur.lastrowid
        log.debug(f"Saved decision {decision_id}: {record.action}")
        return decision_id

    def update_decision_execution(self, decision_id: int, executed: bool, error: Optional[str] = None) -> None:
        with self._connect() as con:
            con.execute(
                "UPDATE decisions SET executed = ?, error = ? WHERE id = ?",
                (int(executed), error, decision_id),
            )

    @staticmethod
    def _decision_from_row(row) -> DecisionRecord:
        return DecisionRecord(
            id=row["id"],
            ts=row["ts"],
            soc=row["soc"],
            price=row["price"],
            solar_watts=row["solar_watts"],
            action=row["action"],
            reason=row["reason"],
            confidence=row["confidence"],
            price_percentile=row["price_percentile"],
            executed=bool(row["executed"]),
            error=row["error"],
        )

    def get_last_decision(self) -> Optional[DecisionRecord]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM decisions ORDER BY id DESC LIMIT 1").fetchone()
        return self._decision_from_row(row) if row else None

    def get_recent_decisions(self, limit: int = 50) -> List[DecisionRecord]:
        with self._connect() as con:
            rows = con.execute("SELECT * FROM decisions ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [self._decision_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Hourly statistics
    # ------------------------------------------------------------------

    def save_hourly_stat(self, stat: HourlyStat) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT OR REPLACE INTO hourly_stats (date, hour, price, solar_kwh, consumption_kwh, "
                "grid_import_kwh, grid_export_kwh, battery_soc) VALUES (?,?,?,?,?,?,?,?)",
                (stat.date, stat.hour, stat.price, stat.solar_kwh, stat.consumption_kwh,
                 stat.grid_import_kwh, stat.grid_export_kwh, stat.battery_soc),
            )

    def get_hourly_stats(self, date: str) -> List[HourlyStat]:
        with self._connect() as con:
            rows = con.execute("SELECT * FROM hourly_stats WHERE date = ? ORDER BY hour", (date,)).fetchall()
        return [HourlyStat(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Load shed state
    # ------------------------------------------------------------------

    def mark_load_shed(self, device_id: str, reason: str) -> None:
        now = self._clock().isoformat()
        with self._connect() as con:
            con.execute(
                "INSERT INTO load_state (device_id, is_shed, shed_since, shed_reason, updated_at) "
                "VALUES (?, 1, ?, ?, ?) "
                "ON CONFLICT(device_id) DO UPDATE SET is_shed = 1, shed_since = excluded.shed_since, "
                "shed_reason = excluded.shed_reason, updated_at = excluded.updated_at",
                (device_id, now, reason, now),
            )
        log.debug(f"Load {device_id} marked shed: {reason}")

    def mark_load_restored(self, device_id: str) -> None:
        with self._connect() as con:
            con.execute(
                "UPDATE load_state SET is_shed = 0, shed_since = NULL, shed_reason = NULL, updated_at = ? "
                "WHERE device_id = ?",
                (self._clock().isoformat(), device_id),
            )

    def get_load_state(self, device_id: str) -> Optional[LoadState]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM load_state WHERE device_id = ?", (device_id,)).fetchone()
        if not row:
            return None
        return LoadState(
            device_id=row["device_id"],
            is_shed=bool(row["is_shed"]),
            shed_since=row["shed_since"],
            shed_reason=row["shed_reason"],
            updated_at=row["updated_at"],
        )

    def get_shed_loads(self) -> List[LoadState]:
        with self._connect() as con:
            rows = con.execute("SELECT device_id FROM load_state WHERE is_shed = 1").fetchall()
        return [self.get_load_state(r["device_id"]) for r in rows]

    def get_shed_duration_minutes(self, device_id: str) -> Optional[float]:
        """Minutes since the device was shed, or None when it is not shed."""
        state = self.get_load_state(device_id)
        if state is None or not state.is_shed or not state.shed_since:
            return None
        shed_since = parse_iso_to_configured(state.shed_since)
        return (self._clock() - shed_since).total_seconds() / 60.0

    def save_load_action(self, record: LoadActionRecord) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT INTO load_actions (ts, device_id, device_name, action, reason, success, error) "
                "VALUES (?,?,?,?,?,?,?)",
                (record.ts, record.device_id, record.device_name, record.action, record.reason,
                 int(record.success), record.error),
            )

    def get_load_actions(self, limit: int = 50) -> List[LoadActionRecord]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT ts, device_id, device_name, action, reason, success, error "
                "FROM load_actions ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            LoadActionRecord(
                ts=r["ts"], device_id=r["device_id"], device_name=r["device_name"] or r["device_id"],
                action=r["action"], reason=r["reason"] or "", success=bool(r["success"]), error=r["error"],
            )
            for r in rows
        ]
