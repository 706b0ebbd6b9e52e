# voltassist/schedulers/autonomous.py
"""
Autonomous control loop.

One asyncio task owns the timer; every tick runs under a single lock so two
ticks can never overlap, whether they come from the timer, force_tick() or
resume(). Failures inside a tick are caught, classified and counted here and
nowhere else; after max_consecutive_errors the scheduler pauses itself until
an operator resumes it.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from voltassist.config import HubConfig
from voltassist.errors import ActuationFailure, ConnectivityError, DataUnavailable, VoltAssistError
from voltassist.forecast.series import PriceSeries, SolarSeries
from voltassist.models import BatteryStatus, DecisionRecord, HourlyStat
from voltassist.ports import (
    ActuationPort,
    ConnectivityPort,
    PersistencePort,
    PriceProvider,
    SolarProvider,
    TelemetryPort,
)
from voltassist.schedulers.decision import Decision, DecisionContext, decide
from voltassist.schedulers.loads import (
    ExecutionReport,
    LoadEvaluationContext,
    LoadEvaluationResult,
    LoadManager,
)
from voltassist.timezone_utils import now_configured

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerState:
    is_running: bool = False
    is_paused: bool = False
    run_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    last_action: Optional[str] = None
    last_reason: Optional[str] = None
    last_run: Optional[str] = None
    next_run: Optional[str] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class SchedulerStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    action_counts: Dict[str, int] = field(default_factory=dict)
    uptime_seconds: float = 0.0


@dataclass(frozen=True)
class _DailyForecast:
    date: str
    prices: PriceSeries
    solar: SolarSeries


class AutonomousScheduler:
    """
    Periodic decide-and-apply loop for the battery and switchable loads.

    States: stopped -> running <-> paused -> stopped. Readers only ever see
    frozen SchedulerState/SchedulerStats values; the scheduler swaps in new
    ones as it goes.
    """

    def __init__(
        self,
        cfg: HubConfig,
        connectivity: ConnectivityPort,
        telemetry: TelemetryPort,
        actuation: ActuationPort,
        price_provider: PriceProvider,
        solar_provider: SolarProvider,
        store: PersistencePort,
        load_manager: Optional[LoadManager] = None,
        clock: Callable[[], datetime] = now_configured,
    ):
        self.cfg = cfg
        self.connectivity = connectivity
        self.telemetry = telemetry
        self.actuation = actuation
        self.price_provider = price_provider
        self.solar_provider = solar_provider
        self.store = store
        self.load_manager = load_manager
        self._clock = clock

        self._state = SchedulerState()
        self._stats = SchedulerStats()
        self._started_at: Optional[datetime] = None
        self._uptime_total = 0.0  # seconds across earlier runs
        self._cache: Optional[_DailyForecast] = None
        self._last_decision: Optional[Decision] = None
        self._last_load_report: Optional[ExecutionReport] = None

        self._lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        uptime = self._uptime_total
        if self._state.is_running and self._started_at is not None:
            uptime += (self._clock() - self._started_at).total_seconds()
        return replace(self._stats, action_counts=dict(self._stats.action_counts), uptime_seconds=uptime)

    @property
    def last_decision(self) -> Optional[Decision]:
        return self._last_decision

    @property
    def last_load_report(self) -> Optional[ExecutionReport]:
        return self._last_load_report

    @property
    def interval_seconds(self) -> float:
        return self.cfg.scheduler.interval_minutes * 60.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Start the loop: one tick now, then one per interval.

        A fresh run starts unpaused with the circuit breaker re-armed.
        Returns False when the scheduler is already running.
        """
        if self._loop_task is not None and not self._loop_task.done():
            log.warning("Scheduler already running")
            return False
        self._started_at = self._clock()
        self._state = replace(self._state, is_running=True, is_paused=False, consecutive_errors=0)
        self._loop_task = asyncio.create_task(self._loop())
        log.info(f"Scheduler started (interval {self.cfg.scheduler.interval_minutes} min)")
        return True

    async def stop(self) -> bool:
        """
        Stop the timer from running or paused. A tick already in flight is
        allowed to finish. Returns False when the scheduler was not running.
        """
        task, self._loop_task = self._loop_task, None
        was_running = self._state.is_running
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._inflight is not None and not self._inflight.done():
            log.info("Waiting for in-flight tick to finish")
            await self._inflight
        if self._started_at is not None:
            self._uptime_total += (self._clock() - self._started_at).total_seconds()
        self._started_at = None
        self._state = replace(self._state, is_running=False, is_paused=False, next_run=None)
        if was_running:
            log.info("Scheduler stopped")
        return was_running

    async def restart(self) -> bool:
        await self.stop()
        return self.start()

    def pause(self) -> bool:
        """running -> paused. Returns False when stopped or already paused."""
        if not self._state.is_running:
            log.warning("Cannot pause: scheduler is not running")
            return False
        if self._state.is_paused:
            return False
        self._state = replace(self._state, is_paused=True)
        log.info("Scheduler paused")
        return True

    async def resume(self) -> bool:
        """
        paused -> running: clear the pause flag and the circuit breaker, then
        tick once. Returns False when stopped or not paused.
        """
        if not self._state.is_running:
            log.warning("Cannot resume: scheduler is not running")
            return False
        if not self._state.is_paused:
            return False
        self._state = replace(self._state, is_paused=False, consecutive_errors=0)
        log.info("Scheduler resumed")
        await self._run_tick()
        return True

    async def force_tick(self) -> bool:
        """Run one tick now, even while paused. The pause flag is left untouched."""
        return await self._run_tick(forced=True)

    def clear_cache(self):
        self._cache = None
        log.info("Forecast cache cleared")

    async def get_forecasts(self) -> Tuple[PriceSeries, SolarSeries]:
        """Today's cached series, fetched on demand."""
        forecast = await self._ensure_forecasts(self._clock())
        return forecast.prices, forecast.solar

    async def _loop(self):
        while True:
            # shielded so stop() cancels the sleep, never a running tick
            self._inflight = asyncio.ensure_future(self._run_tick())
            await asyncio.shield(self._inflight)
            next_run = self._clock() + timedelta(seconds=self.interval_seconds)
            self._state = replace(self._state, next_run=next_run.isoformat())
            await asyncio.sleep(self.interval_seconds)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _run_tick(self, forced: bool = False) -> bool:
        async with self._lock:
            if self._state.is_paused and not forced:
                log.debug("Scheduler paused, skipping tick")
                return False

            run_count = self._state.run_count + 1
            self._state = replace(self._state, run_count=run_count)
            self._stats = replace(self._stats, total_runs=self._stats.total_runs + 1)
            now = self._clock()
            try:
                decision = await self._tick(now, run_count)
            except Exception as e:
                self._record_failure(e)
                return False
            self._record_success(decision, now)
            return True

    async def _tick(self, now: datetime, run_count: int) -> Decision:
        if not await self.connectivity.test_connection():
            raise ConnectivityError("Home Assistant is not reachable")

        status = await self.telemetry.read_battery_status()
        if status is None:
            raise DataUnavailable("Battery telemetry unavailable")

        forecast = await self._ensure_forecasts(now)
        hour = now.hour
        price = forecast.prices.price_at(hour)
        forecast_solar = forecast.solar.watts_at(hour)

        thresholds = self.cfg.thresholds
        decision = decide(DecisionContext(
            soc=status.soc,
            current_price=price,
            solar_watts=status.solar_watts,
            load_watts=status.load_watts,
            current_hour=hour,
            prices=forecast.prices,
            solar=forecast.solar,
            thresholds=thresholds,
            tuning=self.cfg.tuning,
        ))
        log.info(
            f"Decision: {decision.action.value} ({decision.confidence:.0%}) - {decision.reason} "
            f"[SOC {status.soc:.0f}%, {price:.4f} EUR/kWh, solar {status.solar_watts:.0f}W "
            f"(forecast {forecast_solar:.0f}W)]"
        )

        load_results = await self._evaluate_loads(status, price, decision.price_percentile)

        previous = self.store.get_last_decision()
        decision_id = self.store.save_decision(DecisionRecord(
            ts=now.isoformat(),
            soc=status.soc,
            price=price,
            solar_watts=status.solar_watts,
            action=decision.action.value,
            reason=decision.reason,
            confidence=decision.confidence,
            price_percentile=decision.price_percentile,
        ))

        changed = previous is None or previous.action != decision.action.value
        reassert = run_count % self.cfg.scheduler.reassert_every_ticks == 0
        if changed or reassert:
            await self._apply(decision_id, decision, "changed" if changed else "re-assert")
        else:
            # inverter already holds this action
            self.store.update_decision_execution(decision_id, True)

        if self._loads_enabled and load_results:
            self._last_load_report = await self.load_manager.execute(load_results)

        if now.minute < self.cfg.scheduler.hourly_stat_minute:
            self._save_hourly_stat(now, price, status)

        return decision

    async def _ensure_forecasts(self, now: datetime) -> _DailyForecast:
        today = now.date()
        if self._cache is not None and self._cache.date == today.isoformat():
            return self._cache

        log.info(f"Fetching prices and solar forecast for {today.isoformat()}")
        prices, solar = await asyncio.gather(
            self.price_provider.get_prices(today),
            self.solar_provider.get_forecast(today),
        )
        self._cache = _DailyForecast(today.isoformat(), prices, solar)
        log.info(
            f"Forecast cached: avg price {prices.average:.4f} EUR/kWh "
            f"(min {prices.min_price:.4f}, max {prices.max_price:.4f}), "
            f"solar {solar.total_wh / 1000:.1f} kWh peak at {solar.peak_hour}:00"
        )
        return self._cache

    @property
    def _loads_enabled(self) -> bool:
        return self.cfg.loads.enabled and self.load_manager is not None

    async def _evaluate_loads(self, status: BatteryStatus, price: float, percentile: int) -> List[LoadEvaluationResult]:
        if not self._loads_enabled:
            return []
        observations = await self.load_manager.observe()
        return self.load_manager.evaluate(LoadEvaluationContext(
            soc=status.soc,
            price=price,
            price_percentile=percentile,
            solar_watts=status.solar_watts,
            load_watts=status.load_watts,
            observations=observations,
        ))

    async def _apply(self, decision_id: int, decision: Decision, why: str):
        try:
            if not await self.actuation.apply_charging_action(decision.action):
                raise ActuationFailure(f"{decision.action.value} was not confirmed by Home Assistant")
        except (ActuationFailure, ConnectivityError) as e:
            error = f"{type(e).__name__}: {e}"
            log.warning(f"Failed to apply {decision.action.value}: {error}")
            self.store.update_decision_execution(decision_id, False, error)
            return
        log.info(f"Applied {decision.action.value} ({why})")
        self.store.update_decision_execution(decision_id, True)

    def _save_hourly_stat(self, now: datetime, price: float, status: BatteryStatus):
        self.store.save_hourly_stat(HourlyStat(
            date=now.date().isoformat(),
            hour=now.hour,
            price=price,
            solar_kwh=status.solar_watts / 1000.0,
            consumption_kwh=status.load_watts / 1000.0,
            grid_import_kwh=max(status.grid_watts, 0.0) / 1000.0,
            grid_export_kwh=max(-status.grid_watts, 0.0) / 1000.0,
            battery_soc=status.soc,
        ))

    # ------------------------------------------------------------------
    # Health bookkeeping
    # ------------------------------------------------------------------

    def _record_success(self, decision: Decision, now: datetime):
        self._last_decision = decision
        counts = dict(self._stats.action_counts)
        counts[decision.action.value] = counts.get(decision.action.value, 0) + 1
        self._stats = replace(self._stats, successful_runs=self._stats.successful_runs + 1, action_counts=counts)
        self._state = replace(
            self._state,
            consecutive_errors=0,
            last_action=decision.action.value,
            last_reason=decision.reason,
            last_run=now.isoformat(),
            last_error=None,
        )

    def _record_failure(self, error: Exception):
        message = f"{type(error).__name__}: {error}"
        if isinstance(error, VoltAssistError):
            log.warning(f"Tick failed: {message}")
        else:
            log.error(f"Unexpected error in scheduler tick: {message}", exc_info=True)

        consecutive = self._state.consecutive_errors + 1
        self._stats = replace(self._stats, failed_runs=self._stats.failed_runs + 1)
        self._state = replace(
            self._state,
            error_count=self._state.error_count + 1,
            consecutive_errors=consecutive,
            last_error=message,
        )
        limit = self.cfg.scheduler.max_consecutive_errors
        if consecutive >= limit and self._state.is_running and not self._state.is_paused:
            self._state = replace(self._state, is_paused=True)
            log.error(f"{consecutive} consecutive tick failures, scheduler auto-paused until resumed")
