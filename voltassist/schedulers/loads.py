# voltassist/schedulers/loads.py
"""
Priority-tiered load shedding.

`evaluate()` is pure: it looks at one telemetry snapshot plus per-device
observations and proposes shed/restore actions. `LoadManager` is the thin
stateful shell that observes devices, executes proposals against Home
Assistant and keeps the persisted shed state used for hysteresis.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from voltassist.config import LoadDeviceConfig, LoadPriority, LoadsConfig
from voltassist.errors import (
    ActuationFailure,
    DataUnavailable,
    DeviceNotFound,
    DeviceNotShedable,
    VoltAssistError,
)
from voltassist.models import LoadActionRecord
from voltassist.ports import LoadControlPort, PersistencePort
from voltassist.timezone_utils import now_configured_iso

log = logging.getLogger(__name__)


class LoadAction(str, Enum):
    SHED = "shed"
    RESTORE = "restore"


@dataclass(frozen=True)
class DeviceObservation:
    device_id: str
    is_on: bool
    is_shed: bool = False
    shed_minutes: Optional[float] = None  # None when not shed


@dataclass(frozen=True)
class LoadEvaluationContext:
    soc: float
    price: float
    price_percentile: int
    solar_watts: float
    load_watts: float
    observations: Tuple[DeviceObservation, ...] = ()

    def observation(self, device_id: str) -> Optional[DeviceObservation]:
        for obs in self.observations:
            if obs.device_id == device_id:
                return obs
        return None


@dataclass(frozen=True)
class LoadEvaluationResult:
    action: LoadAction
    device_ids: Tuple[str, ...]
    reason: str
    rule: str


@dataclass(frozen=True)
class LoadRuleTuning:
    low_soc: float = 20
    elevated_percentile: int = 50
    critical_soc: float = 15
    good_soc: float = 50
    cheap_percentile: int = 30
    excess_solar_watts: float = 1000
    restore_fraction: float = 0.8  # restores must fit in 80% of the spare power
    recovery_soc: float = 40
    recovery_percentile: int = 50


def _sheddable(ctx: LoadEvaluationContext, devices: Sequence[LoadDeviceConfig]) -> List[LoadDeviceConfig]:
    result = []
    for dev in devices:
        if dev.priority == LoadPriority.CRITICAL or not dev.can_shed:
            continue
        obs = ctx.observation(dev.id)
        if obs is not None and obs.is_on and not obs.is_shed:
            result.append(dev)
    return result


def _restorable(ctx: LoadEvaluationContext, devices: Sequence[LoadDeviceConfig]) -> List[LoadDeviceConfig]:
    result = []
    for dev in devices:
        obs = ctx.observation(dev.id)
        if obs is None or not obs.is_shed or obs.shed_minutes is None:
            continue
        if obs.shed_minutes >= dev.min_off_minutes:
            result.append(dev)
    return result


def _ids(devices: Sequence[LoadDeviceConfig]) -> Tuple[str, ...]:
    return tuple(d.id for d in devices)


def evaluate(
    ctx: LoadEvaluationContext,
    devices: Sequence[LoadDeviceConfig],
    config: LoadsConfig,
    tuning: Optional[LoadRuleTuning] = None,
) -> List[LoadEvaluationResult]:
    """
    Propose shed/restore actions for one snapshot.

    Every rule is evaluated independently, so a tick may both shed and
    restore; the executor resolves per-device conflicts (last one wins).
    Critical devices never appear in a shed list, and only devices whose
    shed time has reached min_off_minutes appear in a restore list.
    """
    tuning = tuning or LoadRuleTuning()
    sheddable = _sheddable(ctx, devices)
    restorable = _restorable(ctx, devices)
    max_available = config.max_available_watts
    results: List[LoadEvaluationResult] = []

    # Overload: shed lowest tier first, biggest consumers first, until covered
    if ctx.load_watts > max_available:
        excess = ctx.load_watts - max_available
        shed, saved = [], 0.0
        for dev in sorted(sheddable, key=lambda d: (d.priority.rank, -d.power_watts)):
            if saved >= excess:
                break
            shed.append(dev)
            saved += dev.power_watts
        if shed:
            results.append(LoadEvaluationResult(
                action=LoadAction.SHED,
                device_ids=_ids(shed),
                reason=f"Overload: {ctx.load_watts:.0f}W > {max_available:.0f}W available",
                rule="overload",
            ))

    if ctx.soc < tuning.low_soc and ctx.price_percentile > tuning.elevated_percentile:
        accessories = [d for d in sheddable if d.priority == LoadPriority.ACCESSORY]
        if accessories:
            results.append(LoadEvaluationResult(
                action=LoadAction.SHED,
                device_ids=_ids(accessories),
                reason=f"Low SOC ({ctx.soc:.0f}%) with elevated price (P{ctx.price_percentile})",
                rule="low_soc_expensive",
            ))

    if ctx.soc < tuning.critical_soc:
        non_critical = [d for d in sheddable if d.priority in (LoadPriority.ACCESSORY, LoadPriority.COMFORT)]
        if non_critical:
            results.append(LoadEvaluationResult(
                action=LoadAction.SHED,
                device_ids=_ids(non_critical),
                reason=f"Critical SOC ({ctx.soc:.0f}%)",
                rule="critical_soc",
            ))

    if ctx.soc > tuning.good_soc and ctx.price_percentile < tuning.cheap_percentile and restorable:
        results.append(LoadEvaluationResult(
            action=LoadAction.RESTORE,
            device_ids=_ids(restorable),
            reason=f"Good SOC ({ctx.soc:.0f}%) and cheap price (P{ctx.price_percentile})",
            rule="good_soc_cheap",
        ))

    solar_excess = ctx.solar_watts - ctx.load_watts
    if solar_excess > tuning.excess_solar_watts:
        budget = solar_excess * tuning.restore_fraction
        restore, used = [], 0.0
        for dev in sorted(restorable, key=lambda d: d.power_watts):
            if used + dev.power_watts > budget:
                break
            restore.append(dev)
            used += dev.power_watts
        if restore:
            results.append(LoadEvaluationResult(
                action=LoadAction.RESTORE,
                device_ids=_ids(restore),
                reason=f"Solar surplus of {solar_excess:.0f}W",
                rule="excess_solar",
            ))

    if ctx.soc > tuning.recovery_soc and ctx.price_percentile < tuning.recovery_percentile and restorable:
        headroom = max_available - ctx.load_watts
        # most valuable tier first, smallest load first
        candidate = sorted(restorable, key=lambda d: (-d.priority.rank, d.power_watts))[0]
        if candidate.power_watts <= headroom * tuning.restore_fraction:
            results.append(LoadEvaluationResult(
                action=LoadAction.RESTORE,
                device_ids=(candidate.id,),
                reason=f"Gradual recovery: {headroom:.0f}W headroom",
                rule="gradual_recovery",
            ))

    return results


@dataclass(frozen=True)
class LoadActionOutcome:
    device_id: str
    action: LoadAction
    rule: str
    reason: str
    success: bool
    error: Optional[str] = None


@dataclass
class ExecutionReport:
    executed: List[LoadActionOutcome] = field(default_factory=list)
    failed: List[LoadActionOutcome] = field(default_factory=list)


class LoadManager:
    """Executes load proposals and owns the persisted shed/hysteresis state."""

    def __init__(self, config: LoadsConfig, control: LoadControlPort, store: PersistencePort,
                 tuning: Optional[LoadRuleTuning] = None):
        self.config = config
        self.control = control
        self.store = store
        self.tuning = tuning or LoadRuleTuning()
        self._devices: Dict[str, LoadDeviceConfig] = {d.id: d for d in config.devices}

    @property
    def devices(self) -> List[LoadDeviceConfig]:
        return list(self._devices.values())

    async def observe(self) -> Tuple[DeviceObservation, ...]:
        """Read on/off state from Home Assistant and shed state from storage."""
        observations = []
        for dev in self._devices.values():
            try:
                is_on = await self.control.is_on(dev.entity_id)
            except VoltAssistError as e:
                log.warning(f"Could not read state of {dev.display_name} ({dev.entity_id}): {e}")
                continue
            state = self.store.get_load_state(dev.id)
            is_shed = bool(state and state.is_shed)
            observations.append(DeviceObservation(
                device_id=dev.id,
                is_on=is_on,
                is_shed=is_shed,
                shed_minutes=self.store.get_shed_duration_minutes(dev.id) if is_shed else None,
            ))
        return tuple(observations)

    def evaluate(self, ctx: LoadEvaluationContext) -> List[LoadEvaluationResult]:
        return evaluate(ctx, self.devices, self.config, self.tuning)

    async def execute(self, results: Sequence[LoadEvaluationResult]) -> ExecutionReport:
        """
        Apply proposals device by device. A device named by several proposals
        gets the last one. Failures are reported, never raised, and never
        stop the remaining devices.
        """
        planned: Dict[str, LoadEvaluationResult] = {}
        for result in results:
            for device_id in result.device_ids:
                planned[device_id] = result

        report = ExecutionReport()
        for device_id, result in planned.items():
            outcome = await self._apply(device_id, result.action, result.rule, result.reason)
            (report.executed if outcome.success else report.failed).append(outcome)

        if report.executed or report.failed:
            log.info(f"Load actions: {len(report.executed)} executed, {len(report.failed)} failed")
        return report

    async def force_restore_all(self) -> ExecutionReport:
        """Operator override: restore every shed device, ignoring min_off_minutes."""
        report = ExecutionReport()
        for dev in self._devices.values():
            state = self.store.get_load_state(dev.id)
            if not (state and state.is_shed):
                continue
            outcome = await self._apply(dev.id, LoadAction.RESTORE, "manual", "Manual forced restore",
                                        enforce_hysteresis=False)
            (report.executed if outcome.success else report.failed).append(outcome)
        return report

    async def _apply(self, device_id: str, action: LoadAction, rule: str, reason: str,
                     enforce_hysteresis: bool = True) -> LoadActionOutcome:
        dev = self._devices.get(device_id)
        error = None
        try:
            if dev is None:
                raise DeviceNotFound(f"Unknown load device: {device_id}")
            if action == LoadAction.SHED:
                await self._shed(dev, reason)
            else:
                await self._restore(dev, enforce_hysteresis)
        except VoltAssistError as e:
            error = f"{type(e).__name__}: {e}"
            log.warning(f"Load {action.value} failed for {device_id}: {error}")
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            log.error(f"Unexpected error during load {action.value} of {device_id}: {e}", exc_info=True)

        success = error is None
        if success:
            log.info(f"Load {action.value}: {dev.display_name} ({dev.power_watts:.0f}W) - {reason}")
        self.store.save_load_action(LoadActionRecord(
            ts=now_configured_iso(),
            device_id=device_id,
            device_name=dev.display_name if dev else device_id,
            action=action.value,
            reason=f"[{rule}] {reason}",
            success=success,
            error=error,
        ))
        return LoadActionOutcome(device_id, action, rule, reason, success, error)

    async def _shed(self, dev: LoadDeviceConfig, reason: str):
        if dev.priority == LoadPriority.CRITICAL or not dev.can_shed:
            raise DeviceNotShedable(f"{dev.display_name} is not sheddable (priority={dev.priority.value})")
        if not await self.control.is_available(dev.entity_id):
            raise DataUnavailable(f"{dev.entity_id} is unavailable")
        if not await self.control.turn_off(dev.entity_id):
            raise ActuationFailure(f"turn_off {dev.entity_id} was not confirmed")
        self.store.mark_load_shed(dev.id, reason)

    async def _restore(self, dev: LoadDeviceConfig, enforce_hysteresis: bool):
        if enforce_hysteresis:
            minutes = self.store.get_shed_duration_minutes(dev.id)
            if minutes is None:
                raise ActuationFailure(f"{dev.display_name} is not shed")
            if minutes < dev.min_off_minutes:
                raise ActuationFailure(
                    f"{dev.display_name} shed {minutes:.1f} min ago, min_off_minutes={dev.min_off_minutes}"
                )
        if not await self.control.turn_on(dev.entity_id):
            raise ActuationFailure(f"turn_on {dev.entity_id} was not confirmed")
        self.store.mark_load_restored(dev.id)
