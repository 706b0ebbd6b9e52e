# voltassist/schedulers/optimizer.py
"""
Day-ahead charging plan.

Drives the decision engine across hours 0-23 with a simulated battery state
so the plan shows what the live scheduler would do over a full day. This is
a greedy simulation, not a solver: each hour's decision only sees the SOC
carried forward from the previous hour.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from voltassist.config import BatteryConfig, DecisionTuning, ThresholdsConfig
from voltassist.forecast.series import HOURS_PER_DAY, PriceSeries, SolarSeries
from voltassist.schedulers.decision import BatteryAction, Decision, DecisionContext, decide

log = logging.getLogger(__name__)

# Typical household profile, Wh per hour
DEFAULT_CONSUMPTION_WH = (
    200, 150, 150, 150, 150, 200,    # 00-05 night
    400, 600, 500, 400, 300, 300,    # 06-11 morning
    400, 300, 300, 400, 500, 800,    # 12-17 afternoon
    1200, 1000, 800, 600, 400, 250,  # 18-23 evening peak
)

GOOD_SOLAR_DAY_WH = 5000
LOW_SOLAR_DAY_WH = 2000


@dataclass(frozen=True)
class HourPlan:
    hour: int
    price: float
    solar_watts: float
    consumption_wh: float
    decision: Decision
    expected_soc: float


@dataclass(frozen=True)
class ChargingPlan:
    date: str
    hours: Tuple[HourPlan, ...]
    grid_charge_hours: Tuple[int, ...]
    grid_charge_cost: float
    solar_charge_wh: float
    grid_export_wh: float
    savings: float
    recommendations: Tuple[str, ...]


class _BatterySim:
    """Energy bookkeeping for one simulated day, in Wh."""

    def __init__(self, battery: BatteryConfig, thresholds: ThresholdsConfig):
        self.capacity = battery.capacity_wh
        self.charge_rate = battery.max_charge_rate_w
        self.discharge_rate = battery.max_discharge_rate_w
        self.min_wh = thresholds.min_soc / 100.0 * self.capacity
        self.max_wh = thresholds.max_soc / 100.0 * self.capacity
        start = min(max(battery.initial_soc, thresholds.min_soc), thresholds.max_soc)
        self.wh = start / 100.0 * self.capacity

    @property
    def soc(self) -> float:
        # rounded so a clamped battery reads exactly min_soc/max_soc
        return round(self.wh / self.capacity * 100.0, 6)

    @property
    def room(self) -> float:
        return max(0.0, self.max_wh - self.wh)

    @property
    def available(self) -> float:
        return max(0.0, self.wh - self.min_wh)

    def charge(self, wh: float) -> float:
        wh = max(0.0, min(wh, self.charge_rate, self.room))
        self.wh += wh
        return wh

    def discharge(self, wh: float) -> float:
        wh = max(0.0, min(wh, self.discharge_rate, self.available))
        self.wh -= wh
        return wh

    def clamp(self):
        self.wh = min(max(self.wh, self.min_wh), self.max_wh)


def _baseline_grid_cost(
    prices: PriceSeries,
    solar: SolarSeries,
    battery: BatteryConfig,
    thresholds: ThresholdsConfig,
    consumption: Sequence[float],
) -> float:
    """Cost of charging at full rate whenever below target, blind to price."""
    sim = _BatterySim(battery, thresholds)
    cost = 0.0
    for hour in range(HOURS_PER_DAY):
        if sim.soc < thresholds.target_soc:
            charged = sim.charge(sim.charge_rate)
            cost += prices.price_at(hour) * charged / 1000.0
        else:
            net = consumption[hour] - solar.watts_at(hour)
            if net > 0:
                sim.discharge(net)
        sim.clamp()
    return cost


def _recommendations(
    prices: PriceSeries,
    solar: SolarSeries,
    grid_charge_hours: List[int],
    savings: float,
) -> List[str]:
    recs = []
    if grid_charge_hours:
        hours = ", ".join(str(h) for h in grid_charge_hours)
        recs.append(f"Charge from grid during hours {hours} (cheapest prices)")

    total_kwh = round(solar.total_wh / 1000)
    if solar.total_wh > GOOD_SOLAR_DAY_WH:
        recs.append(f"Good solar day expected ({total_kwh}kWh), prioritise self-consumption")
    elif solar.total_wh < LOW_SOLAR_DAY_WH:
        recs.append(f"Low solar expected ({total_kwh}kWh), plan for grid charging")

    expensive = prices.expensive_hours()
    if expensive:
        hours = ", ".join(str(h) for h in expensive)
        recs.append(f"Avoid grid consumption during hours {hours} (expensive)")

    if savings > 0:
        recs.append(f"Estimated savings today: EUR {savings:.2f} vs price-blind charging")
    return recs


def generate_plan(
    prices: PriceSeries,
    solar: SolarSeries,
    battery: BatteryConfig,
    thresholds: ThresholdsConfig,
    consumption: Optional[Sequence[float]] = None,
    tuning: Optional[DecisionTuning] = None,
) -> ChargingPlan:
    """
    Simulate the decision engine hour by hour and summarise the day.

    Args:
        prices: Day-ahead prices (EUR/kWh)
        solar: Solar forecast for the same day
        battery: Capacity, charge/discharge rates and starting SOC
        thresholds: Same thresholds the live scheduler uses
        consumption: Optional 24-value Wh profile, defaults to DEFAULT_CONSUMPTION_WH
        tuning: Optional decision heuristics override

    Returns:
        ChargingPlan with one HourPlan per hour; expected_soc always lies
        within [min_soc, max_soc].
    """
    consumption = tuple(consumption) if consumption is not None else DEFAULT_CONSUMPTION_WH
    if len(consumption) != HOURS_PER_DAY:
        raise ValueError(f"consumption profile needs {HOURS_PER_DAY} values, got {len(consumption)}")
    tuning = tuning or DecisionTuning()

    sim = _BatterySim(battery, thresholds)
    hours: List[HourPlan] = []
    grid_charge_hours: List[int] = []
    grid_charge_cost = 0.0
    solar_charge_wh = 0.0
    grid_export_wh = 0.0

    for hour in range(HOURS_PER_DAY):
        price = prices.price_at(hour)
        solar_w = solar.watts_at(hour)
        load_wh = float(consumption[hour])
        surplus = max(0.0, solar_w - load_wh)

        decision = decide(DecisionContext(
            soc=sim.soc,
            current_price=price,
            solar_watts=solar_w,
            load_watts=load_wh,
            current_hour=hour,
            prices=prices,
            solar=solar,
            thresholds=thresholds,
            tuning=tuning,
        ))

        if decision.action == BatteryAction.CHARGE_FROM_GRID:
            charged = sim.charge(sim.charge_rate)
            grid_charge_hours.append(hour)
            grid_charge_cost += price * charged / 1000.0
        elif decision.action == BatteryAction.CHARGE_FROM_SOLAR:
            charged = sim.charge(surplus)
            solar_charge_wh += charged
            grid_export_wh += surplus - charged
        elif decision.action == BatteryAction.DISCHARGE:
            need = load_wh - solar_w
            discharged = sim.discharge(need if need > 0 else sim.discharge_rate)
            grid_export_wh += surplus
            if need <= 0:
                grid_export_wh += discharged
        else:
            net = load_wh - solar_w
            if net > 0:
                sim.discharge(net)
            grid_export_wh += surplus

        sim.clamp()
        hours.append(HourPlan(
            hour=hour,
            price=price,
            solar_watts=solar_w,
            consumption_wh=load_wh,
            decision=decision,
            expected_soc=round(sim.soc, 2),
        ))

    baseline = _baseline_grid_cost(prices, solar, battery, thresholds, consumption)
    savings = max(0.0, baseline - grid_charge_cost)
    log.debug(
        f"Plan for {prices.date}: grid hours={grid_charge_hours}, cost={grid_charge_cost:.3f}, "
        f"baseline={baseline:.3f}, savings={savings:.3f}"
    )

    return ChargingPlan(
        date=prices.date,
        hours=tuple(hours),
        grid_charge_hours=tuple(grid_charge_hours),
        grid_charge_cost=grid_charge_cost,
        solar_charge_wh=solar_charge_wh,
        grid_export_wh=grid_export_wh,
        savings=savings,
        recommendations=tuple(_recommendations(prices, solar, grid_charge_hours, savings)),
    )


_PLAN_ACTION_LABELS = {
    BatteryAction.CHARGE_FROM_GRID: "Charge from grid",
    BatteryAction.CHARGE_FROM_SOLAR: "Charge from solar",
    BatteryAction.DISCHARGE: "Use battery",
}


def format_plan(plan: ChargingPlan) -> str:
    """Render a plan as text, grouping consecutive hours with the same non-idle action."""
    lines = [
        f"VoltAssist plan for {plan.date}",
        "=" * 40,
        "",
        "Recommendations:",
    ]
    lines.extend(f"  - {r}" for r in plan.recommendations)
    lines.append("")
    lines.append("Hourly schedule:")

    start = 0
    for i in range(1, len(plan.hours) + 1):
        current = plan.hours[start].decision.action
        if i == len(plan.hours) or plan.hours[i].decision.action != current:
            if current != BatteryAction.IDLE:
                lines.append(f"  {start}:00-{i}:00 -> {_PLAN_ACTION_LABELS[current]}")
            start = i

    lines.append("")
    lines.append("Summary:")
    lines.append(f"  Grid charge: {len(plan.grid_charge_hours)}h (EUR {plan.grid_charge_cost:.2f})")
    lines.append(f"  Solar charge: {plan.solar_charge_wh / 1000:.1f}kWh")
    lines.append(f"  Grid export: {plan.grid_export_wh / 1000:.1f}kWh")
    lines.append(f"  Estimated savings: EUR {plan.savings:.2f}")
    return "\n".join(lines)
