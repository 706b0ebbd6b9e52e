# voltassist/schedulers/decision.py
"""
Rule-based battery decision engine.

`decide()` is a pure, total function of its context: it never performs I/O,
never mutates its inputs and always returns a Decision. Rules are evaluated
in the fixed order of RULES and the first one that returns a Decision wins.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from voltassist.config import DecisionTuning, ThresholdsConfig
from voltassist.forecast.series import PriceSeries, SolarSeries

log = logging.getLogger(__name__)


class BatteryAction(str, Enum):
    CHARGE_FROM_GRID = "charge_from_grid"
    CHARGE_FROM_SOLAR = "charge_from_solar"
    DISCHARGE = "discharge"
    IDLE = "idle"


@dataclass(frozen=True)
class Factor:
    """Explainability only. Never read by control logic."""
    name: str
    value: str
    weight: float
    favorable: bool


@dataclass(frozen=True)
class Decision:
    action: BatteryAction
    reason: str
    confidence: float
    price_percentile: int
    next_review_hour: Optional[int] = None
    rule: str = ""
    factors: Tuple[Factor, ...] = ()


@dataclass(frozen=True)
class DecisionContext:
    soc: float
    current_price: float
    solar_watts: float
    load_watts: float
    current_hour: int
    prices: PriceSeries
    solar: SolarSeries
    thresholds: ThresholdsConfig
    tuning: DecisionTuning = field(default_factory=DecisionTuning)


@dataclass
class _Analysis:
    """Metrics derived once per evaluation and shared by all rules."""
    percentile: int
    low_price: float
    high_price: float
    remaining_solar_wh: float
    hours_to_solar: int
    upcoming_cheap_hours: List[int]
    factors: List[Factor]


def price_percentile(price: float, prices: PriceSeries) -> int:
    """Percentile rank (0-100) of `price` within the day's prices."""
    return prices.percentile_rank(price)


def _fmt_price(price: float) -> str:
    return f"{price * 100:.1f}c/kWh"


def _analyze(ctx: DecisionContext) -> _Analysis:
    th = ctx.thresholds
    percentile = price_percentile(ctx.current_price, ctx.prices)
    low_price = ctx.prices.percentile_price(th.price_percentile_low)
    high_price = ctx.prices.percentile_price(th.price_percentile_high)
    remaining_wh = ctx.solar.remaining_wh(ctx.current_hour)

    factors = [
        Factor(
            name="SOC",
            value=f"{ctx.soc:.0f}%",
            weight=1.0 if ctx.soc < th.emergency_soc else 0.3,
            favorable=th.min_soc <= ctx.soc <= th.target_soc,
        ),
        Factor(
            name="Price Percentile",
            value=f"P{percentile} ({_fmt_price(ctx.current_price)})",
            weight=0.4,
            favorable=percentile <= th.price_percentile_low,
        ),
        Factor(
            name="Solar Production",
            value=f"{ctx.solar_watts:.0f}W now, {remaining_wh / 1000:.0f}kWh remaining",
            weight=0.3,
            favorable=ctx.solar_watts >= th.min_solar_watts_for_charge,
        ),
    ]

    return _Analysis(
        percentile=percentile,
        low_price=low_price,
        high_price=high_price,
        remaining_solar_wh=remaining_wh,
        hours_to_solar=ctx.solar.hours_until(th.min_solar_watts_for_charge, ctx.current_hour),
        upcoming_cheap_hours=ctx.prices.hours_at_or_below(low_price, after_hour=ctx.current_hour),
        factors=factors,
    )


def _first_hour_after(prices: PriceSeries, hour: int, predicate: Callable[[float], bool]) -> Optional[int]:
    for p in prices.points:
        if p.hour > hour and predicate(p.price):
            return p.hour
    return None


def _in_window(hour: int, window: Tuple[int, int]) -> bool:
    start, end = window
    if start <= end:
        return start <= hour <= end
    # overnight window (e.g., 22-6)
    return hour >= start or hour <= end


def _emergency_rule(ctx: DecisionContext, a: _Analysis) -> Optional[Decision]:
    if ctx.soc >= ctx.thresholds.emergency_soc:
        return None
    # no review hour: keep charging until safe
    return Decision(
        action=BatteryAction.CHARGE_FROM_GRID,
        reason=f"EMERGENCY: critical SOC ({ctx.soc:.0f}%), forced grid charge",
        confidence=1.0,
        price_percentile=a.percentile,
        next_review_hour=None,
        rule="emergency",
        factors=tuple(a.factors),
    )


def _solar_rule(ctx: DecisionContext, a: _Analysis) -> Optional[Decision]:
    th = ctx.thresholds
    if ctx.solar_watts < th.min_solar_watts_for_charge:
        return None

    excess = ctx.solar_watts - ctx.load_watts
    if excess > 0 and ctx.soc < th.max_soc:
        return Decision(
            action=BatteryAction.CHARGE_FROM_SOLAR,
            reason=f"Charging from solar: {ctx.solar_watts:.0f}W production, {excess:.0f}W surplus",
            confidence=0.95,
            price_percentile=a.percentile,
            next_review_hour=ctx.solar.first_hour_below(th.min_solar_watts_for_charge, ctx.current_hour),
            rule="solar",
            factors=tuple(a.factors),
        )

    if excess >= -ctx.tuning.solar_idle_deficit_w:
        return Decision(
            action=BatteryAction.IDLE,
            reason=f"Solar covers consumption: {ctx.solar_watts:.0f}W vs {ctx.load_watts:.0f}W demand",
            confidence=0.85,
            price_percentile=a.percentile,
            rule="solar",
            factors=tuple(a.factors),
        )
    return None


def _cheap_price_rule(ctx: DecisionContext, a: _Analysis) -> Optional[Decision]:
    th, tuning = ctx.thresholds, ctx.tuning
    if a.percentile > th.price_percentile_low or ctx.soc >= th.target_soc:
        return None

    cheaper_ahead = any(
        ctx.prices.price_at(h) < ctx.current_price * tuning.cheaper_hour_ratio
        for h in a.upcoming_cheap_hours
    )
    if cheaper_ahead and ctx.soc >= tuning.defer_min_soc:
        hours = ", ".join(str(h) for h in a.upcoming_cheap_hours)
        a.factors.append(Factor(
            name="Strategy",
            value=f"Waiting for cheaper hours ({hours})",
            weight=0.2,
            favorable=True,
        ))
        return None

    return Decision(
        action=BatteryAction.CHARGE_FROM_GRID,
        reason=f"Low price (P{a.percentile}): {_fmt_price(ctx.current_price)}, charging from grid",
        confidence=0.9,
        price_percentile=a.percentile,
        next_review_hour=_first_hour_after(ctx.prices, ctx.current_hour, lambda p: p > a.high_price),
        rule="cheap_price",
        factors=tuple(a.factors),
    )


def _expensive_price_rule(ctx: DecisionContext, a: _Analysis) -> Optional[Decision]:
    th, tuning = ctx.thresholds, ctx.tuning
    if a.percentile < th.price_percentile_high or ctx.soc <= th.min_soc + tuning.discharge_soc_margin:
        return None

    solar_coming_soon = a.hours_to_solar <= tuning.solar_soon_hours
    cheap_hours_tonight = [h for h in a.upcoming_cheap_hours if _in_window(h, tuning.night_window)]
    safe_to_discharge = ctx.soc > tuning.safe_discharge_soc or len(cheap_hours_tonight) > 0
    if solar_coming_soon or not safe_to_discharge:
        return None

    return Decision(
        action=BatteryAction.DISCHARGE,
        reason=f"High price (P{a.percentile}): {_fmt_price(ctx.current_price)}, discharging",
        confidence=0.85,
        price_percentile=a.percentile,
        next_review_hour=_first_hour_after(ctx.prices, ctx.current_hour, lambda p: p < a.low_price),
        rule="expensive_price",
        factors=tuple(a.factors),
    )


def _night_precharge_rule(ctx: DecisionContext, a: _Analysis) -> Optional[Decision]:
    th, tuning = ctx.thresholds, ctx.tuning
    start, end = tuning.precharge_hours
    if not (start <= ctx.current_hour <= end):
        return None
    # low + bonus, capped at the high percentile so a pre-charge hour is
    # never one the expensive rule would discharge in
    ceiling = min(th.price_percentile_low + tuning.precharge_percentile_bonus, th.price_percentile_high)
    if a.percentile > ceiling or ctx.soc >= th.target_soc:
        return None

    return Decision(
        action=BatteryAction.CHARGE_FROM_GRID,
        reason=f"Night pre-charge: favourable price (P{a.percentile}) and SOC {ctx.soc:.0f}%",
        confidence=0.75,
        price_percentile=a.percentile,
        next_review_hour=tuning.precharge_review_hour,
        rule="night_precharge",
        factors=tuple(a.factors),
    )


def _default_rule(ctx: DecisionContext, a: _Analysis) -> Decision:
    th = ctx.thresholds
    reasons = []
    if ctx.soc >= th.target_soc:
        reasons.append(f"battery full ({ctx.soc:.0f}%)")
    if th.price_percentile_low < a.percentile < th.price_percentile_high:
        reasons.append(f"mid-range price (P{a.percentile})")
    if 0 < ctx.solar_watts < th.min_solar_watts_for_charge:
        reasons.append(f"insufficient solar ({ctx.solar_watts:.0f}W)")
    if a.upcoming_cheap_hours:
        hours = ", ".join(f"{h}:00" for h in a.upcoming_cheap_hours[:3])
        reasons.append(f"waiting for cheap hours ({hours})")
    if not reasons:
        reasons.append("conditions optimal, conserving energy")

    return Decision(
        action=BatteryAction.IDLE,
        reason="Standby: " + ", ".join(reasons),
        confidence=0.7,
        price_percentile=a.percentile,
        next_review_hour=min(a.upcoming_cheap_hours[:1] + [ctx.current_hour + 1]),
        rule="default",
        factors=tuple(a.factors),
    )


# Priority order is the contract: first match wins.
RULES: Tuple[Tuple[str, Callable[[DecisionContext, _Analysis], Optional[Decision]]], ...] = (
    ("emergency", _emergency_rule),
    ("solar", _solar_rule),
    ("cheap_price", _cheap_price_rule),
    ("expensive_price", _expensive_price_rule),
    ("night_precharge", _night_precharge_rule),
)


def decide(ctx: DecisionContext) -> Decision:
    """Evaluate the rule chain and return the battery action for this moment."""
    analysis = _analyze(ctx)
    for name, rule in RULES:
        decision = rule(ctx, analysis)
        if decision is not None:
            log.debug(f"Rule '{name}' matched: {decision.action.value} ({decision.reason})")
            return decision
    return _default_rule(ctx, analysis)


def quick_decision(
    soc: float,
    price: float,
    solar_watts: float,
    prices: PriceSeries,
    thresholds: Optional[ThresholdsConfig] = None,
    tuning: Optional[DecisionTuning] = None,
) -> BatteryAction:
    """Action-only evaluation without look-ahead, for what-if queries."""
    th = thresholds or ThresholdsConfig()
    tuning = tuning or DecisionTuning()
    if soc < th.emergency_soc:
        return BatteryAction.CHARGE_FROM_GRID
    if solar_watts >= th.min_solar_watts_for_charge and soc < th.max_soc:
        return BatteryAction.CHARGE_FROM_SOLAR

    percentile = price_percentile(price, prices)
    if percentile <= th.price_percentile_low and soc < th.target_soc:
        return BatteryAction.CHARGE_FROM_GRID
    if percentile >= th.price_percentile_high and soc > th.min_soc + tuning.discharge_soc_margin:
        return BatteryAction.DISCHARGE
    return BatteryAction.IDLE


_ACTION_LABELS = {
    BatteryAction.CHARGE_FROM_GRID: "Charge from grid",
    BatteryAction.CHARGE_FROM_SOLAR: "Charge from solar",
    BatteryAction.DISCHARGE: "Discharge",
    BatteryAction.IDLE: "Standby",
}


def explain_decision(decision: Decision) -> str:
    """Human-readable multi-line summary of a decision."""
    lines = [
        f"Decision: {_ACTION_LABELS[decision.action]}",
        f"Confidence: {round(decision.confidence * 100)}%",
        f"Reason: {decision.reason}",
        "",
        "Factors:",
    ]
    for factor in decision.factors:
        mark = "+" if factor.favorable else "!"
        lines.append(f"  [{mark}] {factor.name}: {factor.value}")
    if decision.next_review_hour is not None:
        lines.append("")
        lines.append(f"Next review: {decision.next_review_hour}:00")
    return "\n".join(lines)
