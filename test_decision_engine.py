"""
Unit tests for the rule-based battery decision engine
"""

import pytest

from voltassist.config import DecisionTuning, ThresholdsConfig
from voltassist.forecast.series import PriceSeries, SolarSeries
from voltassist.schedulers.decision import (
    RULES,
    BatteryAction,
    DecisionContext,
    decide,
    explain_decision,
    price_percentile,
    quick_decision,
)

# A PVPC-like day: cheap early morning and mid-afternoon, evening peak.
# Sorted ranks: h4 P0, h3 P4, h5 P8, h2 P13, h14 P17, h1 P21, h0 P38,
# h12 P42, h17 P79, h21 P83, h18 P88, h20 P92, h19 P96.
PRICES = [
    0.120, 0.105, 0.095, 0.085, 0.080, 0.090, 0.110, 0.150,
    0.170, 0.160, 0.140, 0.130, 0.125, 0.115, 0.100, 0.118,
    0.145, 0.180, 0.220, 0.250, 0.240, 0.200, 0.165, 0.135,
]

DAY_SOLAR = [0] * 7 + [200, 800, 1500, 2500, 3000, 3200, 3000, 2500, 1500, 800, 200] + [0] * 6


@pytest.fixture
def prices():
    return PriceSeries.from_values("2026-10-17", PRICES)


@pytest.fixture
def solar():
    return SolarSeries.from_values("2026-10-17", DAY_SOLAR)


@pytest.fixture
def make_ctx(prices, solar):
    def _make(soc, hour, solar_watts=0.0, load_watts=500.0, series=None, thresholds=None, tuning=None):
        series = series or prices
        return DecisionContext(
            soc=soc,
            current_price=series.price_at(hour),
            solar_watts=solar_watts,
            load_watts=load_watts,
            current_hour=hour,
            prices=series,
            solar=solar,
            thresholds=thresholds or ThresholdsConfig(),
            tuning=tuning or DecisionTuning(),
        )
    return _make


class TestRuleOrder:
    """Test that the rule chain keeps its priority order"""

    def test_rule_names(self):
        assert [name for name, _ in RULES] == [
            "emergency", "solar", "cheap_price", "expensive_price", "night_precharge",
        ]


class TestEmergencyRule:
    """Test the critical SOC override"""

    def test_scenario_low_soc_expensive_price(self, make_ctx):
        """soc=10 at P92 without solar charges from the grid with full confidence"""
        decision = decide(make_ctx(soc=10, hour=20))

        assert decision.action == BatteryAction.CHARGE_FROM_GRID
        assert decision.confidence == 1.0
        assert decision.rule == "emergency"
        assert decision.next_review_hour is None
        assert decision.price_percentile == 92

    @pytest.mark.parametrize("soc", [0, 7.5, 14.9])
    @pytest.mark.parametrize("hour,solar_watts,load_watts", [(12, 3000, 500), (20, 0, 800), (4, 0, 200)])
    def test_overrides_everything(self, make_ctx, soc, hour, solar_watts, load_watts):
        """Test that any SOC below emergency_soc forces a grid charge"""
        decision = decide(make_ctx(soc=soc, hour=hour, solar_watts=solar_watts, load_watts=load_watts))

        assert decision.action == BatteryAction.CHARGE_FROM_GRID
        assert decision.confidence == 1.0

    def test_at_threshold_is_not_emergency(self, make_ctx):
        decision = decide(make_ctx(soc=15, hour=20))

        assert decision.rule != "emergency"


class TestSolarRule:
    """Test solar charging and solar idle"""

    def test_scenario_solar_surplus(self, make_ctx):
        """soc=70 with 2000W solar and 800W load charges from solar"""
        decision = decide(make_ctx(soc=70, hour=12, solar_watts=2000, load_watts=800))

        assert decision.action == BatteryAction.CHARGE_FROM_SOLAR
        assert decision.confidence == 0.95
        assert decision.rule == "solar"
        assert decision.next_review_hour == 17

    def test_full_battery_idles(self, make_ctx):
        """Test that a full battery with surplus goes idle instead of charging"""
        decision = decide(make_ctx(soc=96, hour=12, solar_watts=2000, load_watts=800))

        assert decision.action == BatteryAction.IDLE
        assert decision.confidence == 0.85
        assert decision.rule == "solar"

    def test_small_deficit_idles(self, make_ctx):
        decision = decide(make_ctx(soc=60, hour=12, solar_watts=600, load_watts=650))

        assert decision.action == BatteryAction.IDLE
        assert decision.rule == "solar"

    def test_large_deficit_falls_through(self, make_ctx):
        decision = decide(make_ctx(soc=60, hour=12, solar_watts=600, load_watts=2000))

        assert decision.action == BatteryAction.IDLE
        assert decision.rule == "default"
        assert decision.confidence == 0.7


class TestCheapPriceRule:
    """Test grid charging at low prices"""

    def test_scenario_cheap_hour(self, make_ctx):
        """soc=50 at P17 with no cheaper hour left today charges from the grid"""
        decision = decide(make_ctx(soc=50, hour=14))

        assert decision.action == BatteryAction.CHARGE_FROM_GRID
        assert decision.confidence == 0.9
        assert decision.rule == "cheap_price"
        assert decision.price_percentile == 17
        # first later hour above the high-percentile price
        assert decision.next_review_hour == 18

    def test_defers_to_cheaper_upcoming_hour(self, make_ctx):
        """Test that a materially cheaper hour ahead defers the cheap-price charge"""
        decision = decide(make_ctx(soc=50, hour=2))

        # hours 3 and 4 are >10% cheaper, so the night pre-charge rule decides instead
        assert decision.rule == "night_precharge"
        assert any(f.name == "Strategy" for f in decision.factors)

    def test_low_soc_never_defers(self, make_ctx):
        decision = decide(make_ctx(soc=25, hour=2))

        assert decision.action == BatteryAction.CHARGE_FROM_GRID
        assert decision.rule == "cheap_price"

    def test_above_target_does_not_charge(self, make_ctx):
        decision = decide(make_ctx(soc=85, hour=14))

        assert decision.action == BatteryAction.IDLE
        assert "battery full" in decision.reason


class TestExpensivePriceRule:
    """Test discharging at high prices and its guards"""

    def test_discharge_at_peak(self, make_ctx):
        decision = decide(make_ctx(soc=60, hour=19))

        assert decision.action == BatteryAction.DISCHARGE
        assert decision.confidence == 0.85
        assert decision.rule == "expensive_price"
        assert decision.next_review_hour is None

    def test_margin_above_min_soc(self, make_ctx):
        """Test that SOC must exceed min_soc + 15 to discharge"""
        decision = decide(make_ctx(soc=30, hour=19))

        assert decision.action == BatteryAction.IDLE

    def test_night_reserve_protected(self, make_ctx):
        """Test that SOC <= 40 without a cheap night hour ahead keeps the battery"""
        decision = decide(make_ctx(soc=35, hour=19))

        assert decision.action == BatteryAction.IDLE

    def test_cheap_night_hour_allows_discharge(self, make_ctx):
        values = list(PRICES)
        values[23] = 0.070
        series = PriceSeries.from_values("2026-10-17", values)

        decision = decide(make_ctx(soc=35, hour=19, series=series))

        assert decision.action == BatteryAction.DISCHARGE
        assert decision.next_review_hour == 23

    def test_solar_soon_blocks_discharge(self, make_ctx):
        """Test that no discharge happens when solar is forecast within 2 hours"""
        thresholds = ThresholdsConfig(price_percentile_high=70)
        decision = decide(make_ctx(soc=60, hour=8, thresholds=thresholds))

        assert decision.price_percentile == 75
        assert decision.action == BatteryAction.IDLE


class TestNightPrechargeRule:
    """Test the night pre-charge window"""

    def test_precharge(self, make_ctx):
        decision = decide(make_ctx(soc=50, hour=1))

        assert decision.action == BatteryAction.CHARGE_FROM_GRID
        assert decision.confidence == 0.75
        assert decision.rule == "night_precharge"
        assert decision.next_review_hour == 7
        assert decision.price_percentile == 21

    def test_price_too_high_for_precharge(self, make_ctx):
        decision = decide(make_ctx(soc=50, hour=0))

        assert decision.action == BatteryAction.IDLE
        assert decision.rule == "default"
        assert decision.next_review_hour == 1

    def test_bonus_capped_by_high_percentile(self, make_ctx):
        """Test that the bonus never reaches into the expensive band"""
        thresholds = ThresholdsConfig(price_percentile_low=15, price_percentile_high=20)
        # P21 is within low + 10 but above the high percentile
        decision = decide(make_ctx(soc=25, hour=1, thresholds=thresholds))

        assert decision.action == BatteryAction.IDLE
        assert decision.rule == "default"


class TestDefaultRule:
    """Test the idle fallback"""

    def test_mid_range_price(self, make_ctx):
        decision = decide(make_ctx(soc=60, hour=12))

        assert decision.action == BatteryAction.IDLE
        assert decision.rule == "default"
        assert "mid-range price" in decision.reason
        assert decision.next_review_hour == 13

    def test_insufficient_solar_reason(self, make_ctx):
        decision = decide(make_ctx(soc=60, hour=12, solar_watts=200, load_watts=400))

        assert "insufficient solar" in decision.reason

    def test_waiting_for_cheap_hours(self, make_ctx):
        """Test that an upcoming cheap hour is the next review point"""
        decision = decide(make_ctx(soc=60, hour=11))

        assert "waiting for cheap hours" in decision.reason
        assert decision.next_review_hour == 12


class TestDecisionProperties:
    """Test purity and the helper functions"""

    def test_decide_is_pure(self, make_ctx):
        ctx = make_ctx(soc=50, hour=2)

        assert decide(ctx) == decide(ctx)

    def test_factors_present(self, make_ctx):
        decision = decide(make_ctx(soc=60, hour=12))
        names = [f.name for f in decision.factors]

        assert names[:3] == ["SOC", "Price Percentile", "Solar Production"]

    def test_price_percentile(self, prices):
        assert price_percentile(0.250, prices) == 96
        assert price_percentile(0.300, prices) == 100
        assert price_percentile(0.080, prices) == 0


class TestQuickDecision:
    """Test the action-only what-if evaluation"""

    def test_emergency(self, prices):
        assert quick_decision(10, 0.25, 0, prices) == BatteryAction.CHARGE_FROM_GRID

    def test_solar(self, prices):
        assert quick_decision(50, 0.25, 800, prices) == BatteryAction.CHARGE_FROM_SOLAR

    def test_cheap(self, prices):
        assert quick_decision(50, 0.080, 0, prices) == BatteryAction.CHARGE_FROM_GRID

    def test_expensive(self, prices):
        assert quick_decision(60, 0.250, 0, prices) == BatteryAction.DISCHARGE

    def test_idle(self, prices):
        assert quick_decision(60, 0.125, 0, prices) == BatteryAction.IDLE


class TestExplainDecision:
    """Test the human-readable summary"""

    def test_emergency_explanation(self, make_ctx):
        text = explain_decision(decide(make_ctx(soc=10, hour=20)))

        assert text.startswith("Decision: Charge from grid")
        assert "Confidence: 100%" in text
        assert "Factors:" in text
        assert "Next review" not in text

    def test_next_review_shown(self, make_ctx):
        text = explain_decision(decide(make_ctx(soc=50, hour=14)))

        assert "Next review: 18:00" in text
