"""
Unit tests for configuration classes
Tests the Pydantic models and validation
"""

import pytest
from pydantic import ValidationError

from voltassist.config import (
    BatteryConfig, DecisionTuning, HomeAssistantConfig, HubConfig, LoadDeviceConfig,
    LoadPriority, LoadsConfig, PriceConfig, SchedulerConfig, SolarConfig, ThresholdsConfig
)


class TestThresholdsConfig:
    """Test decision thresholds"""

    def test_default_values(self):
        """Test default threshold values"""
        config = ThresholdsConfig()

        assert config.min_soc == 15
        assert config.max_soc == 95
        assert config.emergency_soc == 15
        assert config.target_soc == 80
        assert config.price_percentile_low == 20
        assert config.price_percentile_high == 80
        assert config.min_solar_watts_for_charge == 500

    def test_emergency_above_min(self):
        """Test that emergency_soc must not exceed min_soc"""
        with pytest.raises(ValidationError, match="emergency_soc"):
            ThresholdsConfig(emergency_soc=20, min_soc=15)

    def test_min_not_below_max(self):
        with pytest.raises(ValidationError, match="min_soc"):
            ThresholdsConfig(min_soc=95, max_soc=95, emergency_soc=10)

    def test_target_above_max(self):
        with pytest.raises(ValidationError, match="target_soc"):
            ThresholdsConfig(target_soc=98, max_soc=95)

    def test_percentile_order(self):
        """Test that the low percentile must be below the high percentile"""
        with pytest.raises(ValidationError, match="price_percentile_low"):
            ThresholdsConfig(price_percentile_low=80, price_percentile_high=80)

    def test_soc_range(self):
        with pytest.raises(ValidationError):
            ThresholdsConfig(max_soc=120)

    def test_valid_custom_values(self):
        config = ThresholdsConfig(min_soc=20, emergency_soc=10, max_soc=90, target_soc=90,
                                  price_percentile_low=10, price_percentile_high=90)

        assert config.target_soc == 90


class TestDecisionTuning:
    """Test decision heuristics"""

    def test_default_values(self):
        tuning = DecisionTuning()

        assert tuning.cheaper_hour_ratio == 0.9
        assert tuning.defer_min_soc == 30
        assert tuning.discharge_soc_margin == 15
        assert tuning.safe_discharge_soc == 40
        assert tuning.solar_soon_hours == 2
        assert tuning.night_window == (22, 6)
        assert tuning.precharge_hours == (0, 6)
        assert tuning.precharge_review_hour == 7

    def test_ratio_range(self):
        with pytest.raises(ValidationError):
            DecisionTuning(cheaper_hour_ratio=1.5)


class TestSchedulerConfig:
    """Test scheduler configuration"""

    def test_default_values(self):
        config = SchedulerConfig()

        assert config.enabled is True
        assert config.interval_minutes == 15
        assert config.max_consecutive_errors == 5
        assert config.reassert_every_ticks == 4
        assert config.hourly_stat_minute == 15

    def test_interval_validation(self):
        with pytest.raises(ValidationError):
            SchedulerConfig(interval_minutes=0)


class TestBatteryConfig:
    def test_default_values(self):
        config = BatteryConfig()

        assert config.capacity_wh == 10000
        assert config.max_charge_rate_w == 3000
        assert config.initial_soc == 50

    def test_capacity_positive(self):
        with pytest.raises(ValidationError):
            BatteryConfig(capacity_wh=0)


class TestLoadsConfig:
    """Test load device configuration"""

    def test_priority_order(self):
        """Test that accessory sorts before comfort before critical"""
        tiers = sorted([LoadPriority.CRITICAL, LoadPriority.ACCESSORY, LoadPriority.COMFORT])

        assert tiers == [LoadPriority.ACCESSORY, LoadPriority.COMFORT, LoadPriority.CRITICAL]
        assert LoadPriority.ACCESSORY.rank < LoadPriority.COMFORT.rank < LoadPriority.CRITICAL.rank

    def test_device_defaults(self):
        device = LoadDeviceConfig(id="pump", entity_id="switch.pump", power_watts=800)

        assert device.priority == LoadPriority.COMFORT
        assert device.can_shed is True
        assert device.min_off_minutes == 10
        assert device.display_name == "pump"

    def test_unknown_priority(self):
        with pytest.raises(ValidationError):
            LoadDeviceConfig(id="pump", entity_id="switch.pump", power_watts=800, priority="luxury")

    def test_duplicate_ids(self):
        with pytest.raises(ValidationError, match="Duplicate"):
            LoadsConfig(devices=[
                LoadDeviceConfig(id="pump", entity_id="switch.a", power_watts=100),
                LoadDeviceConfig(id="pump", entity_id="switch.b", power_watts=200),
            ])

    def test_max_available_watts(self):
        config = LoadsConfig(max_inverter_power=6000, safety_margin_percent=10)

        assert config.max_available_watts == pytest.approx(5400)


class TestProviderConfig:
    """Test price and solar provider configuration"""

    def test_static_prices_need_24_values(self):
        with pytest.raises(ValidationError):
            PriceConfig(provider="static", static_prices=[0.1] * 12)

    def test_unknown_price_provider(self):
        with pytest.raises(ValidationError):
            PriceConfig(provider="nordpool")

    def test_static_solar_need_24_values(self):
        with pytest.raises(ValidationError):
            SolarConfig(provider="static")


class TestHubConfig:
    """Test the top-level configuration"""

    def test_defaults(self):
        config = HubConfig()

        assert config.timezone == "Europe/Madrid"
        assert config.database_path is None
        assert isinstance(config.home_assistant, HomeAssistantConfig)
        assert config.home_assistant.token is None
        assert config.loads.enabled is False
        assert config.api.port == 3001

    def test_nested_dict(self):
        config = HubConfig(**{
            "thresholds": {"min_soc": 20, "emergency_soc": 10},
            "loads": {"enabled": True, "devices": [
                {"id": "pump", "entity_id": "switch.pump", "power_watts": 800, "priority": "accessory"},
            ]},
        })

        assert config.thresholds.min_soc == 20
        assert config.loads.devices[0].priority == LoadPriority.ACCESSORY

    def test_invalid_nested_thresholds(self):
        with pytest.raises(ValidationError):
            HubConfig(**{"thresholds": {"emergency_soc": 30}})
