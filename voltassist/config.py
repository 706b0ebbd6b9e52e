from typing import Optional, List, Literal, Tuple
from enum import Enum
from pydantic import BaseModel, Field, model_validator


class HomeAssistantSensors(BaseModel):
    battery_soc: str = "sensor.deye_battery_soc"
    battery_power: str = "sensor.deye_battery_power"
    solar_power: str = "sensor.deye_pv_power"
    grid_power: str = "sensor.deye_grid_power"
    load_power: str = "sensor.deye_load_power"


class HomeAssistantControls(BaseModel):
    work_mode: str = "select.deye_work_mode"
    grid_charge: str = "switch.deye_grid_charge"


class WorkModes(BaseModel):
    self_use: str = "self_use"
    selling_first: str = "selling_first"
    zero_export: str = "zero_export"


class HomeAssistantConfig(BaseModel):
    url: str = "http://homeassistant.local:8123"
    token: Optional[str] = None  # falls back to VOLTASSIST_HA_TOKEN
    timeout_secs: float = Field(ge=1.0, le=60.0, default=10.0)
    sensors: HomeAssistantSensors = HomeAssistantSensors()
    controls: HomeAssistantControls = HomeAssistantControls()
    work_modes: WorkModes = WorkModes()


class ThresholdsConfig(BaseModel):
    """Bounds for every decision branch. Ordering violations are config errors."""
    min_soc: float = Field(ge=0, le=100, default=15)
    max_soc: float = Field(ge=0, le=100, default=95)
    emergency_soc: float = Field(ge=0, le=100, default=15)
    target_soc: float = Field(ge=0, le=100, default=80)
    price_percentile_low: int = Field(ge=0, le=100, default=20)
    price_percentile_high: int = Field(ge=0, le=100, default=80)
    min_solar_watts_for_charge: float = Field(ge=0, default=500)

    @model_validator(mode='after')
    def validate_ordering(self):
        if self.emergency_soc > self.min_soc:
            raise ValueError(f"emergency_soc ({self.emergency_soc}) must be <= min_soc ({self.min_soc})")
        if self.min_soc >= self.max_soc:
            raise ValueError(f"min_soc ({self.min_soc}) must be < max_soc ({self.max_soc})")
        if self.target_soc > self.max_soc:
            raise ValueError(f"target_soc ({self.target_soc}) must be <= max_soc ({self.max_soc})")
        if self.price_percentile_low >= self.price_percentile_high:
            raise ValueError(
                f"price_percentile_low ({self.price_percentile_low}) must be < "
                f"price_percentile_high ({self.price_percentile_high})"
            )
        return self


class DecisionTuning(BaseModel):
    """Soft heuristics of the decision engine, kept as named overridable constants."""
    cheaper_hour_ratio: float = Field(gt=0, le=1, default=0.9)  # upcoming hour must be <= 90% of now
    defer_min_soc: float = 30  # never defer a cheap charge below this SOC
    discharge_soc_margin: float = 15  # discharge only above min_soc + margin
    safe_discharge_soc: float = 40
    solar_soon_hours: int = 2
    night_window: Tuple[int, int] = (22, 6)  # cheap hours here protect the night reserve
    precharge_hours: Tuple[int, int] = (0, 6)
    precharge_percentile_bonus: int = 10
    precharge_review_hour: int = 7
    solar_idle_deficit_w: float = 100


class SchedulerConfig(BaseModel):
    enabled: bool = True
    interval_minutes: float = Field(gt=0, le=240, default=15)
    max_consecutive_errors: int = Field(ge=1, default=5)
    reassert_every_ticks: int = Field(ge=1, default=4)
    hourly_stat_minute: int = Field(ge=1, le=60, default=15)  # first tick of the hour


class BatteryConfig(BaseModel):
    capacity_wh: float = Field(gt=0, default=10000)
    max_charge_rate_w: float = Field(gt=0, default=3000)
    max_discharge_rate_w: float = Field(gt=0, default=3000)
    initial_soc: float = Field(ge=0, le=100, default=50)  # starting point for day plans


class LoadPriority(str, Enum):
    """
    Load tier. Rank gives the shed order: lower rank is shed first.
    Critical loads are never shed.
    """
    ACCESSORY = "accessory"
    COMFORT = "comfort"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, LoadPriority):
            return NotImplemented
        return self.rank < other.rank


_PRIORITY_RANK = {
    LoadPriority.ACCESSORY: 0,
    LoadPriority.COMFORT: 1,
    LoadPriority.CRITICAL: 2,
}


class LoadDeviceConfig(BaseModel):
    id: str
    name: Optional[str] = None
    entity_id: str  # switch entity used to turn the load on/off
    priority: LoadPriority = LoadPriority.COMFORT
    power_watts: float = Field(ge=0)
    can_shed: bool = True
    min_off_minutes: int = Field(ge=0, default=10)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class LoadsConfig(BaseModel):
    enabled: bool = False
    max_inverter_power: float = Field(gt=0, default=6000)
    safety_margin_percent: float = Field(ge=0, lt=100, default=10)
    devices: List[LoadDeviceConfig] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_unique_ids(self):
        seen = set()
        for dev in self.devices:
            if dev.id in seen:
                raise ValueError(f"Duplicate load device id: {dev.id}")
            seen.add(dev.id)
        return self

    @property
    def max_available_watts(self) -> float:
        return self.max_inverter_power * (1 - self.safety_margin_percent / 100.0)


class PriceConfig(BaseModel):
    provider: Literal["esios", "ree", "static"] = "esios"
    esios_token: Optional[str] = None
    esios_indicator: int = 1001  # PVPC 2.0TD
    static_prices: Optional[List[float]] = None  # 24 values in EUR/kWh

    @model_validator(mode='after')
    def validate_static(self):
        if self.provider == "static" and (not self.static_prices or len(self.static_prices) != 24):
            raise ValueError("static price provider requires exactly 24 static_prices")
        return self


class SolarConfig(BaseModel):
    provider: Literal["forecast_solar", "static"] = "forecast_solar"
    latitude: float = 43.5322
    longitude: float = -5.6611
    declination: float = 35.0
    azimuth: float = 0.0
    kwp: float = Field(gt=0, default=6.0)
    static_watts: Optional[List[float]] = None

    @model_validator(mode='after')
    def validate_static(self):
        if self.provider == "static" and (not self.static_watts or len(self.static_watts) != 24):
            raise ValueError("static solar provider requires exactly 24 static_watts")
        return self


class ApiConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3001


class LoggingConfig(BaseModel):
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ha_debug: bool = False  # Enable debug logging for Home Assistant requests


class HubConfig(BaseModel):
    timezone: str = "Europe/Madrid"  # System timezone for all operations
    database_path: Optional[str] = None  # None = ~/.voltassist/voltassist.db
    home_assistant: HomeAssistantConfig = HomeAssistantConfig()
    thresholds: ThresholdsConfig = ThresholdsConfig()
    tuning: DecisionTuning = DecisionTuning()
    scheduler: SchedulerConfig = SchedulerConfig()
    battery: BatteryConfig = BatteryConfig()
    loads: LoadsConfig = LoadsConfig()
    prices: PriceConfig = PriceConfig()
    solar: SolarConfig = SolarConfig()
    api: ApiConfig = ApiConfig()
    logging: LoggingConfig = LoggingConfig()
