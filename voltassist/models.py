from typing import Optional
from pydantic import BaseModel, Field


class BatteryStatus(BaseModel):
    """Live battery/solar/grid telemetry as read from Home Assistant each tick."""
    soc: float = Field(ge=0, le=100)
    power: float = 0.0  # W, positive = charging
    solar_watts: float = 0.0
    grid_watts: float = 0.0  # positive = import, negative = export
    load_watts: float = 0.0

    @property
    def is_charging(self) -> bool:
        return self.power > 50

    @property
    def is_discharging(self) -> bool:
        return self.power < -50


class DecisionRecord(BaseModel):
    """One persisted row of the decisions table."""
    id: Optional[int] = None
    ts: str
    soc: float
    price: float
    solar_watts: float
    action: str
    reason: str
    confidence: Optional[float] = None
    price_percentile: Optional[int] = None
    executed: bool = False
    error: Optional[str] = None


class HourlyStat(BaseModel):
    date: str
    hour: int = Field(ge=0, le=23)
    price: float
    solar_kwh: float
    consumption_kwh: float
    grid_import_kwh: float
    grid_export_kwh: float
    battery_soc: float


class LoadState(BaseModel):
    """Persisted shed state of one load device."""
    device_id: str
    is_shed: bool = False
    shed_since: Optional[str] = None  # ISO 8601
    shed_reason: Optional[str] = None
    updated_at: Optional[str] = None


class LoadActionRecord(BaseModel):
    ts: str
    device_id: str
    device_name: str
    action: str  # "shed" | "restore"
    reason: str
    success: bool
    error: Optional[str] = None
