"""
Collaborator contracts consumed by the control loop.

HomeAssistantClient implements the telemetry, connectivity, actuation and
load-control ports; DataLogger implements PersistencePort; the classes in
voltassist.forecast implement the price and solar providers.
"""

from datetime import date
from typing import Optional, Protocol

from voltassist.forecast.series import PriceSeries, SolarSeries
from voltassist.models import BatteryStatus, DecisionRecord, HourlyStat, LoadActionRecord, LoadState


class ConnectivityPort(Protocol):
    async def test_connection(self) -> bool: ...


class TelemetryPort(Protocol):
    async def read_battery_status(self) -> Optional[BatteryStatus]: ...


class ActuationPort(Protocol):
    async def apply_charging_action(self, action) -> bool: ...


class LoadControlPort(Protocol):
    async def turn_on(self, entity_id: str) -> bool: ...

    async def turn_off(self, entity_id: str) -> bool: ...

    async def is_on(self, entity_id: str) -> bool: ...

    async def is_available(self, entity_id: str) -> bool: ...


class PriceProvider(Protocol):
    async def get_prices(self, day: date) -> PriceSeries: ...


class SolarProvider(Protocol):
    async def get_forecast(self, day: date) -> SolarSeries: ...


class PersistencePort(Protocol):
    def save_decision(self, record: DecisionRecord) -> int: ...

    def update_decision_execution(self, decision_id: int, executed: bool, error: Optional[str] = None) -> None: ...

    def get_last_decision(self) -> Optional[DecisionRecord]: ...

    def save_hourly_stat(self, stat: HourlyStat) -> None: ...

    def mark_load_shed(self, device_id: str, reason: str) -> None: ...

    def mark_load_restored(self, device_id: str) -> None: ...

    def get_load_state(self, device_id: str) -> Optional[LoadState]: ...

    def get_shed_duration_minutes(self, device_id: str) -> Optional[float]: ...

    def save_load_action(self, record: LoadActionRecord) -> None: ...
