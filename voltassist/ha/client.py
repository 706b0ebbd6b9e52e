"""
Home Assistant REST client.

Implements the connectivity, telemetry, actuation and load-control ports on
top of the Home Assistant HTTP API (/api/states, /api/services). Transport
failures and timeouts surface as ConnectivityError; every request carries an
aiohttp.ClientTimeout so a hung hub can never stall the control loop.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from voltassist.config import HomeAssistantConfig
from voltassist.errors import ConnectivityError, DataUnavailable
from voltassist.models import BatteryStatus
from voltassist.schedulers.decision import BatteryAction

log = logging.getLogger(__name__)

UNAVAILABLE_STATES = ("unavailable", "unknown", "")
CONNECTION_TEST_TIMEOUT_SECS = 5.0


def _as_float(state: Optional[Dict[str, Any]]) -> Optional[float]:
    if not state:
        return None
    try:
        return float(state.get("state"))
    except (TypeError, ValueError):
        return None


class HomeAssistantClient:
    """Thin async wrapper around the Home Assistant REST API."""

    def __init__(self, cfg: HomeAssistantConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self.base_url = cfg.url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        if not cfg.token:
            log.warning("No Home Assistant token configured, requests will be rejected")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.cfg.token or ''}",
            "Content-Type": "application/json",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                       timeout_secs: Optional[float] = None):
        """
        Perform one request and return (status, json_body_or_None).

        Raises:
            ConnectivityError: on transport errors, timeouts or auth rejection
        """
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=timeout_secs or self.cfg.timeout_secs)
        log.debug(f"HA {method} {path} {payload or ''}")
        try:
            async with self._get_session().request(
                method, url, headers=self._headers, json=payload, timeout=timeout
            ) as response:
                if response.status in (401, 403):
                    raise ConnectivityError(f"Home Assistant rejected credentials ({response.status})")
                body = None
                if response.status == 200:
                    body = await response.json(content_type=None)
                return response.status, body
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"Timeout calling Home Assistant {path}") from e
        except aiohttp.ClientError as e:
            raise ConnectivityError(f"Error calling Home Assistant {path}: {e}") from e

    # ------------------------------------------------------------------
    # Generic API
    # ------------------------------------------------------------------

    async def test_connection(self) -> bool:
        try:
            status, _ = await self._request("GET", "/api/", timeout_secs=CONNECTION_TEST_TIMEOUT_SECS)
        except ConnectivityError as e:
            log.warning(f"Home Assistant connection test failed: {e}")
            return False
        return status == 200

    async def get_state(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Raw state object, or None when the entity does not exist."""
        status, body = await self._request("GET", f"/api/states/{entity_id}")
        if status == 404:
            return None
        if status != 200:
            raise ConnectivityError(f"Unexpected status {status} reading {entity_id}")
        return body

    async def call_service(self, domain: str, service: str, data: Dict[str, Any]) -> bool:
        status, _ = await self._request("POST", f"/api/services/{domain}/{service}", payload=data)
        if status != 200:
            log.warning(f"Service {domain}.{service} returned {status} for {data}")
            return False
        return True

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def read_battery_status(self) -> Optional[BatteryStatus]:
        """Live battery snapshot; None when the SOC sensor has no usable value."""
        sensors = self.cfg.sensors
        soc, power, solar, grid, load = await asyncio.gather(
            self.get_state(sensors.battery_soc),
            self.get_state(sensors.battery_power),
            self.get_state(sensors.solar_power),
            self.get_state(sensors.grid_power),
            self.get_state(sensors.load_power),
        )
        soc_value = _as_float(soc)
        if soc_value is None:
            log.warning(f"SOC sensor {sensors.battery_soc} has no numeric state")
            return None
        return BatteryStatus(
            soc=min(max(soc_value, 0.0), 100.0),
            power=_as_float(power) or 0.0,
            solar_watts=_as_float(solar) or 0.0,
            grid_watts=_as_float(grid) or 0.0,
            load_watts=_as_float(load) or 0.0,
        )

    # ------------------------------------------------------------------
    # Battery actuation
    # ------------------------------------------------------------------

    async def set_grid_charge(self, enabled: bool) -> bool:
        entity = self.cfg.controls.grid_charge
        domain = entity.split(".")[0]
        return await self.call_service(domain, "turn_on" if enabled else "turn_off", {"entity_id": entity})

    async def set_work_mode(self, mode: str) -> bool:
        option = getattr(self.cfg.work_modes, mode)
        return await self.call_service(
            "select", "select_option", {"entity_id": self.cfg.controls.work_mode, "option": option}
        )

    async def apply_charging_action(self, action: BatteryAction) -> bool:
        """Map a battery action onto the grid-charge switch and the inverter work mode."""
        action = BatteryAction(action)
        if action == BatteryAction.CHARGE_FROM_GRID:
            grid_ok = await self.set_grid_charge(True)
            mode_ok = await self.set_work_mode("self_use")
        elif action == BatteryAction.DISCHARGE:
            grid_ok = await self.set_grid_charge(False)
            mode_ok = await self.set_work_mode("selling_first")
        else:
            # charge_from_solar and idle both let the inverter self-consume
            grid_ok = await self.set_grid_charge(False)
            mode_ok = await self.set_work_mode("self_use")
        return grid_ok and mode_ok

    # ------------------------------------------------------------------
    # Load control
    # ------------------------------------------------------------------

    async def turn_on(self, entity_id: str) -> bool:
        return await self.call_service(entity_id.split(".")[0], "turn_on", {"entity_id": entity_id})

    async def turn_off(self, entity_id: str) -> bool:
        return await self.call_service(entity_id.split(".")[0], "turn_off", {"entity_id": entity_id})

    async def is_on(self, entity_id: str) -> bool:
        state = await self.get_state(entity_id)
        if state is None:
            raise DataUnavailable(f"Entity {entity_id} not found in Home Assistant")
        return state.get("state") == "on"

    async def is_available(self, entity_id: str) -> bool:
        state = await self.get_state(entity_id)
        return state is not None and state.get("state", "") not in UNAVAILABLE_STATES
