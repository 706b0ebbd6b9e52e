#!/usr/bin/env python3
"""
Day-ahead electricity price providers (Spanish PVPC).

ESIOS (Red Electrica's API, needs a personal token) and the public REE
apidatos endpoint both publish EUR/MWh values with timezone-aware
timestamps, hourly or quarter-hourly. Both are normalised into a 24-hour
PriceSeries in EUR/kWh for the configured local day.
"""

import asyncio
import logging
from datetime import date as Date
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp

from voltassist.config import PriceConfig
from voltassist.errors import DataUnavailable
from voltassist.forecast.series import HOURS_PER_DAY, PricePoint, PriceSeries, hourly_means
from voltassist.timezone_utils import to_configured

log = logging.getLogger(__name__)

ESIOS_API = "https://api.esios.ree.es/indicators"
REE_API = "https://apidatos.ree.es/es/datos/mercados/precios-mercados-tiempo-real"
REE_PVPC_SERIES = "PVPC"


def _series_from_samples(day: Date, samples: Iterable[Tuple[datetime, float]]) -> PriceSeries:
    """
    Build a PriceSeries from (timestamp, EUR/MWh) samples.

    Samples outside `day` (configured timezone) are dropped. On the DST
    change day one hour may be absent and is filled from its neighbour;
    any wider gap means the data is unusable.
    """
    local = []
    for ts, value in samples:
        ts = to_configured(ts)
        if ts.date() == day:
            local.append((ts.hour, value / 1000.0))
    means = hourly_means(local)

    missing = [h for h in range(HOURS_PER_DAY) if h not in means]
    if len(missing) > 1:
        raise DataUnavailable(f"Price data for {day.isoformat()} is missing hours {missing}")
    for hour in missing:
        neighbour = hour - 1 if hour > 0 else hour + 1
        log.debug(f"Filling missing price hour {hour} from hour {neighbour}")
        means[hour] = means[neighbour]

    return PriceSeries(day.isoformat(), tuple(PricePoint(h, means[h]) for h in range(HOURS_PER_DAY)))


async def _get_json(url: str, params: Dict[str, str], headers: Optional[Dict[str, str]] = None,
                    timeout_secs: float = 30.0) -> Any:
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, params=params, headers=headers,
                                   timeout=aiohttp.ClientTimeout(total=timeout_secs)) as response:
                if response.status != 200:
                    raise DataUnavailable(f"{url} returned HTTP {response.status}")
                return await response.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise DataUnavailable(f"Timeout fetching {url}") from e
    except aiohttp.ClientError as e:
        raise DataUnavailable(f"Error fetching {url}: {e}") from e


def _day_params(day: Date) -> Dict[str, str]:
    iso = day.isoformat()
    return {"start_date": f"{iso}T00:00", "end_date": f"{iso}T23:59"}


class EsiosPriceProvider:
    """PVPC prices from the ESIOS indicators API."""

    def __init__(self, token: str, indicator: int = 1001, timeout_secs: float = 30.0):
        self.token = token
        self.indicator = indicator
        self.timeout_secs = timeout_secs

    def parse(self, day: Date, payload: Dict[str, Any]) -> PriceSeries:
        try:
            values = payload["indicator"]["values"]
            samples = [(datetime.fromisoformat(v["datetime"]), float(v["value"])) for v in values]
        except (KeyError, TypeError, ValueError) as e:
            raise DataUnavailable(f"Unexpected ESIOS payload: {e}") from e
        return _series_from_samples(day, samples)

    async def get_prices(self, day: Date) -> PriceSeries:
        headers = {
            "Authorization": f'Token token="{self.token}"',
            "x-api-key": self.token,
            "Accept": "application/json",
        }
        payload = await _get_json(f"{ESIOS_API}/{self.indicator}", _day_params(day), headers, self.timeout_secs)
        series = self.parse(day, payload)
        log.info(f"ESIOS prices for {day.isoformat()}: avg {series.average:.4f} EUR/kWh")
        return series


class ReePriceProvider:
    """PVPC prices from the public REE apidatos endpoint (no token)."""

    def __init__(self, timeout_secs: float = 30.0):
        self.timeout_secs = timeout_secs

    def parse(self, day: Date, payload: Dict[str, Any]) -> PriceSeries:
        try:
            included: List[Dict[str, Any]] = payload.get("included") or []
            pvpc = next(
                (i for i in included
                 if REE_PVPC_SERIES in (i.get("type", ""), i.get("id", ""), i.get("attributes", {}).get("title", ""))),
                None,
            )
            if pvpc is None:
                raise DataUnavailable("REE response has no PVPC series")
            values = pvpc["attributes"]["values"]
            samples = [(datetime.fromisoformat(v["datetime"]), float(v["value"])) for v in values]
        except (KeyError, TypeError, ValueError) as e:
            raise DataUnavailable(f"Unexpected REE payload: {e}") from e
        return _series_from_samples(day, samples)

    async def get_prices(self, day: Date) -> PriceSeries:
        params = dict(_day_params(day), time_trunc="hour")
        payload = await _get_json(REE_API, params, timeout_secs=self.timeout_secs)
        series = self.parse(day, payload)
        log.info(f"REE prices for {day.isoformat()}: avg {series.average:.4f} EUR/kWh")
        return series


class StaticPriceProvider:
    """Fixed 24-hour price profile from config, repeated every day."""

    def __init__(self, prices: List[float]):
        self.prices = list(prices)

    async def get_prices(self, day: Date) -> PriceSeries:
        return PriceSeries.from_values(day.isoformat(), self.prices)


def create_price_provider(cfg: PriceConfig):
    if cfg.provider == "static":
        return StaticPriceProvider(cfg.static_prices)
    if cfg.provider == "esios":
        if cfg.esios_token:
            return EsiosPriceProvider(cfg.esios_token, cfg.esios_indicator)
        log.warning("No ESIOS token configured, using the public REE endpoint")
        return ReePriceProvider()
    return ReePriceProvider()
