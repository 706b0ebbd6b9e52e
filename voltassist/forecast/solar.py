"""
Solar production forecast providers.

forecast.solar's free estimate endpoint returns instantaneous watts keyed by
local timestamps (typically every 15-60 minutes, daylight only). Values are
averaged per hour; hours without any sample are night hours and read 0 W.
"""

import asyncio
import logging
from datetime import date as Date
from datetime import datetime
from typing import Any, Dict, List

import aiohttp

from voltassist.config import SolarConfig
from voltassist.errors import DataUnavailable
from voltassist.forecast.series import HOURS_PER_DAY, SolarSeries, hourly_means

log = logging.getLogger(__name__)

FORECAST_SOLAR_API = "https://api.forecast.solar/estimate"


class ForecastSolarProvider:
    def __init__(self, cfg: SolarConfig, timeout_secs: float = 30.0):
        self.cfg = cfg
        self.timeout_secs = timeout_secs

    @property
    def url(self) -> str:
        c = self.cfg
        return f"{FORECAST_SOLAR_API}/{c.latitude}/{c.longitude}/{c.declination}/{c.azimuth}/{c.kwp}"

    def parse(self, day: Date, payload: Dict[str, Any]) -> SolarSeries:
        try:
            watts: Dict[str, float] = payload["result"]["watts"]
            samples = []
            for stamp, value in watts.items():
                ts = datetime.fromisoformat(stamp)
                if ts.date() == day:
                    samples.append((ts.hour, float(value)))
        except (KeyError, TypeError, ValueError) as e:
            raise DataUnavailable(f"Unexpected forecast.solar payload: {e}") from e

        if not samples:
            raise DataUnavailable(f"forecast.solar returned no values for {day.isoformat()}")
        means = hourly_means(samples)
        return SolarSeries.from_values(day.isoformat(), [round(means.get(h, 0.0)) for h in range(HOURS_PER_DAY)])

    async def get_forecast(self, day: Date) -> SolarSeries:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(self.url, headers={"Accept": "application/json"},
                                       timeout=aiohttp.ClientTimeout(total=self.timeout_secs)) as response:
                    if response.status != 200:
                        # 429 is common on the free tier (hourly request quota)
                        raise DataUnavailable(f"forecast.solar returned HTTP {response.status}")
                    payload = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise DataUnavailable("Timeout fetching solar forecast") from e
        except aiohttp.ClientError as e:
            raise DataUnavailable(f"Error fetching solar forecast: {e}") from e

        series = self.parse(day, payload)
        log.info(
            f"Solar forecast for {day.isoformat()}: {series.total_wh / 1000:.1f} kWh, "
            f"peak {series.peak_watts:.0f}W at {series.peak_hour}:00"
        )
        return series


class StaticSolarProvider:
    """Fixed 24-hour production profile from config."""

    def __init__(self, watts: List[float]):
        self.watts = list(watts)

    async def get_forecast(self, day: Date) -> SolarSeries:
        return SolarSeries.from_values(day.isoformat(), self.watts)


def create_solar_provider(cfg: SolarConfig):
    if cfg.provider == "static":
        return StaticSolarProvider(cfg.static_watts)
    return ForecastSolarProvider(cfg)
