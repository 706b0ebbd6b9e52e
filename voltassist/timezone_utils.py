"""
Timezone Utilities for VoltAssist

Prices, solar forecasts and the scheduler's daily cache are all keyed by the
local calendar day of the configured timezone, not the OS timezone. This
module keeps that timezone in one place.
"""

import pytz
from datetime import datetime
from typing import Optional
import logging

log = logging.getLogger(__name__)

CONFIGURED_TZ = None
UTC = pytz.UTC
_WARNING_LOGGED = False  # warn about a missing zone only once


def initialize_timezones(configured_timezone: str = "Europe/Madrid"):
    """
    Set the zone used for price days, the forecast cache and timestamps.
    ConfigurationManager calls this after every load.

    Args:
        configured_timezone: IANA name from config, e.g. "Europe/Madrid"
    """
    global CONFIGURED_TZ, _WARNING_LOGGED

    try:
        CONFIGURED_TZ = pytz.timezone(configured_timezone)
        log.info(f"Using timezone {configured_timezone}")
        _WARNING_LOGGED = False
    except pytz.UnknownTimeZoneError as e:
        log.error(f"Unknown timezone {configured_timezone!r}: {e}, falling back to UTC")
        CONFIGURED_TZ = UTC


def get_configured_timezone():
    """Configured pytz zone, UTC until initialize_timezones() has run."""
    global _WARNING_LOGGED
    if CONFIGURED_TZ is None:
        if not _WARNING_LOGGED:
            log.warning("Timezones not initialized, using UTC. Timezones are initialized at application startup.")
            _WARNING_LOGGED = True
        return UTC
    return CONFIGURED_TZ


def now_configured() -> datetime:
    """Aware current time in the configured zone."""
    return datetime.now(get_configured_timezone())


def now_configured_iso() -> str:
    return now_configured().isoformat()


def to_configured(dt: datetime) -> datetime:
    """
    Express `dt` in the configured zone.

    Naive datetimes are assumed to already be in the configured timezone.
    """
    tz = get_configured_timezone()
    if dt.tzinfo is None:
        return tz.localize(dt)
    return dt.astimezone(tz)


def parse_iso_to_configured(iso_string: str) -> datetime:
    """Parse an ISO 8601 string and convert it to the configured timezone."""
    return to_configured(datetime.fromisoformat(iso_string))


def get_configured_date_string(dt: Optional[datetime] = None) -> str:
    """Get the YYYY-MM-DD calendar date in the configured timezone."""
    if dt is None:
        dt = now_configured()
    return to_configured(dt).date().isoformat()
