# voltassist/forecast/series.py
"""
Day-ahead price and solar series.

Both series hold exactly one value per hour of a calendar day and are
immutable once constructed. Providers normalise third-party data into these
types; everything downstream (decision engine, optimizer, scheduler cache)
consumes only these.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from voltassist.errors import DataUnavailable

HOURS_PER_DAY = 24


@dataclass(frozen=True)
class PricePoint:
    hour: int
    price: float  # EUR/kWh


@dataclass(frozen=True)
class SolarPoint:
    hour: int
    watts: float  # mean forecast power over the hour


def _validate_hours(kind: str, hours: Sequence[int]) -> None:
    if len(hours) != HOURS_PER_DAY:
        raise DataUnavailable(f"{kind} series needs {HOURS_PER_DAY} hourly values, got {len(hours)}")
    if sorted(hours) != list(range(HOURS_PER_DAY)):
        raise DataUnavailable(f"{kind} series must contain each hour 0-23 exactly once: {sorted(hours)}")


def hourly_means(samples: Iterable[Tuple[int, float]]) -> Dict[int, float]:
    """Average (hour, value) samples per hour, e.g. quarter-hour readings."""
    buckets: Dict[int, List[float]] = {}
    for hour, value in samples:
        buckets.setdefault(hour, []).append(value)
    return {hour: sum(values) / len(values) for hour, values in buckets.items()}


@dataclass(frozen=True)
class PriceSeries:
    date: str
    points: Tuple[PricePoint, ...]
    _sorted: Tuple[float, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        points = tuple(sorted(self.points, key=lambda p: p.hour))
        _validate_hours("Price", [p.hour for p in points])
        for p in points:
            if p.price is None or math.isnan(p.price) or p.price < 0:
                raise DataUnavailable(f"Invalid price {p.price!r} at hour {p.hour}")
        object.__setattr__(self, "points", points)
        object.__setattr__(self, "_sorted", tuple(sorted(p.price for p in points)))

    @classmethod
    def from_values(cls, date: str, prices: Iterable[float]) -> "PriceSeries":
        """Build a series from 24 prices ordered by hour."""
        return cls(date, tuple(PricePoint(h, float(v)) for h, v in enumerate(prices)))

    @property
    def prices(self) -> List[float]:
        return [p.price for p in self.points]

    @property
    def average(self) -> float:
        return sum(self._sorted) / len(self._sorted)

    @property
    def min_price(self) -> float:
        return self._sorted[0]

    @property
    def max_price(self) -> float:
        return self._sorted[-1]

    def price_at(self, hour: int) -> float:
        return self.points[hour].price

    def percentile_rank(self, price: float) -> int:
        """
        Rank of the first sorted price >= `price`, scaled to 0-100.
        100 when `price` is above every entry. Ties resolve to the first
        index at or above the value; no interpolation.
        """
        for index, value in enumerate(self._sorted):
            if value >= price:
                # half-up rounding, round() would send 12.5 to 12
                return int(math.floor(index / len(self._sorted) * 100 + 0.5))
        return 100

    def percentile_price(self, percentile: float) -> float:
        """Price found at the given percentile position of the sorted series."""
        index = int(math.floor(percentile / 100.0 * len(self._sorted)))
        return self._sorted[min(max(index, 0), len(self._sorted) - 1)]

    def hours_at_or_below(self, price: float, after_hour: int = -1) -> List[int]:
        """Hours later than `after_hour` whose price is <= `price`."""
        return [p.hour for p in self.points if p.hour > after_hour and p.price <= price]

    def cheapest_hours(self, n: int = 6) -> List[int]:
        ranked = sorted(self.points, key=lambda p: (p.price, p.hour))[:n]
        return sorted(p.hour for p in ranked)

    def expensive_hours(self, n: int = 6) -> List[int]:
        ranked = sorted(self.points, key=lambda p: (p.price, p.hour))[-n:] if n > 0 else []
        return sorted(p.hour for p in ranked)


@dataclass(frozen=True)
class SolarSeries:
    date: str
    points: Tuple[SolarPoint, ...]

    def __post_init__(self):
        points = tuple(sorted(self.points, key=lambda p: p.hour))
        _validate_hours("Solar", [p.hour for p in points])
        for p in points:
            if p.watts is None or math.isnan(p.watts) or p.watts < 0:
                raise DataUnavailable(f"Invalid solar forecast {p.watts!r} at hour {p.hour}")
        object.__setattr__(self, "points", points)

    @classmethod
    def from_values(cls, date: str, watts: Iterable[float]) -> "SolarSeries":
        return cls(date, tuple(SolarPoint(h, float(v)) for h, v in enumerate(watts)))

    @property
    def total_wh(self) -> float:
        # One value per hour, so W == Wh for each slot
        return sum(p.watts for p in self.points)

    @property
    def peak_watts(self) -> float:
        return max(p.watts for p in self.points)

    @property
    def peak_hour(self) -> int:
        peak = self.points[0]
        for p in self.points:
            if p.watts > peak.watts:
                peak = p
        return peak.hour

    def watts_at(self, hour: int) -> float:
        return self.points[hour].watts

    def remaining_wh(self, from_hour: int) -> float:
        return sum(p.watts for p in self.points if p.hour >= from_hour)

    def hours_until(self, min_watts: float, from_hour: int) -> int:
        """
        Hours from `from_hour` until the forecast first reaches `min_watts`.
        If it never does today, assume production resumes around 08:00 tomorrow.
        """
        for p in self.points[from_hour:]:
            if p.watts >= min_watts:
                return p.hour - from_hour
        return (HOURS_PER_DAY - from_hour) + 8

    def first_hour_below(self, min_watts: float, after_hour: int) -> Optional[int]:
        for p in self.points:
            if p.hour > after_hour and p.watts < min_watts:
                return p.hour
        return None
