"""
Unit tests for the day-ahead price and solar series
"""

import math

import pytest

from voltassist.errors import DataUnavailable
from voltassist.forecast.series import PricePoint, PriceSeries, SolarSeries, hourly_means

# hour h costs (h + 1) cents
ASCENDING = [(h + 1) / 100.0 for h in range(24)]

DAY_SOLAR = [0] * 7 + [200, 800, 1500, 2500, 3000, 3200, 3000, 2500, 1500, 800, 200] + [0] * 6


class TestPriceSeriesConstruction:
    """Test PriceSeries validation"""

    def test_from_values(self):
        """Test building a series from 24 hourly values"""
        series = PriceSeries.from_values("2026-10-17", ASCENDING)

        assert series.date == "2026-10-17"
        assert len(series.points) == 24
        assert series.price_at(0) == 0.01
        assert series.price_at(23) == 0.24

    def test_wrong_length(self):
        """Test that a series with a missing hour is rejected"""
        with pytest.raises(DataUnavailable):
            PriceSeries.from_values("2026-10-17", ASCENDING[:23])

    def test_duplicate_hour(self):
        """Test that each hour must appear exactly once"""
        points = [PricePoint(h, 0.1) for h in range(23)] + [PricePoint(5, 0.1)]
        with pytest.raises(DataUnavailable):
            PriceSeries("2026-10-17", tuple(points))

    def test_negative_price(self):
        values = list(ASCENDING)
        values[3] = -0.01
        with pytest.raises(DataUnavailable):
            PriceSeries.from_values("2026-10-17", values)

    def test_nan_price(self):
        values = list(ASCENDING)
        values[3] = math.nan
        with pytest.raises(DataUnavailable):
            PriceSeries.from_values("2026-10-17", values)

    def test_points_sorted_by_hour(self):
        """Test that points given out of order are stored by hour"""
        points = tuple(PricePoint(h, ASCENDING[h]) for h in reversed(range(24)))
        series = PriceSeries("2026-10-17", points)

        assert [p.hour for p in series.points] == list(range(24))
        assert series.price_at(4) == 0.05

    def test_immutable(self):
        series = PriceSeries.from_values("2026-10-17", ASCENDING)
        with pytest.raises(AttributeError):
            series.date = "2026-10-18"


class TestPriceSeriesAggregates:
    """Test derived values of a price series"""

    @pytest.fixture
    def series(self):
        return PriceSeries.from_values("2026-10-17", ASCENDING)

    def test_average_min_max(self, series):
        assert series.average == pytest.approx(0.125)
        assert series.min_price == 0.01
        assert series.max_price == 0.24

    def test_percentile_rank(self, series):
        """Test rank of the first sorted price at or above the value"""
        assert series.percentile_rank(0.001) == 0
        assert series.percentile_rank(0.01) == 0
        assert series.percentile_rank(0.13) == 50
        assert series.percentile_rank(0.24) == 96

    def test_percentile_rank_rounds_half_up(self, series):
        """Index 3 of 24 is 12.5 and rounds to 13"""
        assert series.percentile_rank(0.04) == 13

    def test_percentile_rank_above_all_prices(self, series):
        assert series.percentile_rank(0.25) == 100
        assert series.percentile_rank(10.0) == 100

    def test_percentile_rank_ties(self):
        """Test that ties resolve to the first index at or above the value"""
        values = [0.10] * 12 + [0.20] * 12
        series = PriceSeries.from_values("2026-10-17", values)

        assert series.percentile_rank(0.10) == 0
        assert series.percentile_rank(0.15) == 50
        assert series.percentile_rank(0.20) == 50

    def test_percentile_rank_monotonic(self, series):
        """Test that the rank never decreases as the price grows"""
        candidates = [i / 1000.0 for i in range(0, 300)]
        ranks = [series.percentile_rank(p) for p in candidates]

        assert ranks == sorted(ranks)
        assert ranks[-1] == 100

    def test_percentile_price(self, series):
        assert series.percentile_price(20) == 0.05
        assert series.percentile_price(80) == 0.20
        assert series.percentile_price(0) == 0.01
        assert series.percentile_price(100) == 0.24

    def test_hours_at_or_below(self, series):
        assert series.hours_at_or_below(0.05) == [0, 1, 2, 3, 4]
        assert series.hours_at_or_below(0.05, after_hour=2) == [3, 4]
        assert series.hours_at_or_below(0.001) == []

    def test_cheapest_and_expensive_hours(self, series):
        assert series.cheapest_hours(3) == [0, 1, 2]
        assert series.expensive_hours(2) == [22, 23]
        assert series.expensive_hours(0) == []


class TestSolarSeries:
    """Test SolarSeries validation and look-ahead helpers"""

    @pytest.fixture
    def solar(self):
        return SolarSeries.from_values("2026-10-17", DAY_SOLAR)

    def test_totals(self, solar):
        assert solar.total_wh == 19200
        assert solar.peak_watts == 3200
        assert solar.peak_hour == 12

    def test_watts_at(self, solar):
        assert solar.watts_at(0) == 0
        assert solar.watts_at(11) == 3000

    def test_remaining_wh(self, solar):
        assert solar.remaining_wh(16) == 1000
        assert solar.remaining_wh(18) == 0
        assert solar.remaining_wh(0) == solar.total_wh

    def test_hours_until(self, solar):
        """Test hours until the forecast first reaches the threshold"""
        assert solar.hours_until(500, 0) == 8
        assert solar.hours_until(500, 10) == 0

    def test_hours_until_tomorrow(self, solar):
        """Test that a day without more production assumes 08:00 tomorrow"""
        assert solar.hours_until(500, 20) == 12
        assert solar.hours_until(10000, 0) == 32

    def test_first_hour_below(self, solar):
        assert solar.first_hour_below(500, 10) == 17
        assert solar.first_hour_below(500, 23) is None

    def test_rejects_negative_watts(self):
        values = list(DAY_SOLAR)
        values[12] = -5
        with pytest.raises(DataUnavailable):
            SolarSeries.from_values("2026-10-17", values)

    def test_rejects_short_series(self):
        with pytest.raises(DataUnavailable):
            SolarSeries.from_values("2026-10-17", DAY_SOLAR[:20])


def test_hourly_means():
    """Test averaging of sub-hourly samples"""
    means = hourly_means([(0, 1.0), (0, 3.0), (1, 5.0), (0, 2.0)])

    assert means == {0: 2.0, 1: 5.0}
