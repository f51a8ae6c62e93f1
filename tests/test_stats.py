from datetime import date

import pytest

from valuation_engine.schemas import ComparablePoint, RegressionResult
from valuation_engine.services.stats import (
    linear_regression,
    market_trend,
    predict_price,
    pricing_position,
    summarize,
)

SURFACES = [50.0, 55.0, 62.5, 70.0, 80.0]
PRICES = [312_500, 342_500, 387_500, 432_500, 492_500]


def point(surface: float, price: int, sale_date: date = date(2025, 1, 1)) -> ComparablePoint:
    return ComparablePoint(
        sale_date=sale_date,
        surface_m2=surface,
        sale_price=price,
        price_per_m2=round(price / surface, 2),
    )


@pytest.fixture
def linear_points() -> list[ComparablePoint]:
    return [point(s, p) for s, p in zip(SURFACES, PRICES)]


class TestSummary:
    def test_quartiles_and_price_per_m2(self, linear_points):
        summary = summarize(linear_points)
        assert summary.count == 5
        assert summary.median_price == 387_500
        assert summary.q1_price == 342_500
        assert summary.q3_price == 432_500
        assert summary.min_price == 312_500
        assert summary.max_price == 492_500
        assert summary.median_price_per_m2 == 6200
        assert summary.q1_price_per_m2 == 6179
        assert summary.q3_price_per_m2 == 6227
        assert summary.min_price_per_m2 == 6156
        assert summary.max_price_per_m2 == 6250

    def test_empty(self):
        summary = summarize([])
        assert summary.count == 0
        assert summary.median_price is None
        assert summary.median_price_per_m2 is None
        assert summary.q1_price_per_m2 is None and summary.q3_price_per_m2 is None


class TestRegression:
    def test_exact_linear_relation(self, linear_points):
        regression = linear_regression(linear_points)
        assert regression.slope == 6000.0
        assert regression.intercept == 12500.0
        assert regression.r2 == 1.0
        assert regression.points_used == 5

    def test_prediction_for_subject_surface(self, linear_points):
        assert predict_price(linear_regression(linear_points), 65) == 402_500

    def test_single_point_has_no_model(self):
        regression = linear_regression([point(60, 360_000)])
        assert regression == RegressionResult()

    def test_identical_surfaces_have_no_model(self):
        regression = linear_regression([point(60, 300_000), point(60, 360_000), point(60, 420_000)])
        assert regression.slope is None and regression.intercept is None and regression.r2 is None
        assert predict_price(regression, 60) is None

    def test_flat_prices_fit_perfectly(self):
        regression = linear_regression([point(40, 300_000), point(80, 300_000)])
        assert regression.slope == 0.0
        assert regression.r2 == 1.0

    def test_no_prediction_without_surface_or_for_negative_price(self):
        regression = RegressionResult(slope=1000.0, intercept=-200_000.0, r2=0.5, points_used=4)
        assert predict_price(regression, None) is None
        assert predict_price(regression, 100) is None


class TestPricingPosition:
    def test_asking_price_close_to_model(self):
        assert pricing_position(420_000, 402_500) == (4.35, "NORMAL")

    @pytest.mark.parametrize("asking,expected", [
        (220_000, (10.0, "NORMAL")),
        (220_100, (10.05, "OVER_PRICED")),
        (180_000, (-10.0, "NORMAL")),
        (179_900, (-10.05, "UNDER_PRICED")),
        (220_008, (10.0, "OVER_PRICED")),
        (179_992, (-10.0, "UNDER_PRICED")),
    ])
    def test_tolerance_boundaries(self, asking, expected):
        assert pricing_position(asking, 200_000) == expected

    @pytest.mark.parametrize("asking,predicted", [(None, 200_000), (200_000, None), (0, 200_000)])
    def test_unknown_without_both_prices(self, asking, predicted):
        assert pricing_position(asking, predicted) == (None, "UNKNOWN")


class TestMarketTrend:
    def test_year_over_year_changes(self):
        points = [
            point(50, 250_000, date(2023, 3, 1)),
            point(100, 500_000, date(2023, 9, 1)),
            point(50, 300_000, date(2024, 1, 5)),
            point(60, 360_000, date(2024, 6, 5)),
            point(70, 420_000, date(2024, 11, 5)),
            point(50, 330_000, date(2026, 2, 1)),
        ]
        trend = market_trend(points, years=5)
        assert [t.year for t in trend] == [2023, 2024, 2026]

        y2023, y2024, y2026 = trend
        assert (y2023.count, y2023.avg_price_per_m2) == (2, 5000)
        assert y2023.count_change_pct is None and y2023.price_per_m2_change_pct is None
        assert (y2024.count, y2024.avg_price_per_m2) == (3, 6000)
        assert y2024.count_change_pct == 50.0
        assert y2024.price_per_m2_change_pct == 20.0
        # 2025 has no sales, so nothing to compare 2026 against
        assert y2026.avg_price_per_m2 == 6600
        assert y2026.count_change_pct is None

    def test_keeps_most_recent_years(self):
        points = [point(50, 250_000, date(year, 6, 1)) for year in range(2016, 2026)]
        assert [t.year for t in market_trend(points, years=5)] == [2021, 2022, 2023, 2024, 2025]

    def test_empty(self):
        assert market_trend([]) == []
