"""
Statistics over filtered comparables: summary, OLS price~surface model,
pricing position of the asking price, and the per-year market trend.
"""

import math
from collections import defaultdict
from typing import Optional, Sequence

import numpy as np

from ..schemas import ComparablePoint, RegressionResult, Summary, TrendYear

# Relative deviation (in %) beyond which the asking price is off-market
PRICING_TOLERANCE_PCT = 10.0
# Float noise allowed on the tolerance before a price counts as off-market
_TOLERANCE_EPSILON = 1e-9


def _int(value) -> int:
    return int(round(float(value)))


def _clean(value: float, digits: int) -> float:
    # + 0.0 turns a rounded -0.0 into 0.0
    return round(value, digits) + 0.0


def summarize(points: Sequence[ComparablePoint]) -> Summary:
    if not points:
        return Summary()
    prices = np.array([p.sale_price for p in points], dtype=float)
    per_m2 = np.array([p.sale_price / p.surface_m2 for p in points], dtype=float)
    q1, median, q3 = np.percentile(prices, [25, 50, 75])
    q1_m2, median_m2, q3_m2 = np.percentile(per_m2, [25, 50, 75])
    return Summary(
        count=len(points),
        median_price=_int(median),
        q1_price=_int(q1),
        q3_price=_int(q3),
        min_price=_int(prices.min()),
        max_price=_int(prices.max()),
        median_price_per_m2=_int(median_m2),
        q1_price_per_m2=_int(q1_m2),
        q3_price_per_m2=_int(q3_m2),
        min_price_per_m2=_int(per_m2.min()),
        max_price_per_m2=_int(per_m2.max()),
    )


def linear_regression(points: Sequence[ComparablePoint]) -> RegressionResult:
    """
    Ordinary least squares of sale price against surface.
    Needs two valid points with distinct surfaces, otherwise every output is null.
    """
    pairs = [(p.surface_m2, p.sale_price) for p in points if p.surface_m2 > 0 and p.sale_price > 0]
    if len(pairs) < 2:
        return RegressionResult()

    x = np.array([s for s, _ in pairs], dtype=float)
    y = np.array([price for _, price in pairs], dtype=float)
    x_mean, y_mean = x.mean(), y.mean()
    sxx = float(((x - x_mean) ** 2).sum())
    if sxx == 0:
        return RegressionResult()

    slope = float(((x - x_mean) * (y - y_mean)).sum()) / sxx
    intercept = float(y_mean) - slope * float(x_mean)
    ss_res = float(((y - (slope * x + intercept)) ** 2).sum())
    ss_tot = float(((y - y_mean) ** 2).sum())
    r2 = 1.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot

    if not all(math.isfinite(v) for v in (slope, intercept, r2)):
        return RegressionResult()
    return RegressionResult(
        slope=_clean(slope, 2),
        intercept=_clean(intercept, 2),
        r2=_clean(r2, 4),
        points_used=len(pairs),
    )


def predict_price(regression: RegressionResult, surface: Optional[float]) -> Optional[int]:
    if regression.slope is None or regression.intercept is None or surface is None:
        return None
    value = regression.slope * surface + regression.intercept
    if not math.isfinite(value) or value <= 0:
        return None
    return _int(value)


def pricing_position(asking: Optional[int], predicted: Optional[int]) -> tuple[Optional[float], str]:
    """
    (deviation %, position) of the asking price against the model price.
    Exactly +/-10 % is still NORMAL; anything beyond it is not, even when
    the reported (rounded) deviation reads 10.0.
    """
    if not asking or not predicted:
        return None, "UNKNOWN"
    raw = (asking - predicted) * 100 / predicted
    deviation = _clean(raw, 2)
    if raw > PRICING_TOLERANCE_PCT + _TOLERANCE_EPSILON:
        return deviation, "OVER_PRICED"
    if raw < -PRICING_TOLERANCE_PCT - _TOLERANCE_EPSILON:
        return deviation, "UNDER_PRICED"
    return deviation, "NORMAL"


def _change_pct(current: float, previous: float) -> Optional[float]:
    if not previous:
        return None
    return _clean((current - previous) / previous * 100, 1)


def market_trend(points: Sequence[ComparablePoint], years: int = 5) -> list[TrendYear]:
    """
    Sales count and mean price per m2 for the most recent `years` calendar
    years present, with year-over-year change against the previous calendar
    year (null when that year has no sales).
    """
    by_year: dict[int, list[float]] = defaultdict(list)
    for p in points:
        by_year[p.sale_date.year].append(p.sale_price / p.surface_m2)

    out: list[TrendYear] = []
    for year in sorted(by_year)[-years:]:
        values = by_year[year]
        mean = float(np.mean(values))
        previous = by_year.get(year - 1)
        out.append(TrendYear(
            year=year,
            count=len(values),
            avg_price_per_m2=_int(mean),
            count_change_pct=_change_pct(len(values), len(previous)) if previous else None,
            price_per_m2_change_pct=_change_pct(mean, float(np.mean(previous))) if previous else None,
        ))
    return out
