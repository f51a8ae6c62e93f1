"""
Subject-side normalization and the plausibility filters applied to
accumulated comparables.

The property's attribute bag groups fields by category
(general, location, characteristics, finance, regulation, amenities, ...).
"""

from typing import Any, Iterable, List, Optional

from ..core.config import ComparablesConfig
from ..core.utils import haversine_m, to_finite_number
from ..data.base import ComparableTransaction, GeoPoint, PropertyType
from ..data.transactions_client import comparable_surface
from ..db.store import PropertyRecord
from ..schemas import ComparablePoint, SurfaceRange


def detail(details: dict, category: str, key: str) -> Any:
    group = details.get(category)
    return group.get(key) if isinstance(group, dict) else None


def _positive_number(value: Any) -> Optional[float]:
    number = to_finite_number(value)
    return number if number is not None and number > 0 else None


def declared_property_type(details: dict) -> Optional[PropertyType]:
    return PropertyType.from_string(detail(details, "general", "propertyType"))


def subject_surface(details: dict, property_type: PropertyType) -> Optional[float]:
    """Same precedence as registry rows: legal surface, living area, land area (land first for plots)."""
    return comparable_surface(
        property_type,
        built=_positive_number(detail(details, "characteristics", "livingArea")),
        land=_positive_number(detail(details, "characteristics", "landArea")),
        carrez=_positive_number(detail(details, "characteristics", "carrezArea")),
    )


def subject_asking_price(record: PropertyRecord) -> Optional[int]:
    price = _positive_number(record.price)
    if price is None:
        price = _positive_number(detail(record.details, "finance", "salePriceTtc"))
    return int(round(price)) if price is not None else None


def cached_coordinates(details: dict) -> Optional[GeoPoint]:
    lat = to_finite_number(detail(details, "location", "latitude"))
    lon = to_finite_number(detail(details, "location", "longitude"))
    if lat is None or lon is None:
        return None
    if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        return None
    return GeoPoint(lat=lat, lon=lon)


def with_coordinates(details: dict, point: GeoPoint) -> dict:
    location = dict(details.get("location") or {})
    location.update(latitude=point.lat, longitude=point.lon)
    return {**details, "location": location}


def surface_bounds(surface: Optional[float], config: ComparablesConfig) -> Optional[SurfaceRange]:
    if surface is None:
        return None
    low, high = config.surface_range
    return SurfaceRange(min_m2=round(surface * low, 2), max_m2=round(surface * high, 2))


def price_per_m2_floor(config: ComparablesConfig, property_type: PropertyType) -> float:
    # Plots sell far below built floor area; a built-type floor would drop them all
    if property_type is PropertyType.LAND:
        return config.min_price_per_m2_land
    return config.min_price_per_m2


def filter_by_surface_range(
    transactions: Iterable[ComparableTransaction], bounds: Optional[SurfaceRange]
) -> List[ComparableTransaction]:
    if bounds is None:
        return list(transactions)
    return [tx for tx in transactions if bounds.min_m2 <= tx.surface_m2 <= bounds.max_m2]


def filter_by_price_per_m2(
    transactions: Iterable[ComparableTransaction], floor: float
) -> List[ComparableTransaction]:
    return [tx for tx in transactions if tx.price_per_m2 >= floor]


def to_point(tx: ComparableTransaction, center: Optional[GeoPoint]) -> ComparablePoint:
    distance = None
    if center is not None and tx.latitude is not None and tx.longitude is not None:
        distance = round(haversine_m(center.lat, center.lon, tx.latitude, tx.longitude), 1)
    return ComparablePoint(
        sale_date=tx.sale_date,
        surface_m2=tx.surface_m2,
        land_surface_m2=tx.land_surface_m2,
        sale_price=tx.sale_price,
        price_per_m2=round(tx.price_per_m2, 2),
        distance_m=distance,
        city=tx.city,
        postal_code=tx.postal_code,
    )
