from datetime import date

import pytest

from valuation_engine.data.base import GeoPoint, PropertyType
from valuation_engine.db.store import PropertyRecord
from valuation_engine.schemas import SurfaceRange
from valuation_engine.services.comparables import (
    cached_coordinates,
    declared_property_type,
    filter_by_price_per_m2,
    filter_by_surface_range,
    price_per_m2_floor,
    subject_asking_price,
    subject_surface,
    surface_bounds,
    to_point,
    with_coordinates,
)


def record(price=None, **details) -> PropertyRecord:
    return PropertyRecord(
        id="property_1", org_id="org-1", title="T", address=None,
        postal_code=None, city=None, price=price, details=details,
    )


class TestSubject:
    def test_declared_type_accepts_french_labels(self):
        assert declared_property_type({"general": {"propertyType": "MAISON"}}) is PropertyType.HOUSE
        assert declared_property_type({"general": {"propertyType": "villa"}}) is None
        assert declared_property_type({}) is None

    def test_surface_prefers_carrez_then_living_area(self):
        details = {"characteristics": {"carrezArea": 61.5, "livingArea": 65, "landArea": 300}}
        assert subject_surface(details, PropertyType.APARTMENT) == 61.5
        del details["characteristics"]["carrezArea"]
        assert subject_surface(details, PropertyType.HOUSE) == 65

    def test_surface_of_land_is_the_plot(self):
        details = {"characteristics": {"livingArea": 65, "landArea": "1 200"}}
        assert subject_surface(details, PropertyType.LAND) == 1200

    def test_surface_ignores_non_positive_values(self):
        details = {"characteristics": {"livingArea": 0, "landArea": -3}}
        assert subject_surface(details, PropertyType.HOUSE) is None

    def test_asking_price_falls_back_to_finance_block(self):
        assert subject_asking_price(record(price=420_000)) == 420_000
        assert subject_asking_price(record(finance={"salePriceTtc": "399 000"})) == 399_000
        assert subject_asking_price(record()) is None


class TestCoordinates:
    def test_round_trip_through_attribute_bag(self):
        details = {"location": {"district": "Marais"}, "general": {}}
        updated = with_coordinates(details, GeoPoint(48.85, 2.35))
        assert updated["location"] == {"district": "Marais", "latitude": 48.85, "longitude": 2.35}
        assert "latitude" not in details["location"]
        assert cached_coordinates(updated) == GeoPoint(48.85, 2.35)

    @pytest.mark.parametrize("location", [
        {},
        {"latitude": 48.85},
        {"latitude": "n/a", "longitude": 2.35},
        {"latitude": 95, "longitude": 2.35},
    ])
    def test_unusable_coordinates(self, location):
        assert cached_coordinates({"location": location}) is None


class TestFilters:
    def test_surface_bounds_around_subject(self, config):
        assert surface_bounds(65, config) == SurfaceRange(min_m2=32.5, max_m2=130)
        assert surface_bounds(None, config) is None

    def test_surface_range_is_inclusive(self, make_tx):
        txs = [make_tx(1, surface=32.5), make_tx(2, surface=32.4), make_tx(3, surface=130), make_tx(4, surface=131)]
        kept = filter_by_surface_range(txs, SurfaceRange(min_m2=32.5, max_m2=130))
        assert [tx.source_row_hash for tx in kept] == ["row-1", "row-3"]

    def test_unknown_subject_surface_keeps_everything(self, make_tx):
        txs = [make_tx(1, surface=10), make_tx(2, surface=1000)]
        assert filter_by_surface_range(txs, None) == txs

    def test_price_per_m2_floor(self, make_tx, config):
        txs = [make_tx(1, surface=100, price=50_000), make_tx(2, surface=100, price=49_999)]
        floor = price_per_m2_floor(config, PropertyType.APARTMENT)
        assert floor == 500
        assert [tx.source_row_hash for tx in filter_by_price_per_m2(txs, floor)] == ["row-1"]

    def test_land_has_a_lower_floor(self, make_tx, config):
        plot = make_tx(1, surface=2000, price=40_000, property_type=PropertyType.LAND)
        floor = price_per_m2_floor(config, PropertyType.LAND)
        assert floor == 5
        assert filter_by_price_per_m2([plot], floor) == [plot]


class TestPoint:
    def test_distance_and_rounding(self, make_tx, paris):
        tx = make_tx(1, surface=62.5, price=387_500, sale_date=date(2025, 4, 1), lat=paris.lat + 0.01, lon=paris.lon)
        p = to_point(tx, paris)
        assert p.price_per_m2 == 6200.0
        assert p.distance_m == pytest.approx(1112.0, abs=1)
        assert p.sale_date == date(2025, 4, 1)
        assert p.city == "Paris"

    def test_no_distance_without_coordinates(self, make_tx, paris):
        tx = make_tx(1)
        tx.latitude = None
        assert to_point(tx, paris).distance_m is None
