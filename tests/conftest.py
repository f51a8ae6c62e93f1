"""Shared fixtures: in-memory database, scripted collaborators and transaction factories."""

from datetime import date
from typing import Optional

import pytest

from valuation_engine.core.config import ComparablesConfig
from valuation_engine.data.base import ComparableTransaction, GeoPoint, PropertyType, SearchQuery
from valuation_engine.db.store import Database
from valuation_engine.models.base import ProviderValuation
from valuation_engine.services.comparables_service import ComparablesService
from valuation_engine.services.property_service import PropertyService

TODAY = date(2026, 6, 1)
PARIS = GeoPoint(lat=48.8566, lon=2.3522)

# Five sales lying exactly on price = 6000 x surface + 12500
LINEAR_SURFACES = [50.0, 55.0, 62.5, 70.0, 80.0]
LINEAR_PRICES = [312_500, 342_500, 387_500, 432_500, 492_500]


class FakeGeocoder:
    def __init__(self, point: Optional[GeoPoint] = PARIS):
        self.point = point
        self.calls = 0

    async def find_coordinates(self, address: str, postal_code: str, city: str) -> Optional[GeoPoint]:
        self.calls += 1
        return self.point


class ScriptedTransactions:
    """Answers each radius with a fixed list of transactions, or raises the scripted error."""

    def __init__(self, responses: Optional[dict] = None):
        self.responses = responses or {}
        self.calls: list[int] = []
        self.queries: list[SearchQuery] = []

    async def search(self, query: SearchQuery) -> list[ComparableTransaction]:
        self.calls.append(query.radius_m)
        self.queries.append(query)
        outcome = self.responses.get(query.radius_m, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)


class StaticProvider:
    def __init__(self, result: Optional[ProviderValuation] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.prompts: list[str] = []

    async def compute_valuation(self, prompt: str) -> ProviderValuation:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def config() -> ComparablesConfig:
    return ComparablesConfig()


@pytest.fixture
def db(config) -> Database:
    """Fresh in-memory database for each test."""
    return Database("sqlite://", config)


@pytest.fixture
def make_tx():
    """Factory for normalized transactions near Paris."""
    def _make(
        key,
        surface: float = 60.0,
        price: int = 360_000,
        sale_date: date = date(2025, 3, 15),
        property_type: PropertyType = PropertyType.APARTMENT,
        lat: float = 48.8570,
        lon: float = 2.3530,
        land: Optional[float] = None,
    ) -> ComparableTransaction:
        return ComparableTransaction(
            source="TEST",
            source_row_hash=f"row-{key}",
            sale_date=sale_date,
            sale_price=price,
            surface_m2=surface,
            property_type=property_type,
            built_surface_m2=surface,
            land_surface_m2=land,
            latitude=lat,
            longitude=lon,
            postal_code="75004",
            city="Paris",
            raw_payload={"id": str(key)},
        )
    return _make


@pytest.fixture
def linear_sales(make_tx) -> list[ComparableTransaction]:
    return [
        make_tx(f"lin-{i}", surface=s, price=p, sale_date=date(2024 + i % 2, 2 + i, 10))
        for i, (s, p) in enumerate(zip(LINEAR_SURFACES, LINEAR_PRICES))
    ]


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder()


@pytest.fixture
def property_service(db, geocoder) -> PropertyService:
    return PropertyService(db.properties, geocoder)


@pytest.fixture
def subject(db):
    """A 65 m2 apartment listed at 420 000 with cached coordinates."""
    return db.properties.create(
        org_id="org-1",
        title="Apartment Marais",
        address="12 rue des Archives",
        postal_code="75004",
        city="Paris",
        price=420_000,
        details={
            "general": {"propertyType": "APPARTEMENT"},
            "location": {"latitude": PARIS.lat, "longitude": PARIS.lon},
            "characteristics": {"livingArea": 65, "rooms": 3},
        },
    )


@pytest.fixture
def comparables_service_factory(db, property_service, config):
    def _build(transactions, cfg: Optional[ComparablesConfig] = None) -> ComparablesService:
        return ComparablesService(db, property_service, transactions, cfg or config, today=lambda: TODAY)
    return _build


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def paris() -> GeoPoint:
    return PARIS


@pytest.fixture
def scripted():
    return ScriptedTransactions


@pytest.fixture
def provider_stub():
    return StaticProvider
