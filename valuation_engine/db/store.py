"""
Persistence for the valuation engine.

Three tables:
- `properties`: the agency's property records (owned by the CRUD layer; only
  the attribute bag is written here, for coordinates and valuation snapshots)
- `market_transactions`: registry sales, insert-or-ignore on the row hash
- `comparables_query_cache`: computed comparables responses, insert-or-update
  on the signature key

Both shared tables are written with atomic upserts, so concurrent
computations for the same property can only recompute redundantly.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from ..core.config import ComparablesConfig
from ..core.utils import sha256_hex
from ..data.base import ComparableTransaction, GeoPoint, PropertyType

metadata = MetaData()

properties = Table(
    "properties",
    metadata,
    Column("id", String, primary_key=True),
    Column("org_id", String, nullable=False, index=True),
    Column("title", String, nullable=False),
    Column("address", String),
    Column("postal_code", String),
    Column("city", String),
    Column("price", Integer),
    Column("details", JSON, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
)

market_transactions = Table(
    "market_transactions",
    metadata,
    Column("id", String, primary_key=True),
    Column("source", String, nullable=False),
    Column("source_row_hash", String, nullable=False, unique=True),
    Column("sale_date", Date, nullable=False),
    Column("sale_price", Integer, nullable=False),
    Column("surface_m2", Float, nullable=False),
    Column("built_surface_m2", Float),
    Column("land_surface_m2", Float),
    Column("property_type", String, nullable=False),
    Column("longitude", Float),
    Column("latitude", Float),
    Column("postal_code", String),
    Column("city", String),
    Column("insee_code", String),
    Column("raw_payload", JSON, nullable=False),
    Column("fetched_at", Float, nullable=False),
    Index("market_transactions_type_date_idx", "property_type", "sale_date"),
)

comparables_query_cache = Table(
    "comparables_query_cache",
    metadata,
    Column("id", String, primary_key=True),
    Column("org_id", String, nullable=False),
    Column("property_id", String, nullable=False),
    Column("cache_key", String, nullable=False, unique=True),
    Column("query_signature", Text, nullable=False),
    Column("final_radius_m", Integer, nullable=False),
    Column("comparables_count", Integer, nullable=False),
    Column("target_reached", Boolean, nullable=False),
    Column("response_json", Text, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    Index("comparables_query_cache_org_property_idx", "org_id", "property_id"),
)


def _insert(engine: Engine, table: Table):
    """Dialect insert that supports ON CONFLICT."""
    if engine.dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ----- Properties -----

@dataclass
class PropertyRecord:
    id: str
    org_id: str
    title: str
    address: Optional[str]
    postal_code: Optional[str]
    city: Optional[str]
    price: Optional[int]
    details: dict = field(default_factory=dict)


class PropertyStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def create(self, org_id: str, title: str, address: str | None, postal_code: str | None,
               city: str | None, price: int | None, details: dict) -> PropertyRecord:
        now = time.time()
        record = PropertyRecord(
            id=_new_id("property"), org_id=org_id, title=title, address=address,
            postal_code=postal_code, city=city, price=price, details=details,
        )
        with self.engine.begin() as conn:
            conn.execute(properties.insert().values(
                id=record.id, org_id=org_id, title=title, address=address, postal_code=postal_code,
                city=city, price=price, details=details, created_at=now, updated_at=now,
            ))
        return record

    def get(self, org_id: str, property_id: str) -> Optional[PropertyRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(properties).where(properties.c.id == property_id, properties.c.org_id == org_id)
            ).mappings().first()
        if row is None:
            return None
        return PropertyRecord(
            id=row["id"], org_id=row["org_id"], title=row["title"], address=row["address"],
            postal_code=row["postal_code"], city=row["city"], price=row["price"],
            details=dict(row["details"] or {}),
        )

    def update_details(self, org_id: str, property_id: str, details: dict) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(properties)
                .where(properties.c.id == property_id, properties.c.org_id == org_id)
                .values(details=details, updated_at=time.time())
            )


# ----- Registry transactions -----

class TransactionStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def insert_ignore(self, transactions: Iterable[ComparableTransaction]) -> None:
        now = time.time()
        rows = [
            {
                "id": _new_id("tx"),
                "source": tx.source,
                "source_row_hash": tx.source_row_hash,
                "sale_date": tx.sale_date,
                "sale_price": tx.sale_price,
                "surface_m2": tx.surface_m2,
                "built_surface_m2": tx.built_surface_m2,
                "land_surface_m2": tx.land_surface_m2,
                "property_type": tx.property_type.value,
                "longitude": tx.longitude,
                "latitude": tx.latitude,
                "postal_code": tx.postal_code,
                "city": tx.city,
                "insee_code": tx.insee_code,
                "raw_payload": tx.raw_payload,
                "fetched_at": now,
            }
            for tx in transactions
        ]
        if not rows:
            return
        stmt = _insert(self.engine, market_transactions).on_conflict_do_nothing(
            index_elements=["source_row_hash"]
        )
        with self.engine.begin() as conn:
            conn.execute(stmt, rows)

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(market_transactions)).scalar_one()


# ----- Comparables query cache -----

def cache_signature(
    config: ComparablesConfig,
    org_id: str,
    property_id: str,
    property_type: PropertyType,
    center: GeoPoint,
    surface_range: Optional[tuple[float, float]] = None,
) -> tuple[str, str]:
    """
    (signature, cache_key) for a comparables search. The signature holds every
    parameter that changes the outcome; the key is its SHA-256.
    An agent surface range is part of the signature only when one is set.
    """
    params: dict[str, Any] = {
        "version": config.cache_format_version,
        "org_id": org_id,
        "property_id": property_id,
        "property_type": property_type.value,
        "lookback_years": config.lookback_years,
        "radius_ladder_m": list(config.radius_ladder_m),
        "target_count": config.target_count,
        "center": [
            round(center.lat, config.center_precision),
            round(center.lon, config.center_precision),
        ],
    }
    if surface_range is not None:
        params["surface_range"] = [float(surface_range[0]), float(surface_range[1])]
    signature = json.dumps(params, sort_keys=True, separators=(",", ":"))
    return signature, sha256_hex(signature)


@dataclass
class CacheEntry:
    cache_key: str
    response_json: str
    final_radius_m: int
    comparables_count: int
    target_reached: bool
    expires_at: float


class QueryCacheStore:
    def __init__(self, engine: Engine, ttl_days: float):
        self.engine = engine
        self.ttl_seconds = ttl_days * 86_400

    def get_valid(self, cache_key: str, now: float | None = None) -> Optional[CacheEntry]:
        now = time.time() if now is None else now
        with self.engine.connect() as conn:
            row = conn.execute(
                select(comparables_query_cache).where(
                    comparables_query_cache.c.cache_key == cache_key,
                    comparables_query_cache.c.expires_at > now,
                )
            ).mappings().first()
        if row is None:
            return None
        return CacheEntry(
            cache_key=row["cache_key"],
            response_json=row["response_json"],
            final_radius_m=row["final_radius_m"],
            comparables_count=row["comparables_count"],
            target_reached=bool(row["target_reached"]),
            expires_at=row["expires_at"],
        )

    def upsert(self, org_id: str, property_id: str, cache_key: str, signature: str, response_json: str,
               final_radius_m: int, comparables_count: int, target_reached: bool,
               now: float | None = None) -> None:
        now = time.time() if now is None else now
        values: dict[str, Any] = {
            "query_signature": signature,
            "final_radius_m": final_radius_m,
            "comparables_count": comparables_count,
            "target_reached": target_reached,
            "response_json": response_json,
            "expires_at": now + self.ttl_seconds,
            "updated_at": now,
        }
        stmt = _insert(self.engine, comparables_query_cache).values(
            id=_new_id("cache"), org_id=org_id, property_id=property_id, cache_key=cache_key,
            created_at=now, **values,
        ).on_conflict_do_update(index_elements=["cache_key"], set_=values)
        with self.engine.begin() as conn:
            conn.execute(stmt)


class Database:
    """Engine plus the three stores, tables created on first use."""

    def __init__(self, url: str, config: ComparablesConfig):
        kwargs: dict[str, Any] = {"future": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        metadata.create_all(self.engine)
        self.properties = PropertyStore(self.engine)
        self.transactions = TransactionStore(self.engine)
        self.query_cache = QueryCacheStore(self.engine, config.cache_ttl_days)
