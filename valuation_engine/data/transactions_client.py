"""
Client for the public land-transaction registry (DVF open data).

The registry is served by several backends over time, so rows come in more
than one shape (flat records, GeoJSON-like features) and with renamed fields.
Every logical field is read through an ordered alias list; the first key
present wins.
"""

import json
import logging
import math
from datetime import timedelta
from typing import Any, List, Optional

import httpx

from .base import ComparableTransaction, GeoPoint, PropertyType, SearchQuery, TransactionsClient
from ..core.config import ComparablesConfig, Settings, settings
from ..core.errors import TransactionSourceError
from ..core.http import client_session, external_get
from ..core.utils import (
    first_present,
    fnv1a_32,
    normalize_text,
    parse_date,
    sanitize_text,
    seeded_rand,
    sha256_hex,
    to_finite_number,
)

log = logging.getLogger(__name__)

SOURCE = "CEREMA_DVF_OPENDATA"
METERS_PER_DEGREE = 111_320
DEFAULT_PAGE_SIZE = 500

DATE_KEYS = ("sale_date", "date_mutation", "dateMutation", "datemut")
PRICE_KEYS = ("sale_price", "valeur_fonciere", "salePrice", "valeurfonc")
TYPE_CODE_KEYS = ("codtypbien", "code_type_local", "type_bien_code")
TYPE_LABEL_KEYS = ("type_local", "typedelocal", "libtypbien", "nature_mutation", "naturemut", "type_bien")
BUILT_SURFACE_KEYS = ("surface_reelle_bati", "surface_reelle_bati_1er_lot", "surface_bati", "sbati", "built_surface_m2")
LAND_SURFACE_KEYS = ("surface_terrain", "land_surface_m2", "sterr", "stot")
CARREZ_LOT_KEYS = (
    "surface_carrez_du_1er_lot",
    "surface_carrez_du_2eme_lot",
    "surface_carrez_du_3eme_lot",
    "surface_carrez_du_4eme_lot",
    "surface_carrez_du_5eme_lot",
)
LON_KEYS = ("longitude", "lon", "geolong")
LAT_KEYS = ("latitude", "lat", "geolat")
POSTAL_KEYS = ("code_postal", "postal_code", "codpost")
CITY_KEYS = ("nom_commune", "city", "commune", "libcom")
INSEE_KEYS = ("code_commune", "code_insee", "insee_code", "codcom")
ID_KEYS = ("id", "idmutation", "mutation_id", "id_mutation", "clef")

# Checked in order against the normalized label
_LABEL_RULES = (
    (("appartement", "apartment"), PropertyType.APARTMENT),
    (("maison", "house"), PropertyType.HOUSE),
    (("terrain", "land"), PropertyType.LAND),
    (("immeuble", "building"), PropertyType.BUILDING),
    (("local", "commerce", "commercial", "industrie"), PropertyType.COMMERCIAL),
)


# ----- Row normalization -----

def resolve_property_type(row: dict) -> PropertyType:
    code = to_finite_number(first_present(row, TYPE_CODE_KEYS))
    if code in (1, 111):
        return PropertyType.HOUSE
    if code in (2, 121):
        return PropertyType.APARTMENT
    if code is not None and 210 <= code < 300:
        return PropertyType.LAND
    if code in (4, 5):
        return PropertyType.COMMERCIAL

    label = sanitize_text(first_present(row, TYPE_LABEL_KEYS))
    if not label:
        return PropertyType.OTHER
    label = normalize_text(label)
    for needles, property_type in _LABEL_RULES:
        if any(needle in label for needle in needles):
            return property_type
    return PropertyType.OTHER


def _positive(value: Optional[float]) -> Optional[float]:
    return value if value is not None and value > 0 else None


def resolve_surfaces(row: dict) -> tuple[Optional[float], Optional[float], Optional[float]]:
    """(built, land, carrez) surfaces; carrez is the sum of the positive declared lots."""
    built = _positive(to_finite_number(first_present(row, BUILT_SURFACE_KEYS)))
    land = _positive(to_finite_number(first_present(row, LAND_SURFACE_KEYS)))
    lots = [_positive(to_finite_number(row.get(key))) for key in CARREZ_LOT_KEYS]
    lots = [lot for lot in lots if lot is not None]
    carrez = sum(lots) if lots else None
    return built, land, carrez


def comparable_surface(
    property_type: PropertyType,
    built: Optional[float],
    land: Optional[float],
    carrez: Optional[float],
) -> Optional[float]:
    """Legal (Carrez) surface, else built, else land; land first for plots."""
    built_like = carrez if carrez is not None else built
    if property_type is PropertyType.LAND:
        return land if land is not None else built_like
    return built_like if built_like is not None else land


def row_hash(row: dict, index: int) -> str:
    """
    Stable identity for a registry row: the source identifier when present,
    otherwise a composite of date/price/coordinates and the row's offset.
    """
    identifier = first_present(row, ID_KEYS)
    if isinstance(identifier, (int, float)) and not isinstance(identifier, bool):
        identifier = str(identifier)
    identifier = sanitize_text(identifier)
    if identifier:
        return sha256_hex(identifier)

    sale_date = parse_date(first_present(row, DATE_KEYS))
    composite = {
        "date": sale_date.isoformat() if sale_date else None,
        "price": to_finite_number(first_present(row, PRICE_KEYS)),
        "latitude": to_finite_number(first_present(row, LAT_KEYS)),
        "longitude": to_finite_number(first_present(row, LON_KEYS)),
        "index": index,
    }
    return sha256_hex(json.dumps(composite, sort_keys=True))


def normalize_feature_row(value: Any) -> Optional[dict]:
    """Flatten a GeoJSON-like feature into a flat row; flat rows are copied as-is."""
    if not isinstance(value, dict):
        return None
    properties = value.get("properties")
    row = dict(properties) if isinstance(properties, dict) else dict(value)

    if "id" not in row and "id" in value:
        row["id"] = value["id"]

    geometry = value.get("geometry")
    if isinstance(geometry, dict):
        coordinates = geometry.get("coordinates")
        if isinstance(coordinates, list) and len(coordinates) >= 2:
            lon, lat = coordinates[0], coordinates[1]
            if "longitude" not in row and "geolong" not in row:
                row["longitude"] = lon
            if "latitude" not in row and "geolat" not in row:
                row["latitude"] = lat
    return row


def extract_rows(payload: Any) -> List[dict]:
    """Rows from a top-level list, from results/records/features/data/rows, or under `result`."""
    if isinstance(payload, list):
        candidates = [payload]
    elif isinstance(payload, dict):
        result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
        candidates = [
            payload.get("results"),
            payload.get("records"),
            payload.get("features"),
            payload.get("data"),
            payload.get("rows"),
            result.get("records"),
            result.get("results"),
            result.get("features"),
        ]
    else:
        return []

    for candidate in candidates:
        if isinstance(candidate, list):
            rows = (normalize_feature_row(item) for item in candidate)
            return [row for row in rows if row is not None]
    return []


def to_transaction(row: dict, index: int, query: SearchQuery) -> Optional[ComparableTransaction]:
    """Canonical transaction, or None when the row fails any acceptance rule for `query`."""
    sale_date = parse_date(first_present(row, DATE_KEYS))
    if sale_date is None or not (query.from_date <= sale_date <= query.to_date):
        return None

    price = to_finite_number(first_present(row, PRICE_KEYS))
    if price is None or price <= 0:
        return None

    property_type = resolve_property_type(row)
    if property_type is not query.property_type:
        return None

    built, land, carrez = resolve_surfaces(row)
    surface = comparable_surface(property_type, built, land, carrez)
    if surface is None or surface <= 0:
        return None

    return ComparableTransaction(
        source=SOURCE,
        source_row_hash=row_hash(row, index),
        sale_date=sale_date,
        sale_price=int(round(price)),
        surface_m2=surface,
        property_type=property_type,
        built_surface_m2=built,
        land_surface_m2=land,
        latitude=to_finite_number(first_present(row, LAT_KEYS)),
        longitude=to_finite_number(first_present(row, LON_KEYS)),
        postal_code=sanitize_text(first_present(row, POSTAL_KEYS)),
        city=sanitize_text(first_present(row, CITY_KEYS)),
        insee_code=sanitize_text(first_present(row, INSEE_KEYS)),
        raw_payload=row,
    )


def to_transactions(rows: List[dict], query: SearchQuery) -> List[ComparableTransaction]:
    out: List[ComparableTransaction] = []
    for index, row in enumerate(rows):
        tx = to_transaction(row, index, query)
        if tx is not None:
            out.append(tx)
    return out


# ----- Query building & pagination -----

def bounding_box(center: GeoPoint, radius_m: float, max_span_degrees: float) -> tuple[float, float, float, float]:
    """(lon_min, lat_min, lon_max, lat_max) around `center`, each side capped at `max_span_degrees`."""
    half_span = max_span_degrees / 2
    lat_delta = min(radius_m / METERS_PER_DEGREE, half_span)
    cos_lat = math.cos(math.radians(center.lat))
    lon_delta = min(radius_m / (METERS_PER_DEGREE * max(abs(cos_lat), 0.01)), half_span)
    return (
        center.lon - lon_delta,
        center.lat - lat_delta,
        center.lon + lon_delta,
        center.lat + lat_delta,
    )


def next_page_url(payload: Any, current: httpx.URL) -> Optional[httpx.URL]:
    """
    Server-provided `next` link resolved against the current URL.
    Some backends answer with an http link; the scheme of the request is kept.
    """
    if not isinstance(payload, dict):
        return None
    raw = sanitize_text(payload.get("next"))
    if not raw:
        return None
    try:
        return current.join(raw).copy_with(scheme=current.scheme)
    except (httpx.InvalidURL, ValueError, TypeError):
        return None


class HttpTransactions(TransactionsClient):
    """
    Registry search within a bounding box and date window.
    Pages are fetched sequentially (the next link gates the next call)
    and capped at `config.max_pages`.
    """
    def __init__(self, config: ComparablesConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    def build_params(self, query: SearchQuery) -> dict:
        lon_min, lat_min, lon_max, lat_max = bounding_box(
            query.center, query.radius_m, self.config.max_bbox_degrees
        )
        from_iso, to_iso = query.from_date.isoformat(), query.to_date.isoformat()
        limit = query.limit or self.config.page_size or DEFAULT_PAGE_SIZE
        return {
            "lat": str(query.center.lat),
            "lon": str(query.center.lon),
            "radius_m": str(query.radius_m),
            "lon_lat": f"{query.center.lon},{query.center.lat}",
            "in_bbox": f"{lon_min},{lat_min},{lon_max},{lat_max}",
            "property_type": query.property_type.value,
            "date_from": from_iso,
            "date_to": to_iso,
            "datemut_min": from_iso,
            "datemut_max": to_iso,
            "format_date": "%Y-%m-%d",
            "limit": str(limit),
            "page_size": str(limit),
        }

    def _headers(self) -> dict:
        headers = {"accept": "application/json"}
        if self.config.transactions_api_token:
            headers["authorization"] = f"Bearer {self.config.transactions_api_token}"
        return headers

    async def search(self, query: SearchQuery) -> List[ComparableTransaction]:
        headers = self._headers()
        rows: List[dict] = []
        next_url: Optional[httpx.URL] = httpx.URL(self.config.transactions_base_url).copy_merge_params(
            self.build_params(query)
        )
        visited: set[str] = set()
        page = 0

        async with client_session(self._client) as client:
            while next_url is not None and page < self.config.max_pages:
                if str(next_url) in visited:
                    break
                visited.add(str(next_url))
                page += 1

                payload = await self._fetch_page(client, next_url, page, headers)
                rows.extend(extract_rows(payload))
                next_url = next_page_url(payload, next_url)

        transactions = to_transactions(rows, query)
        log.info(
            "transactions fetched",
            extra={"radius_m": query.radius_m, "pages": page, "rows": len(rows), "accepted": len(transactions)},
        )
        return transactions

    async def _fetch_page(self, client: httpx.AsyncClient, url: httpx.URL, page: int, headers: dict) -> Any:
        endpoint = str(url)
        timeout = self.config.transactions_timeout_seconds
        try:
            r = await external_get(client, "transactions", url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise TransactionSourceError("TIMEOUT", "transactions_request_timeout", {
                "endpoint": endpoint, "page": page, "timeout_seconds": timeout, "cause": str(exc),
            }) from exc
        except httpx.HTTPError as exc:
            raise TransactionSourceError("NETWORK", "transactions_request_network_error", {
                "endpoint": endpoint, "page": page, "cause": f"{type(exc).__name__}:{exc}",
            }) from exc

        if not r.is_success:
            raise TransactionSourceError("HTTP", f"transactions_request_failed_{r.status_code}", {
                "endpoint": endpoint, "page": page, "status": r.status_code,
            })

        try:
            return r.json()
        except ValueError as exc:
            raise TransactionSourceError("INVALID_PAYLOAD", "transactions_invalid_payload", {
                "endpoint": endpoint, "page": page, "cause": str(exc),
            }) from exc


_MOCK_TYPE_LABELS = {
    PropertyType.APARTMENT: "Appartement",
    PropertyType.HOUSE: "Maison",
    PropertyType.BUILDING: "Immeuble",
    PropertyType.LAND: "Terrain",
    PropertyType.COMMERCIAL: "Local industriel. commercial ou assimile",
    PropertyType.OTHER: "Dependance",
}


class MockTransactions(TransactionsClient):
    """
    Synthetic registry rows around the center, 25 per kilometre ring, run
    through the same normalization as live rows. Row ids depend only on the
    center and the row's ring, so wider radii re-include inner rows.
    """
    rows_per_ring = 25

    async def search(self, query: SearchQuery) -> List[ComparableTransaction]:
        seed = fnv1a_32(f"{query.center.lat:.4f},{query.center.lon:.4f}")
        ring_count = max(1, math.ceil(query.radius_m / 1000))
        window_days = max(1, (query.to_date - query.from_date).days)
        rows = []
        for i in range(ring_count * self.rows_per_ring):
            r1, r2, r3, r4 = seeded_rand(seed + i, 4)
            distance_m = 1000 * (i // self.rows_per_ring) + r1 * 1000
            bearing = r2 * 2 * math.pi
            surface = round(25 + r3 * 120, 1)
            price_per_m2 = 3500 + r4 * 3000
            rows.append({
                "id": f"mock-{seed}-{i}",
                "date_mutation": (query.to_date - timedelta(days=int(r1 * 7919) % window_days)).isoformat(),
                "valeur_fonciere": round(surface * price_per_m2, -2),
                "type_local": _MOCK_TYPE_LABELS[query.property_type],
                "surface_reelle_bati": surface,
                "surface_terrain": round(surface * 4, 1),
                "latitude": query.center.lat + distance_m * math.cos(bearing) / METERS_PER_DEGREE,
                "longitude": query.center.lon + distance_m * math.sin(bearing) / (
                    METERS_PER_DEGREE * max(abs(math.cos(math.radians(query.center.lat))), 0.01)
                ),
            })
        return to_transactions(rows, query)


def transactions_client(conf: Settings = settings, config: ComparablesConfig | None = None) -> TransactionsClient:
    if conf.TRANSACTIONS_PROVIDER == "mock":
        return MockTransactions()
    return HttpTransactions(config or conf.comparables_config())
