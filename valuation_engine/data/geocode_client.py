import logging
from typing import Any, Optional

import httpx

from .base import GeocodeClient, GeoPoint
from ..core.config import Settings, settings
from ..core.http import client_session, external_get
from ..core.utils import fnv1a_32, seeded_rand, sanitize_text, to_finite_number

log = logging.getLogger(__name__)


def parse_feature_coordinates(payload: Any) -> Optional[GeoPoint]:
    """First feature's `geometry.coordinates` ([lon, lat]) when both are finite and in range."""
    if not isinstance(payload, dict):
        return None
    features = payload.get("features")
    if not isinstance(features, list) or not features or not isinstance(features[0], dict):
        return None
    geometry = features[0].get("geometry")
    if not isinstance(geometry, dict):
        return None
    coordinates = geometry.get("coordinates")
    if not isinstance(coordinates, list) or len(coordinates) < 2:
        return None
    lon, lat = coordinates[0], coordinates[1]
    if isinstance(lon, bool) or isinstance(lat, bool):
        return None
    if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
        return None
    lon, lat = to_finite_number(lon), to_finite_number(lat)
    if lon is None or lat is None:
        return None
    if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        return None
    return GeoPoint(lat=lat, lon=lon)


class MockGeocode(GeocodeClient):
    """
    Mock geocoder that turns the address string into a stable lat/lon
    inside metropolitan France. Deterministic and offline.
    """
    async def find_coordinates(self, address: str, postal_code: str, city: str) -> Optional[GeoPoint]:
        parts = [sanitize_text(address), sanitize_text(postal_code), sanitize_text(city)]
        if not all(parts):
            return None
        seed = fnv1a_32(" ".join(parts).lower())
        lat = 43.3 + seeded_rand(seed, 1)[0] * (50.6 - 43.3)
        lon = -1.2 + seeded_rand(seed + 1, 1)[0] * (7.2 + 1.2)
        return GeoPoint(lat=round(lat, 6), lon=round(lon, 6))


class HttpGeocode(GeocodeClient):
    """
    National address-search API (`{features: [{geometry: {coordinates: [lon, lat]}}]}`).
    Fails soft: any network, HTTP, payload or range problem yields None.
    """
    def __init__(self, base_url: str, timeout: float = 6.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    async def find_coordinates(self, address: str, postal_code: str, city: str) -> Optional[GeoPoint]:
        address, postal_code, city = sanitize_text(address), sanitize_text(postal_code), sanitize_text(city)
        if not address or not postal_code or not city:
            return None

        params = {
            "q": f"{address} {postal_code} {city}",
            "postcode": postal_code,
            "city": city,
            "limit": 1,
            "autocomplete": 0,
        }
        try:
            async with client_session(self._client) as client:
                r = await external_get(
                    client, "geocoding", self.base_url,
                    params=params, headers={"accept": "application/json"}, timeout=self.timeout,
                )
                r.raise_for_status()
                payload = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("geocoding failed", extra={"city": city, "postal_code": postal_code, "error": str(exc)})
            return None
        return parse_feature_coordinates(payload)


def geocode_client(conf: Settings = settings) -> GeocodeClient:
    """
    Factory picks mock or http based on env flags.
    """
    if conf.GEO_PROVIDER == "mock":
        return MockGeocode()
    return HttpGeocode(conf.GEO_BASE_URL, timeout=conf.GEO_TIMEOUT_SECONDS)
