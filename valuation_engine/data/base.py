from typing import Any, Optional, Protocol, List
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from ..core.utils import normalize_text

# ----- Data shapes (thin & explicit) -----

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


class PropertyType(str, Enum):
    APARTMENT = "APARTMENT"
    HOUSE = "HOUSE"
    BUILDING = "BUILDING"
    LAND = "LAND"
    COMMERCIAL = "COMMERCIAL"
    OTHER = "OTHER"

    @classmethod
    def from_string(cls, value: Any) -> Optional["PropertyType"]:
        """Case/diacritic-insensitive parse; also accepts the French labels used by the front end."""
        if not isinstance(value, str) or not value.strip():
            return None
        normalized = normalize_text(value.strip()).upper().replace("-", "_").replace(" ", "_")
        normalized = _FRENCH_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return None


_FRENCH_ALIASES = {
    "APPARTEMENT": "APARTMENT",
    "MAISON": "HOUSE",
    "IMMEUBLE": "BUILDING",
    "TERRAIN": "LAND",
    "LOCAL_COMMERCIAL": "COMMERCIAL",
    "AUTRE": "OTHER",
}


@dataclass
class ComparableTransaction:
    """
    One registry sale, normalized. Invariants: sale_price > 0, surface_m2 > 0,
    sale_date inside the window it was fetched for.
    """
    source: str
    source_row_hash: str
    sale_date: date
    sale_price: int
    surface_m2: float
    property_type: PropertyType
    built_surface_m2: Optional[float] = None
    land_surface_m2: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    insee_code: Optional[str] = None
    raw_payload: dict = field(default_factory=dict)

    @property
    def price_per_m2(self) -> float:
        return self.sale_price / self.surface_m2


@dataclass(frozen=True)
class SearchQuery:
    center: GeoPoint
    radius_m: int
    property_type: PropertyType
    from_date: date
    to_date: date
    limit: Optional[int] = None

# ----- Protocols (interfaces) -----

class GeocodeClient(Protocol):
    async def find_coordinates(self, address: str, postal_code: str, city: str) -> Optional[GeoPoint]: ...

class TransactionsClient(Protocol):
    async def search(self, query: SearchQuery) -> List[ComparableTransaction]: ...
