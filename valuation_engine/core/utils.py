import hashlib
import math
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Iterable, Mapping

_MISSING = object()
_DD_MM_YYYY = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")


def normalize_text(value: str) -> str:
    """Strip diacritics and lowercase: 'Econ\u00f4me' -> 'econome'."""
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def sanitize_text(value: Any) -> str | None:
    """Trimmed string or None for non-strings and blanks."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def to_finite_number(value: Any) -> float | None:
    """
    Lenient numeric coercion for open-data fields:
    - numbers pass through when finite
    - strings may carry spaces ("250 000") and a decimal comma ("49,5")
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        normalized = re.sub(r"\s+", "", value).replace(",", ".", 1)
        if not normalized:
            return None
        try:
            parsed = float(normalized)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_date(value: Any) -> date | None:
    """Accepts date/datetime objects, ISO strings and DD/MM/YYYY."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    m = _DD_MM_YYYY.match(raw)
    try:
        if m:
            day, month, year = (int(g) for g in m.groups())
            return date(year, month, day)
        if len(raw) >= 10:
            return date.fromisoformat(raw[:10])
    except ValueError:
        return None
    return None


def first_present(row: Mapping[str, Any], keys: Iterable[str]) -> Any:
    """Value of the first key present in `row` (even if null), else None."""
    for key in keys:
        value = row.get(key, _MISSING)
        if value is not _MISSING:
            return value
    return None


def sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    r = 6_371_000.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))


def fnv1a_32(s: str) -> int:
    """Deterministic, fast hash for seed generation."""
    h = 0x811c9dc5
    for c in s.encode("utf-8"):
        h ^= c
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def seeded_rand(seed: int, n: int = 1) -> list[float]:
    """
    Stateless pseudo-random generator (Mulberry32-like) so
    same seed gives the same outputs without storing PRNG state.
    """
    out = []
    t = (seed + 0x6D2B79F5) & 0xFFFFFFFF
    for _ in range(n):
        t = (t ^ (t >> 15)) * (t | 1) & 0xFFFFFFFF
        t ^= t + ((t ^ (t >> 7)) * (t | 61) & 0xFFFFFFFF)
        r = ((t ^ (t >> 14)) & 0xFFFFFFFF) / 4294967296.0
        out.append(r)
    return out


def weak_etag(payload_bytes: bytes) -> str:
    """Weak ETag for client-side conditional requests."""
    h = hashlib.sha256(payload_bytes).hexdigest()[:24]
    return f'W/"{h}"'
