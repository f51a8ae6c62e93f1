"""
Valuation brief: the structured text handed to the AI provider.

It merges the property's declared attributes, the filtered comparables and
their statistics, the market trend, and the output-format contract the
provider must follow for its justification.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

from ..core.utils import sanitize_text, to_finite_number
from ..db.store import PropertyRecord
from ..schemas import ComparablesResponse, Criterion
from .comparables import detail, subject_asking_price

MAX_KEY_CRITERIA = 5
MAX_OUTPUT_FORMAT_LENGTH = 20_000

EURO = "\u20ac"
SQM = "m\u00b2"

REFERENCE_VALUE_LABEL = "Reference value"

DEFAULT_OUTPUT_FORMAT = """# Property value analysis

## 1. Executive summary

**Estimated market value:** `XXX XXX EUR`
**Recommended marketing range:** `XXX XXX EUR - XXX XXX EUR`
**Confidence level:** _High / Medium / Low_, with one sentence on why.

## 2. Key facts

- **Property type:**
- **Location:**
- **Living area:** XX m2
- **Land area:** XX m2
- **Condition and standing:**
- **Energy rating:**

## 3. Comparables analysis

- **Search radius and period:**
- **Sales retained:**
- **Median price and median price per m2:**
- **Model price (regression on surface):**

## 4. Adjustments

| Factor | Estimated impact | Rationale |
|--------|------------------|-----------|
| | +/- X % | |

## 5. Market coherence

- **Current asking price:**
- **Gap to the estimate:** +/- X %
- **Reading:** under-valued / in line with the market / over-valued

## 6. Recommendation

- **Suggested listing price:**
- **Probable negotiation floor:**
"""


@dataclass(frozen=True)
class Field:
    category: str
    key: str
    label: str
    unit: Optional[str] = None


KEY_CRITERIA = (
    Field("regulation", "dpeClass", "Energy rating (DPE)"),
    Field("characteristics", "standing", "Standing"),
    Field("amenities", "pool", "Pool"),
    Field("characteristics", "livingArea", "Living area", SQM),
    Field("characteristics", "landArea", "Land area", SQM),
    Field("characteristics", "hasCracks", "Structural cracks"),
    Field("regulation", "asbestos", "Asbestos present"),
    Field("characteristics", "hasVisAVis", "Overlooked by neighbours"),
    Field("characteristics", "noiseLevel", "Noise level"),
    Field("characteristics", "foundationUnderpinningDone", "Foundation repair done"),
    Field("characteristics", "condition", "Condition"),
    Field("characteristics", "lastRenovationYear", "Last renovation year"),
    Field("characteristics", "rooms", "Rooms"),
)

SECONDARY_FACTORS = (
    Field("characteristics", "sanitationType", "Sanitation"),
    Field("characteristics", "septicTankCompliant", "Septic tank compliant"),
    Field("characteristics", "crawlSpacePresence", "Crawl space"),
    Field("amenities", "coveredGarage", "Covered garage"),
    Field("amenities", "carport", "Carport"),
    Field("amenities", "photovoltaicPanels", "Solar panels"),
    Field("amenities", "photovoltaicAnnualIncome", "Solar panels annual income", f"{EURO}/year"),
    Field("amenities", "fencing", "Fencing"),
    Field("copropriete", "sharedPool", "Shared pool"),
    Field("copropriete", "sharedTennis", "Shared tennis court"),
    Field("copropriete", "sharedMiniGolf", "Shared mini-golf"),
    Field("copropriete", "privateSeaAccess", "Private sea access"),
    Field("copropriete", "guardedResidence", "Guarded residence"),
    Field("copropriete", "fencedResidence", "Fenced residence"),
)

AGENT_NOTES = Field("characteristics", "agentAdditionalDetails", "Agent additional details")

ATTRIBUTE_CATEGORIES = (
    "general", "location", "characteristics", "finance", "regulation", "amenities", "copropriete",
)

# Labels and units for the "all declared attributes" listing; other keys are humanized
_KNOWN_FIELDS = {(f.category, f.key): f for f in KEY_CRITERIA + SECONDARY_FACTORS + (AGENT_NOTES,)}
_EXTRA_UNITS = {
    "carrezArea": SQM,
    "salePriceTtc": EURO,
    "monthlyCharges": EURO,
    "propertyTax": EURO,
}

_ENUM_RE = re.compile(r"^[A-Z0-9]+(_[A-Z0-9]+)*$")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def format_number(value: float) -> str:
    """Thousands separated by spaces, decimals only when present: 402500 -> '402 500'."""
    if float(value).is_integer():
        return f"{int(value):,}".replace(",", " ")
    return f"{value:,.2f}".replace(",", " ")


def format_money(value: Optional[float]) -> str:
    return f"{format_number(value)} {EURO}" if value is not None else "n/a"


def humanize_key(key: str) -> str:
    words = _CAMEL_RE.sub(" ", key).lower()
    return words[:1].upper() + words[1:]


def format_value(value: Any, unit: Optional[str] = None) -> Optional[str]:
    """Display form of a declared attribute, or None when it carries nothing."""
    if value is None or isinstance(value, dict):
        return None
    flag = _as_bool(value)
    if flag is not None:
        return "Yes" if flag else "No"
    if isinstance(value, list):
        items = [v for v in (format_value(item) for item in value) if v]
        return ", ".join(items) or None
    if isinstance(value, (int, float)):
        number = to_finite_number(value)
        if number is None:
            return None
        if unit is None and 1000 <= number <= 2100 and float(number).is_integer():
            return str(int(number))  # years stay unseparated
        text = format_number(number)
        return f"{text} {unit}" if unit else text
    text = sanitize_text(value)
    if not text:
        return None
    if _ENUM_RE.match(text):
        text = text.replace("_", " ").lower()
        text = text[:1].upper() + text[1:]
    return f"{text} {unit}" if unit else text


def _field_line(field: Field, details: dict) -> Optional[str]:
    value = format_value(detail(details, field.category, field.key), field.unit)
    return f"- {field.label}: {value}" if value is not None else None


def key_criteria(details: dict) -> list[Criterion]:
    """The first few curated criteria the property actually declares."""
    out: list[Criterion] = []
    for field in KEY_CRITERIA:
        value = format_value(detail(details, field.category, field.key), field.unit)
        if value is None:
            continue
        out.append(Criterion(key=field.key, label=field.label, value=value))
        if len(out) == MAX_KEY_CRITERIA:
            break
    return out


def declared_attributes(details: dict) -> list[str]:
    lines: list[str] = []
    for category in ATTRIBUTE_CATEGORIES:
        group = details.get(category)
        if not isinstance(group, dict):
            continue
        entries = []
        for key, raw in group.items():
            known = _KNOWN_FIELDS.get((category, key))
            label = known.label if known else humanize_key(key)
            unit = known.unit if known else _EXTRA_UNITS.get(key)
            value = format_value(raw, unit)
            if value is not None:
                entries.append(f"  - {label}: {value}")
        if entries:
            lines.append(f"- {humanize_key(category)}:")
            lines.extend(entries)
    return lines


def secondary_factors(details: dict) -> list[str]:
    lines = [line for line in (_field_line(f, details) for f in SECONDARY_FACTORS) if line]
    notes = sanitize_text(detail(details, AGENT_NOTES.category, AGENT_NOTES.key))
    if notes:
        lines.append(f"- {AGENT_NOTES.label}: {notes}")
    return lines


def reference_value(comparables: ComparablesResponse) -> Optional[int]:
    """
    Value used when the provider gives none:
    median price per m2 x subject surface, else median price, else model price,
    else asking price.
    """
    summary, subject = comparables.summary, comparables.subject
    if summary.median_price_per_m2 and subject.surface_m2:
        return int(round(summary.median_price_per_m2 * subject.surface_m2))
    if summary.median_price:
        return summary.median_price
    if subject.predicted_price:
        return subject.predicted_price
    return subject.asking_price


def resolve_output_format(configured: Optional[str]) -> str:
    text = (configured or "").strip()
    if not text:
        return DEFAULT_OUTPUT_FORMAT
    return text[:MAX_OUTPUT_FORMAT_LENGTH]


def _section(title: str, lines: list[str], empty: str = "- none declared") -> list[str]:
    return [f"## {title}", *(lines or [empty]), ""]


def build_brief(
    record: PropertyRecord,
    comparables: ComparablesResponse,
    criteria: list[Criterion],
    output_format: str,
    recent_sales: int = 5,
    agent_adjusted_price: Optional[int] = None,
) -> str:
    details = record.details
    search, summary = comparables.search, comparables.summary
    regression, subject = comparables.regression, comparables.subject

    property_lines = [
        f"- Title: {record.title}",
        f"- Type: {comparables.property_type.value}",
        f"- Address: {', '.join(p for p in (record.address, record.postal_code, record.city) if p) or 'n/a'}",
        f"- Surface used for comparison: {format_value(subject.surface_m2, SQM) or 'n/a'}",
        f"- Asking price: {format_money(subject.asking_price)}"
        + (" (adjusted by the agent)" if agent_adjusted_price is not None else ""),
    ]
    if agent_adjusted_price is not None:
        property_lines.append(f"- Listed price: {format_money(subject_asking_price(record))}")

    bounds = search.surface_range
    filter_lines = [
        f"- Radii tried: {', '.join(str(r) for r in search.radii_tried_m)} m"
        f" (final {search.final_radius_m if search.final_radius_m is not None else 'n/a'} m)",
        f"- Period: {search.from_date.isoformat()} to {search.to_date.isoformat()}"
        f" ({search.lookback_years} years)",
        f"- Surface range: {format_number(bounds.min_m2)} to {format_number(bounds.max_m2)} {SQM}"
        + (" (set by the agent)" if search.surface_range_overridden else "")
        if bounds else "- Surface range: none (subject surface unknown)",
        f"- Minimum price per {SQM}: {format_money(search.min_price_per_m2)}",
        f"- Target count: {search.target_count} (reached: {'Yes' if search.target_reached else 'No'})",
    ]
    if search.partial:
        filter_lines.append("- Note: the registry failed during the search, results are partial")

    summary_lines = [
        f"- Comparables retained: {summary.count}",
        f"- Median price: {format_money(summary.median_price)}",
        f"- Lower quartile: {format_money(summary.q1_price)}",
        f"- Upper quartile: {format_money(summary.q3_price)}",
        f"- Price range: {format_money(summary.min_price)} to {format_money(summary.max_price)}",
        f"- Median price per {SQM}: {format_money(summary.median_price_per_m2)}",
        f"- Price per {SQM} quartiles: {format_money(summary.q1_price_per_m2)} to {format_money(summary.q3_price_per_m2)}",
    ]

    if regression.slope is not None:
        model_lines = [
            f"- price = {regression.slope} x surface + {regression.intercept}"
            f" (r2 {regression.r2}, {regression.points_used} points)",
            f"- Predicted price: {format_money(subject.predicted_price)}",
            f"- Asking price deviation: {subject.deviation_pct if subject.deviation_pct is not None else 'n/a'} %"
            f" ({subject.pricing_position})",
        ]
    else:
        model_lines = ["- Not enough comparables with distinct surfaces for a model"]

    trend_lines = [
        f"- {t.year}: {t.count} sales, {format_money(t.avg_price_per_m2)}/{SQM}"
        + (f" ({t.price_per_m2_change_pct:+} % vs previous year)" if t.price_per_m2_change_pct is not None else "")
        for t in comparables.market_trend
    ]

    sales_lines = [
        f"- {p.sale_date.isoformat()}: {format_money(p.sale_price)}, {format_number(p.surface_m2)} {SQM},"
        f" {format_money(p.price_per_m2)}/{SQM}"
        + (f", {p.city}" if p.city else "")
        + (f", {format_number(p.distance_m)} m away" if p.distance_m is not None else "")
        for p in comparables.points[:recent_sales]
    ]

    reference = reference_value(comparables)
    parts = [
        "# Valuation brief",
        "",
        "You are a real estate valuation expert. Estimate the market value of the property below",
        "from its attributes and the recorded sales around it.",
        "",
        *_section("Property", property_lines),
        *_section("Key criteria", [f"- {c.label}: {c.value}" for c in criteria]),
        *_section("All declared attributes", declared_attributes(details)),
        *_section("Secondary valuation factors", secondary_factors(details)),
        *_section("Comparable filters", filter_lines),
        *_section("Filtered comparables summary", summary_lines),
        *_section("Regression model", model_lines),
        *_section("Market trend over 5 years", trend_lines, "- no sales recorded"),
        *_section("Most recent sales", sales_lines, "- no sales recorded"),
        f"{REFERENCE_VALUE_LABEL}: {reference if reference is not None else 'n/a'}",
        "",
        "## Expected output format for the justification key",
        "Answer with a JSON object: {\"calculatedValuation\": <number in EUR>, \"justification\": <markdown>}.",
        "The format below only defines the structure of the justification key.",
        "",
        output_format,
    ]
    return "\n".join(parts)
