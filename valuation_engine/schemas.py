from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .data.base import PropertyType

PricingPosition = Literal["UNDER_PRICED", "NORMAL", "OVER_PRICED", "UNKNOWN"]


# ----- Properties -----

class PropertyCreate(BaseModel):
    title: str = Field(min_length=1)
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    price: Optional[int] = Field(default=None, ge=0)
    details: dict = Field(default_factory=dict)


class PropertyOut(BaseModel):
    id: str
    org_id: str
    title: str
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    price: Optional[int] = None
    details: dict


# ----- Comparables -----

class ComparablePoint(BaseModel):
    sale_date: date
    surface_m2: float
    land_surface_m2: Optional[float] = None
    sale_price: int
    price_per_m2: float
    distance_m: Optional[float] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class SurfaceRange(BaseModel):
    min_m2: float
    max_m2: float


class SearchInfo(BaseModel):
    center_lat: float
    center_lon: float
    radii_tried_m: list[int]
    final_radius_m: Optional[int] = None
    target_count: int
    target_reached: bool
    partial: bool = False
    lookback_years: int
    from_date: date
    to_date: date
    fetched_count: int
    surface_range: Optional[SurfaceRange] = None
    surface_range_overridden: bool = False
    min_price_per_m2: float


class Summary(BaseModel):
    count: int = 0
    median_price: Optional[int] = None
    q1_price: Optional[int] = None
    q3_price: Optional[int] = None
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    median_price_per_m2: Optional[int] = None
    q1_price_per_m2: Optional[int] = None
    q3_price_per_m2: Optional[int] = None
    min_price_per_m2: Optional[int] = None
    max_price_per_m2: Optional[int] = None


class RegressionResult(BaseModel):
    slope: Optional[float] = None
    intercept: Optional[float] = None
    r2: Optional[float] = None
    points_used: int = 0


class SubjectPricing(BaseModel):
    surface_m2: Optional[float] = None
    asking_price: Optional[int] = None
    predicted_price: Optional[int] = None
    deviation_pct: Optional[float] = None
    pricing_position: PricingPosition = "UNKNOWN"


class TrendYear(BaseModel):
    year: int
    count: int
    avg_price_per_m2: int
    count_change_pct: Optional[float] = None
    price_per_m2_change_pct: Optional[float] = None


class ComparablesResponse(BaseModel):
    property_id: str
    property_type: PropertyType
    source: Literal["LIVE", "CACHE"]
    generated_at: datetime
    search: SearchInfo
    summary: Summary
    regression: RegressionResult
    subject: SubjectPricing
    market_trend: list[TrendYear]
    points: list[ComparablePoint]


# ----- Valuation -----

class ComparableFilters(BaseModel):
    """Agent overrides for the comparables behind a valuation."""
    model_config = ConfigDict(populate_by_name=True)

    property_type: Optional[str] = Field(default=None, alias="propertyType")
    surface_min_m2: Optional[float] = Field(default=None, gt=0, alias="surfaceMinM2")
    surface_max_m2: Optional[float] = Field(default=None, gt=0, alias="surfaceMaxM2")

    @model_validator(mode="after")
    def check_surface_range(self):
        if (self.surface_min_m2 is None) != (self.surface_max_m2 is None):
            raise ValueError("surfaceMinM2 and surfaceMaxM2 must be given together")
        if self.surface_min_m2 is not None and self.surface_min_m2 > self.surface_max_m2:
            raise ValueError("surfaceMinM2 must not exceed surfaceMaxM2")
        return self

    def surface_range(self) -> Optional[SurfaceRange]:
        if self.surface_min_m2 is None:
            return None
        return SurfaceRange(min_m2=self.surface_min_m2, max_m2=self.surface_max_m2)


class ValuationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    comparable_filters: ComparableFilters = Field(default_factory=ComparableFilters, alias="comparableFilters")
    agent_adjusted_price: Optional[int] = Field(default=None, gt=0, alias="agentAdjustedPrice")


class Criterion(BaseModel):
    key: str
    label: str
    value: str


class ValuationResponse(BaseModel):
    property_id: str
    calculated_valuation: int
    justification: str
    generated_at: datetime
    comparable_count_used: int
    criteria_used: list[Criterion]
    fallback_used: bool = False
    prompt_used: str


class PromptResponse(BaseModel):
    property_id: str
    prompt_used: str
