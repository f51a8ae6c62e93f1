import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from ..core.config import ComparablesConfig
from ..core.errors import InvalidPropertyTypeError, SourceUnavailableError, TransactionSourceError
from ..core.metrics import COMPARABLES_CACHE
from ..data.base import ComparableTransaction, GeoPoint, PropertyType, SearchQuery, TransactionsClient
from ..db.store import Database, PropertyRecord, cache_signature
from ..schemas import ComparablesResponse, SearchInfo, SubjectPricing, SurfaceRange
from . import stats
from .comparables import (
    declared_property_type,
    filter_by_price_per_m2,
    filter_by_surface_range,
    price_per_m2_floor,
    subject_asking_price,
    subject_surface,
    surface_bounds,
    to_point,
)
from .property_service import PropertyService

log = logging.getLogger(__name__)


def years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:  # 29 February
        return day.replace(year=day.year - years, day=28)


@dataclass
class SearchOutcome:
    transactions: list[ComparableTransaction]
    from_date: date
    to_date: date
    radii_tried_m: list[int] = field(default_factory=list)
    final_radius_m: Optional[int] = None
    partial: bool = False


class ComparablesService:
    """
    Orchestrates:
      property -> coordinates -> query cache -> adaptive radius search
      -> filters -> statistics -> query cache write
    Every step is awaited in turn: the accumulated count gates the next radius.
    Database calls block, so they run in the threadpool.
    """
    def __init__(
        self,
        db: Database,
        properties: PropertyService,
        transactions: TransactionsClient,
        config: ComparablesConfig,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.properties = properties
        self.transactions = transactions
        self.config = config
        self.today = today

    def resolve_property_type(self, record: PropertyRecord, requested: Optional[str]) -> PropertyType:
        if requested:
            property_type = PropertyType.from_string(requested)
            if property_type is None:
                raise InvalidPropertyTypeError(
                    "Unknown property type", {"property_type": requested,
                                              "allowed": [t.value for t in PropertyType]}
                )
            return property_type
        property_type = declared_property_type(record.details)
        if property_type is None:
            raise InvalidPropertyTypeError(
                "Property has no declared type; pass one explicitly", {"property_id": record.id}
            )
        return property_type

    async def get_comparables(
        self,
        org_id: str,
        property_id: str,
        property_type: Optional[str] = None,
        force_refresh: bool = False,
        surface_range: Optional[SurfaceRange] = None,
    ) -> ComparablesResponse:
        """
        `surface_range` replaces the range derived from the subject surface
        and gets its own cache entry.
        """
        record = await self.properties.get(org_id, property_id)
        resolved_type = self.resolve_property_type(record, property_type)
        center = await self.properties.ensure_coordinates(record)

        signature, cache_key = cache_signature(
            self.config, org_id, record.id, resolved_type, center,
            (surface_range.min_m2, surface_range.max_m2) if surface_range else None,
        )
        if not force_refresh:
            entry = await run_in_threadpool(self.db.query_cache.get_valid, cache_key)
            if entry is not None:
                COMPARABLES_CACHE.labels(result="hit").inc()
                cached = ComparablesResponse.model_validate_json(entry.response_json)
                return cached.model_copy(update={"source": "CACHE"})
        COMPARABLES_CACHE.labels(result="refresh" if force_refresh else "miss").inc()

        response = await self.compute(record, resolved_type, center, surface_range)
        await run_in_threadpool(
            self.db.query_cache.upsert,
            org_id=org_id,
            property_id=record.id,
            cache_key=cache_key,
            signature=signature,
            response_json=response.model_dump_json(),
            final_radius_m=response.search.final_radius_m or 0,
            comparables_count=response.summary.count,
            target_reached=response.search.target_reached,
        )
        return response

    async def search(self, center: GeoPoint, property_type: PropertyType) -> SearchOutcome:
        """
        Walk the radius ladder until the target count is reached.
        A failure before any row was collected is fatal; a later one keeps
        what was already collected.
        """
        to_date = self.today()
        from_date = years_before(to_date, self.config.lookback_years)
        outcome = SearchOutcome(transactions=[], from_date=from_date, to_date=to_date)
        accumulated: dict[str, ComparableTransaction] = {}

        for radius in self.config.radius_ladder_m:
            outcome.radii_tried_m.append(radius)
            query = SearchQuery(center, radius, property_type, from_date, to_date)
            try:
                found = await self.transactions.search(query)
            except TransactionSourceError as exc:
                if not accumulated:
                    raise SourceUnavailableError.from_source_error(exc) from exc
                log.warning(
                    "transactions search stopped early",
                    extra={"radius_m": radius, "kind": exc.kind, "kept": len(accumulated), **exc.details},
                )
                outcome.partial = True
                break

            fresh = []
            for tx in found:
                if from_date <= tx.sale_date <= to_date and tx.source_row_hash not in accumulated:
                    accumulated[tx.source_row_hash] = tx
                    fresh.append(tx)
            await run_in_threadpool(self.db.transactions.insert_ignore, fresh)
            outcome.final_radius_m = radius

            if len(accumulated) >= self.config.target_count:
                break

        outcome.transactions = list(accumulated.values())
        return outcome

    async def compute(
        self,
        record: PropertyRecord,
        property_type: PropertyType,
        center: GeoPoint,
        surface_range: Optional[SurfaceRange] = None,
    ) -> ComparablesResponse:
        outcome = await self.search(center, property_type)

        surface = subject_surface(record.details, property_type)
        bounds = surface_range or surface_bounds(surface, self.config)
        floor = price_per_m2_floor(self.config, property_type)
        filtered = filter_by_price_per_m2(filter_by_surface_range(outcome.transactions, bounds), floor)
        filtered.sort(key=lambda tx: (tx.sale_date, tx.source_row_hash), reverse=True)
        points = [to_point(tx, center) for tx in filtered]

        regression = stats.linear_regression(points)
        asking = subject_asking_price(record)
        predicted = stats.predict_price(regression, surface)
        deviation, position = stats.pricing_position(asking, predicted)

        log.info(
            "comparables computed",
            extra={"property_id": record.id, "fetched": len(outcome.transactions),
                   "kept": len(points), "radii_m": outcome.radii_tried_m, "partial": outcome.partial},
        )
        return ComparablesResponse(
            property_id=record.id,
            property_type=property_type,
            source="LIVE",
            generated_at=datetime.now(timezone.utc),
            search=SearchInfo(
                center_lat=center.lat,
                center_lon=center.lon,
                radii_tried_m=outcome.radii_tried_m,
                final_radius_m=outcome.final_radius_m,
                target_count=self.config.target_count,
                target_reached=len(outcome.transactions) >= self.config.target_count,
                partial=outcome.partial,
                lookback_years=self.config.lookback_years,
                from_date=outcome.from_date,
                to_date=outcome.to_date,
                fetched_count=len(outcome.transactions),
                surface_range=bounds,
                surface_range_overridden=surface_range is not None,
                min_price_per_m2=floor,
            ),
            summary=stats.summarize(points),
            regression=regression,
            subject=SubjectPricing(
                surface_m2=surface,
                asking_price=asking,
                predicted_price=predicted,
                deviation_pct=deviation,
                pricing_position=position,
            ),
            market_trend=stats.market_trend(points, self.config.trend_years),
            points=points,
        )
