import logging

from starlette.concurrency import run_in_threadpool

from ..core.errors import MissingCoordinatesError, PropertyNotFoundError
from ..data.base import GeocodeClient, GeoPoint
from ..db.store import PropertyRecord, PropertyStore
from ..schemas import PropertyCreate
from .comparables import cached_coordinates, with_coordinates

log = logging.getLogger(__name__)


class PropertyService:
    """
    The slice of property CRUD the valuation engine relies on: reading records
    and caching geocoded coordinates inside the attribute bag.
    Store calls block, so they run in the threadpool.
    """
    def __init__(self, store: PropertyStore, geocoder: GeocodeClient):
        self.store = store
        self.geocoder = geocoder

    async def create(self, org_id: str, payload: PropertyCreate) -> PropertyRecord:
        details = dict(payload.details)
        point = await self.geocoder.find_coordinates(
            payload.address or "", payload.postal_code or "", payload.city or ""
        )
        if point is not None:
            details = with_coordinates(details, point)
        return await run_in_threadpool(
            self.store.create,
            org_id=org_id,
            title=payload.title,
            address=payload.address,
            postal_code=payload.postal_code,
            city=payload.city,
            price=payload.price,
            details=details,
        )

    async def get(self, org_id: str, property_id: str) -> PropertyRecord:
        record = await run_in_threadpool(self.store.get, org_id, property_id)
        if record is None:
            raise PropertyNotFoundError("Property not found", {"property_id": property_id})
        return record

    async def save_details(self, record: PropertyRecord, details: dict) -> None:
        await run_in_threadpool(self.store.update_details, record.org_id, record.id, details)
        record.details = details

    async def ensure_coordinates(self, record: PropertyRecord) -> GeoPoint:
        """Cached coordinates, else geocode now and cache them; no location is an error."""
        point = cached_coordinates(record.details)
        if point is not None:
            return point

        point = await self.geocoder.find_coordinates(
            record.address or "", record.postal_code or "", record.city or ""
        )
        if point is None:
            raise MissingCoordinatesError(
                "Property has no geocoded location; check its address, postal code and city",
                {"property_id": record.id},
            )
        await self.save_details(record, with_coordinates(record.details, point))
        log.info("property geocoded", extra={"property_id": record.id})
        return point
