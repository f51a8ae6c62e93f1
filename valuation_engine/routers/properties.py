from dataclasses import asdict
from functools import lru_cache

from fastapi import APIRouter, Depends, Header, Query, Response
from starlette.status import HTTP_201_CREATED, HTTP_304_NOT_MODIFIED

from ..core.config import settings
from ..core.security import current_org, rate_limit, require_api_key
from ..core.utils import weak_etag
from ..data.base import GeocodeClient, TransactionsClient
from ..data.geocode_client import geocode_client
from ..data.transactions_client import transactions_client
from ..db.store import Database
from ..models.base import ValuationProvider
from ..schemas import (
    ComparablesResponse,
    PromptResponse,
    PropertyCreate,
    PropertyOut,
    ValuationRequest,
    ValuationResponse,
)
from ..services.comparables_service import ComparablesService
from ..services.property_service import PropertyService
from ..services.valuation_service import ValuationService, valuation_provider

router = APIRouter(dependencies=[Depends(require_api_key), Depends(rate_limit)])


# Process-wide collaborators, built once; tests swap them through dependency_overrides
@lru_cache
def get_database() -> Database:
    return Database(settings.DATABASE_URL, settings.comparables_config())


@lru_cache
def get_geocoder() -> GeocodeClient:
    return geocode_client(settings)


@lru_cache
def get_transactions() -> TransactionsClient:
    return transactions_client(settings)


@lru_cache
def get_provider() -> ValuationProvider:
    return valuation_provider(settings)


def property_service_dep(
    db: Database = Depends(get_database),
    geocoder: GeocodeClient = Depends(get_geocoder),
) -> PropertyService:
    return PropertyService(db.properties, geocoder)


def comparables_service_dep(
    db: Database = Depends(get_database),
    properties: PropertyService = Depends(property_service_dep),
    transactions: TransactionsClient = Depends(get_transactions),
) -> ComparablesService:
    return ComparablesService(db, properties, transactions, settings.comparables_config())


def valuation_service_dep(
    properties: PropertyService = Depends(property_service_dep),
    comparables: ComparablesService = Depends(comparables_service_dep),
    provider: ValuationProvider = Depends(get_provider),
) -> ValuationService:
    return ValuationService(
        properties,
        comparables,
        provider,
        output_format=settings.VALUATION_OUTPUT_FORMAT,
        recent_sales=settings.comparables_config().recent_sales_in_prompt,
    )


@router.post("/properties", response_model=PropertyOut, status_code=HTTP_201_CREATED)
async def create_property(
    body: PropertyCreate,
    org_id: str = Depends(current_org),
    svc: PropertyService = Depends(property_service_dep),
):
    record = await svc.create(org_id, body)
    return asdict(record)


@router.get("/properties/{property_id}", response_model=PropertyOut)
async def get_property(
    property_id: str,
    org_id: str = Depends(current_org),
    svc: PropertyService = Depends(property_service_dep),
):
    return asdict(await svc.get(org_id, property_id))


@router.get("/properties/{property_id}/comparables", response_model=ComparablesResponse)
async def get_comparables(
    property_id: str,
    response: Response,
    property_type: str | None = Query(default=None, alias="propertyType"),
    force_refresh: bool = Query(default=False, alias="forceRefresh"),
    if_none_match: str | None = Header(default=None, alias="if-none-match"),
    org_id: str = Depends(current_org),
    svc: ComparablesService = Depends(comparables_service_dep),
):
    payload = await svc.get_comparables(org_id, property_id, property_type, force_refresh)
    etag = weak_etag(payload.model_dump_json().encode("utf-8"))
    if if_none_match and if_none_match == etag:
        return Response(status_code=HTTP_304_NOT_MODIFIED, headers={"ETag": etag})
    response.headers["ETag"] = etag
    return payload


@router.post("/properties/{property_id}/valuation-ai", response_model=ValuationResponse)
async def post_valuation(
    property_id: str,
    body: ValuationRequest | None = None,
    org_id: str = Depends(current_org),
    svc: ValuationService = Depends(valuation_service_dep),
):
    return await svc.compute(org_id, property_id, body)


@router.post("/properties/{property_id}/valuation-ai/prompt", response_model=PromptResponse)
async def post_valuation_prompt(
    property_id: str,
    body: ValuationRequest | None = None,
    org_id: str = Depends(current_org),
    svc: ValuationService = Depends(valuation_service_dep),
):
    return await svc.build_prompt(org_id, property_id, body)
