import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from ..core.config import Settings, settings
from ..core.errors import ValuationUnavailableError
from ..core.metrics import VALUATION_FALLBACKS
from ..core.utils import sanitize_text
from ..db.store import PropertyRecord
from ..models.base import ProviderValuation, ValuationProvider
from ..models.mock_model import MockModel
from ..models.openai_model import OpenAIModel
from ..schemas import ComparablesResponse, Criterion, PromptResponse, ValuationRequest, ValuationResponse
from . import stats
from .comparables_service import ComparablesService
from .prompt import SQM, build_brief, format_money, key_criteria, reference_value, resolve_output_format
from .property_service import PropertyService

log = logging.getLogger(__name__)

SNAPSHOT_KEY = "valuationAiSnapshot"


def valuation_provider(conf: Settings = settings) -> ValuationProvider:
    if conf.MODEL_PROVIDER == "openai":
        return OpenAIModel()
    return MockModel()


def positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    rounded = int(round(value))
    return rounded if rounded > 0 else None


def ensure_markdown(justification: Any, value: int, comparables: ComparablesResponse) -> str:
    """Keep the provider text when it is structured markdown, otherwise synthesize a minimal block."""
    text = sanitize_text(justification) or ""
    if any(line.lstrip().startswith("#") for line in text.splitlines()):
        return text

    lines = [
        "## Valuation",
        "",
        f"- Estimated value: {format_money(value)}",
        f"- Comparables used: {comparables.summary.count}",
        f"- Median price per {SQM}: {format_money(comparables.summary.median_price_per_m2)}",
    ]
    if text:
        lines += ["", text]
    return "\n".join(lines)


def with_asking_price(comparables: ComparablesResponse, asking: int) -> ComparablesResponse:
    """Re-position the subject against the model using the agent's adjusted price."""
    subject = comparables.subject
    deviation, position = stats.pricing_position(asking, subject.predicted_price)
    return comparables.model_copy(update={"subject": subject.model_copy(update={
        "asking_price": asking, "deviation_pct": deviation, "pricing_position": position,
    })})


class ValuationService:
    """
    Orchestrates:
      property -> comparables (cached) -> criteria + brief -> AI provider
      -> sanitized value and justification -> snapshot on the property
    """
    def __init__(
        self,
        properties: PropertyService,
        comparables: ComparablesService,
        provider: ValuationProvider,
        output_format: Optional[str] = None,
        recent_sales: int = 5,
    ):
        self.properties = properties
        self.comparables = comparables
        self.provider = provider
        self.output_format = resolve_output_format(output_format)
        self.recent_sales = recent_sales

    async def _context(
        self, org_id: str, property_id: str, request: Optional[ValuationRequest]
    ) -> tuple[PropertyRecord, ComparablesResponse, list[Criterion], str]:
        request = request or ValuationRequest()
        filters = request.comparable_filters
        comparables = await self.comparables.get_comparables(
            org_id, property_id, filters.property_type, surface_range=filters.surface_range()
        )
        if request.agent_adjusted_price is not None:
            comparables = with_asking_price(comparables, request.agent_adjusted_price)
        # Re-read: the comparables step may have cached coordinates on the record
        record = await self.properties.get(org_id, property_id)
        criteria = key_criteria(record.details)
        prompt = build_brief(
            record, comparables, criteria, self.output_format, self.recent_sales,
            agent_adjusted_price=request.agent_adjusted_price,
        )
        return record, comparables, criteria, prompt

    async def build_prompt(
        self, org_id: str, property_id: str, request: Optional[ValuationRequest] = None
    ) -> PromptResponse:
        record, _, _, prompt = await self._context(org_id, property_id, request)
        return PromptResponse(property_id=record.id, prompt_used=prompt)

    async def compute(
        self, org_id: str, property_id: str, request: Optional[ValuationRequest] = None
    ) -> ValuationResponse:
        record, comparables, criteria, prompt = await self._context(org_id, property_id, request)

        technical_note = None
        try:
            result = await self.provider.compute_valuation(prompt)
        except Exception as exc:
            # Provider outages degrade to the market-data value
            log.warning("valuation provider failed", extra={"property_id": record.id}, exc_info=True)
            VALUATION_FALLBACKS.labels(reason="provider_error").inc()
            result = ProviderValuation(None, "")
            technical_note = f"> Technical note: the AI provider was unavailable ({type(exc).__name__}); " \
                             "the value falls back to the comparables statistics."

        value = positive_int(result.calculated_valuation)
        fallback_used = value is None
        if fallback_used:
            if technical_note is None:
                VALUATION_FALLBACKS.labels(reason="invalid_value").inc()
            value = reference_value(comparables)
        if value is None:
            raise ValuationUnavailableError(
                "Not enough data to value the property",
                {"property_id": record.id},
            )

        justification = ensure_markdown(result.justification, value, comparables)
        if technical_note:
            justification = f"{justification}\n\n{technical_note}"

        generated_at = datetime.now(timezone.utc)
        snapshot = {
            "calculatedValuation": value,
            "justification": justification,
            "generatedAt": generated_at.isoformat(),
            "comparableCountUsed": comparables.summary.count,
            "criteriaUsed": [c.model_dump() for c in criteria],
        }
        await self.properties.save_details(record, {**record.details, SNAPSHOT_KEY: snapshot})
        log.info(
            "valuation computed",
            extra={"property_id": record.id, "value": value, "fallback": fallback_used,
                   "comparables": comparables.summary.count},
        )

        return ValuationResponse(
            property_id=record.id,
            calculated_valuation=value,
            justification=justification,
            generated_at=generated_at,
            comparable_count_used=comparables.summary.count,
            criteria_used=criteria,
            fallback_used=fallback_used,
            prompt_used=prompt,
        )
