import pytest

from valuation_engine.core.errors import ValuationUnavailableError
from valuation_engine.models.base import ProviderValuation
from valuation_engine.schemas import ComparableFilters, ValuationRequest
from valuation_engine.services.valuation_service import SNAPSHOT_KEY, ValuationService, positive_int


@pytest.fixture
def build_service(property_service, comparables_service_factory, scripted, linear_sales):
    def _build(provider, sales=None, output_format=None) -> ValuationService:
        transactions = scripted({1000: linear_sales if sales is None else sales})
        return ValuationService(
            property_service,
            comparables_service_factory(transactions),
            provider,
            output_format=output_format,
        )
    return _build


class TestPositiveInt:
    @pytest.mark.parametrize("value,expected", [
        (415_000.4, 415_000),
        (415_000.5, 415_000),
        (1, 1),
        (0.6, 1),
        (0.4, None),
        (0, None),
        (-5, None),
        (float("nan"), None),
        (float("inf"), None),
        ("415000", None),
        (True, None),
        (None, None),
    ])
    def test_coercion(self, value, expected):
        assert positive_int(value) == expected


class TestCompute:
    @pytest.mark.asyncio
    async def test_provider_answer_is_kept(self, db, subject, build_service, provider_stub):
        provider = provider_stub(ProviderValuation(415_000.4, "# Analysis\n\nSolid comparables."))
        result = await build_service(provider).compute("org-1", subject.id)

        assert result.calculated_valuation == 415_000
        assert result.justification == "# Analysis\n\nSolid comparables."
        assert result.fallback_used is False
        assert result.comparable_count_used == 5
        assert result.prompt_used == provider.prompts[0]
        assert [c.key for c in result.criteria_used] == ["livingArea", "rooms"]

        snapshot = db.properties.get("org-1", subject.id).details[SNAPSHOT_KEY]
        assert snapshot["calculatedValuation"] == 415_000
        assert snapshot["comparableCountUsed"] == 5
        assert snapshot["criteriaUsed"][0] == {"key": "livingArea", "label": "Living area", "value": "65 m\u00b2"}
        assert snapshot["generatedAt"] == result.generated_at.isoformat()
        assert set(snapshot) == {"calculatedValuation", "justification", "generatedAt", "comparableCountUsed", "criteriaUsed"}

    @pytest.mark.asyncio
    async def test_unusable_value_falls_back_to_median_price_per_m2(self, subject, build_service, provider_stub):
        provider = provider_stub(ProviderValuation(None, "# Analysis\n\nNo figure."))
        result = await build_service(provider).compute("org-1", subject.id)

        assert result.calculated_valuation == 403_000   # 6200 x 65
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_provider_outage_adds_technical_note(self, subject, build_service, provider_stub):
        provider = provider_stub(error=RuntimeError("quota exceeded"))
        result = await build_service(provider).compute("org-1", subject.id)

        assert result.calculated_valuation == 403_000
        assert result.fallback_used is True
        assert result.justification.startswith("## Valuation")
        assert "Technical note" in result.justification
        assert "RuntimeError" in result.justification

    @pytest.mark.asyncio
    async def test_unstructured_text_is_wrapped(self, subject, build_service, provider_stub):
        provider = provider_stub(ProviderValuation(410_000, "Looks fairly priced."))
        result = await build_service(provider).compute("org-1", subject.id)

        lines = result.justification.splitlines()
        assert lines[0] == "## Valuation"
        assert "- Comparables used: 5" in lines
        assert lines[-1] == "Looks fairly priced."

    @pytest.mark.asyncio
    async def test_empty_justification_gets_minimal_block(self, subject, build_service, provider_stub):
        provider = provider_stub(ProviderValuation(410_000, "   "))
        result = await build_service(provider).compute("org-1", subject.id)
        assert result.justification.startswith("## Valuation\n")

    @pytest.mark.asyncio
    async def test_no_comparables_falls_back_to_asking_price(self, subject, build_service, provider_stub):
        provider = provider_stub(ProviderValuation(None, ""))
        result = await build_service(provider, sales=[]).compute("org-1", subject.id)

        assert result.calculated_valuation == 420_000
        assert result.comparable_count_used == 0

    @pytest.mark.asyncio
    async def test_nothing_to_value_from(self, db, build_service, provider_stub):
        record = db.properties.create(
            "org-1", "Unpriced", None, None, None, None,
            {"general": {"propertyType": "APARTMENT"}, "location": {"latitude": 48.85, "longitude": 2.35}},
        )
        provider = provider_stub(ProviderValuation(None, ""))
        with pytest.raises(ValuationUnavailableError):
            await build_service(provider, sales=[]).compute("org-1", record.id)

    @pytest.mark.asyncio
    async def test_snapshot_is_overwritten(self, db, subject, build_service, provider_stub):
        svc = build_service(provider_stub(ProviderValuation(400_000, "# A")))
        await svc.compute("org-1", subject.id)
        svc.provider = provider_stub(ProviderValuation(410_000, "# B"))
        await svc.compute("org-1", subject.id)

        details = db.properties.get("org-1", subject.id).details
        assert details[SNAPSHOT_KEY]["calculatedValuation"] == 410_000
        assert details["characteristics"]["livingArea"] == 65


class TestAgentOverrides:
    @pytest.mark.asyncio
    async def test_filters_value_an_untyped_property(self, db, paris, build_service, provider_stub):
        record = db.properties.create("org-1", "Untyped", None, None, None, 420_000, {
            "location": {"latitude": paris.lat, "longitude": paris.lon},
            "characteristics": {"livingArea": 65},
        })
        request = ValuationRequest(
            comparable_filters=ComparableFilters(property_type="appartement", surface_min_m2=55, surface_max_m2=70),
        )
        result = await build_service(provider_stub(ProviderValuation(None, ""))).compute("org-1", record.id, request)

        assert result.comparable_count_used == 3
        assert result.calculated_valuation == 403_000   # 6200 x 65
        assert "- Type: APARTMENT" in result.prompt_used

    @pytest.mark.asyncio
    async def test_adjusted_price_repositions_the_subject(self, subject, build_service, provider_stub):
        request = ValuationRequest(agent_adjusted_price=450_000)
        result = await build_service(provider_stub()).build_prompt("org-1", subject.id, request)

        prompt = result.prompt_used
        assert "- Asking price: 450 000 \u20ac (adjusted by the agent)" in prompt
        assert "- Listed price: 420 000 \u20ac" in prompt
        assert "- Asking price deviation: 11.8 % (OVER_PRICED)" in prompt

    @pytest.mark.asyncio
    async def test_adjusted_price_is_the_last_resort_value(self, subject, build_service, provider_stub):
        request = ValuationRequest(agent_adjusted_price=450_000)
        result = await build_service(provider_stub(ProviderValuation(None, "")), sales=[]).compute(
            "org-1", subject.id, request
        )
        assert result.calculated_valuation == 450_000


class TestPrompt:
    @pytest.mark.asyncio
    async def test_brief_sections(self, subject, build_service, provider_stub):
        provider = provider_stub()
        result = await build_service(provider, output_format="## Custom format\n- Block A").build_prompt(
            "org-1", subject.id
        )

        prompt = result.prompt_used
        assert result.property_id == subject.id
        assert provider.prompts == []
        for heading in (
            "## Property", "## Key criteria", "## All declared attributes", "## Secondary valuation factors",
            "## Comparable filters", "## Filtered comparables summary", "## Regression model",
            "## Market trend over 5 years", "## Most recent sales",
            "## Expected output format for the justification key",
        ):
            assert heading in prompt
        assert "- Living area: 65 m\u00b2" in prompt
        assert "- Predicted price: 402 500 \u20ac" in prompt
        assert "- Price per m\u00b2 quartiles: 6 179 \u20ac to 6 227 \u20ac" in prompt
        assert "(NORMAL)" in prompt
        assert "Reference value: 403000" in prompt
        assert prompt.endswith("## Custom format\n- Block A")

    @pytest.mark.asyncio
    async def test_recent_sales_are_capped(self, subject, make_tx, build_service, provider_stub):
        sales = [make_tx(i) for i in range(12)]
        result = await build_service(provider_stub(), sales=sales).build_prompt("org-1", subject.id)
        recent = result.prompt_used.split("## Most recent sales\n")[1].split("\n\n")[0]
        assert len(recent.splitlines()) == 5
