from types import SimpleNamespace

import pytest

from valuation_engine.models.mock_model import MockModel
from valuation_engine.models.openai_model import OpenAIModel, parse_completion


class TestMockModel:
    @pytest.mark.asyncio
    async def test_nudges_reference_value_deterministically(self):
        prompt = "# Valuation brief\n\nReference value: 403000\n"
        first = await MockModel().compute_valuation(prompt)
        again = await MockModel().compute_valuation(prompt)

        assert first == again
        assert 403_000 * 0.97 - 100 <= first.calculated_valuation <= 403_000 * 1.03 + 100
        assert first.calculated_valuation % 100 == 0
        assert first.justification.startswith("# ")

    @pytest.mark.asyncio
    async def test_no_reference_value(self):
        result = await MockModel().compute_valuation("Reference value: n/a")
        assert result.calculated_valuation is None


class TestParseCompletion:
    def test_camel_case_json(self):
        result = parse_completion('{"calculatedValuation": 410000, "justification": "# A"}')
        assert (result.calculated_valuation, result.justification) == (410_000.0, "# A")

    def test_numeric_string_value(self):
        assert parse_completion('{"calculated_valuation": "410 000,5"}').calculated_valuation == 410_000.5

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", "", None])
    def test_malformed_content_keeps_raw_text(self, content):
        result = parse_completion(content)
        assert result.calculated_valuation is None
        assert result.justification == (content or "").strip()

    def test_unusable_fields(self):
        result = parse_completion('{"calculatedValuation": "about 400k", "justification": 12}')
        assert result.calculated_valuation is None
        assert result.justification == ""


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class TestOpenAIModel:
    @pytest.mark.asyncio
    async def test_json_mode_request(self):
        completions = FakeCompletions('{"calculatedValuation": 398000, "justification": "# Estimate"}')
        client = SimpleNamespace(chat=SimpleNamespace(completions=completions))

        result = await OpenAIModel(client=client, model="gpt-test").compute_valuation("brief")

        assert result.calculated_valuation == 398_000
        assert completions.kwargs["model"] == "gpt-test"
        assert completions.kwargs["response_format"] == {"type": "json_object"}
        assert completions.kwargs["messages"][-1] == {"role": "user", "content": "brief"}

    @pytest.mark.asyncio
    async def test_malformed_answer_does_not_raise(self):
        client = SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions("Sorry, I cannot help.")))
        result = await OpenAIModel(client=client, model="gpt-test").compute_valuation("brief")
        assert result.calculated_valuation is None
        assert result.justification == "Sorry, I cannot help."
