"""OpenAI-backed valuation provider."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from .base import ProviderValuation, ValuationProvider
from ..core.config import settings

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a real estate valuation expert. "
    "Return only valid JSON with keys calculatedValuation (number, EUR) and justification (markdown string)."
)


def parse_completion(content: Optional[str]) -> ProviderValuation:
    """Tolerant reading of the model answer: anything unparsable keeps the raw text and no value."""
    text = (content or "").strip()
    try:
        data = json.loads(text)
    except ValueError:
        return ProviderValuation(None, text)
    if not isinstance(data, dict):
        return ProviderValuation(None, text)

    raw_value: Any = data.get("calculatedValuation", data.get("calculated_valuation"))
    value: Optional[float] = None
    if isinstance(raw_value, (int, float)) and not isinstance(raw_value, bool):
        value = float(raw_value)
    elif isinstance(raw_value, str):
        try:
            value = float(raw_value.replace(" ", "").replace(",", "."))
        except ValueError:
            value = None

    justification = data.get("justification")
    return ProviderValuation(value, justification if isinstance(justification, str) else "")


class OpenAIModel(ValuationProvider):
    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise RuntimeError("OPENAI_API_KEY missing from settings")
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.model = model or settings.OPENAI_MODEL

    async def compute_valuation(self, prompt: str) -> ProviderValuation:
        """Call the chat completion API in JSON mode.

        Transport errors propagate; the caller owns the fallback.
        """
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )
        content = completion.choices[0].message.content if completion.choices else None
        result = parse_completion(content)
        if result.calculated_valuation is None:
            log.warning("openai answer without usable value", extra={"model": self.model})
        return result
