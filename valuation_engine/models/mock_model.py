import re

from .base import ProviderValuation, ValuationProvider
from ..core.utils import fnv1a_32, seeded_rand
from ..services.prompt import REFERENCE_VALUE_LABEL, format_number

_REFERENCE_RE = re.compile(rf"^{REFERENCE_VALUE_LABEL}: (\d+)", re.MULTILINE)


class MockModel(ValuationProvider):
    """
    Deterministic placeholder provider. Reads the reference value of the brief
    and nudges it within +/-3 % using a seed derived from the brief itself,
    so the same brief always gives the same answer.
    """
    async def compute_valuation(self, prompt: str) -> ProviderValuation:
        match = _REFERENCE_RE.search(prompt)
        if not match:
            return ProviderValuation(None, "Not enough market data to estimate a value.")

        reference = int(match.group(1))
        seed = fnv1a_32(prompt)
        factor = 0.97 + seeded_rand(seed, 1)[0] * 0.06
        value = int(round(reference * factor / 100.0)) * 100

        justification = "\n".join([
            "# Property value analysis",
            "",
            "## Executive summary",
            "",
            f"**Estimated market value:** `{format_number(value)} EUR`",
            "",
            "## Method",
            "",
            f"- Starting point: the reference value of {format_number(reference)} EUR derived from the comparables.",
            f"- Adjustment applied for the declared attributes: {(factor - 1) * 100:+.1f} %.",
        ])
        return ProviderValuation(float(value), justification)
