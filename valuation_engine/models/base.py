from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class ProviderValuation:
    calculated_valuation: Optional[float]
    justification: str


class ValuationProvider(Protocol):
    async def compute_valuation(self, prompt: str) -> ProviderValuation:
        """
        Turns a valuation brief into an estimate and a markdown justification.
        Malformed model output yields `calculated_valuation=None`; it never raises on parsing.
        """
        ...
