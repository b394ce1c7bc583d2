"""Abstract swap aggregator interface and quote parsing.

Aggregator responses follow the common quote shape (``inAmount``,
``outAmount``, ``otherAmountThreshold``, ``slippageBps``,
``priceImpactPct``) with amounts in base units as strings. parse_quote
validates that shape; anything malformed becomes QuoteOrSwapServiceError so
callers handle it the same way as a network failure.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any

from burnbot.exceptions import QuoteOrSwapServiceError
from burnbot.ledger.types import LedgerTransaction
from burnbot.models import Quote

_REQUIRED_QUOTE_KEYS = ("inputMint", "outputMint", "inAmount", "outAmount")


class SwapService(ABC):
    """Abstract base class for swap aggregators."""

    @abstractmethod
    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: Decimal,
        max_slippage_bps: int,
    ) -> Quote:
        """Quote swapping ``amount`` (UI units) of input for output.

        Raises:
            QuoteOrSwapServiceError: On transport errors or malformed responses.
        """
        ...

    @abstractmethod
    async def build_swap_transaction(self, quote: Quote, signer: str) -> LedgerTransaction:
        """Return a ready-to-sign swap transaction for ``quote``.

        Raises:
            QuoteOrSwapServiceError: On transport errors or malformed responses.
        """
        ...


def parse_quote(raw: Any, in_decimals: int, out_decimals: int) -> Quote:
    """Convert an aggregator quote response into a Quote.

    Raises:
        QuoteOrSwapServiceError: If required keys are missing or not numeric.
    """
    if not isinstance(raw, dict):
        raise QuoteOrSwapServiceError(f"Quote response is not an object: {raw!r}")
    missing = [k for k in _REQUIRED_QUOTE_KEYS if k not in raw]
    if missing:
        raise QuoteOrSwapServiceError(f"Quote response missing {', '.join(missing)}")

    try:
        in_amount = Decimal(str(raw["inAmount"])).scaleb(-in_decimals)
        expected_out = Decimal(str(raw["outAmount"])).scaleb(-out_decimals)
        threshold = raw.get("otherAmountThreshold", raw["outAmount"])
        min_out = Decimal(str(threshold)).scaleb(-out_decimals)
        slippage_bps = int(raw.get("slippageBps", 0))
        # priceImpactPct is a fraction ("0.0012" == 0.12%)
        price_impact_bps = Decimal(str(raw.get("priceImpactPct", "0"))) * 10000
    except (InvalidOperation, TypeError, ValueError) as e:
        raise QuoteOrSwapServiceError(f"Quote response has invalid amounts: {e}") from e

    if expected_out <= 0:
        raise QuoteOrSwapServiceError(f"Quote output is not positive: {expected_out}")

    return Quote(
        input_mint=raw["inputMint"],
        output_mint=raw["outputMint"],
        in_amount=in_amount,
        expected_out=expected_out,
        min_out=min_out,
        slippage_bps=slippage_bps,
        price_impact_bps=abs(price_impact_bps),
        raw=raw,
    )
