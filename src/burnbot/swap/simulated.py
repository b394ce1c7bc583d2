"""Fixed-rate swap service for dry runs and tests.

Produces aggregator-shaped quote responses so the same parsing path runs in
dry-run mode as in production. ``fill_ratio`` below 1 makes the swap
transaction deliver less than quoted, which exercises the burn step's
shortfall handling.
"""

import base64
import json
from decimal import Decimal

from burnbot.exceptions import QuoteOrSwapServiceError
from burnbot.ledger.types import LedgerTransaction, round_to_step, step_for_decimals
from burnbot.logging import get_logger
from burnbot.models import Quote
from burnbot.swap.service import SwapService, parse_quote

logger = get_logger(__name__)

_SOL_DECIMALS = 9


class SimulatedSwapService(SwapService):
    """Swap service quoting at a constant rate.

    Args:
        tokens_per_sol: Output tokens per unit of input.
        token_decimals: Decimals of the output token.
        price_impact_pct: Reported price impact as a fraction.
    """

    def __init__(
        self,
        tokens_per_sol: Decimal,
        token_decimals: int = 6,
        price_impact_pct: Decimal = Decimal("0"),
    ) -> None:
        self._tokens_per_sol = tokens_per_sol
        self._token_decimals = token_decimals
        self.price_impact_pct = price_impact_pct
        self.fill_ratio = Decimal("1")

        # Failure injection
        self.fail_quotes = False
        self.malformed_quotes = False
        self.fail_builds = False

        self.quotes_served = 0

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: Decimal,
        max_slippage_bps: int,
    ) -> Quote:
        if self.fail_quotes:
            raise QuoteOrSwapServiceError("Simulated quote service failure")

        step = step_for_decimals(self._token_decimals)
        expected = round_to_step(amount * self._tokens_per_sol, step)
        threshold = round_to_step(
            expected * (Decimal("1") - Decimal(max_slippage_bps) / 10000), step
        )
        raw: dict = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "inAmount": str(int(amount.scaleb(_SOL_DECIMALS))),
            "outAmount": str(int(expected.scaleb(self._token_decimals))),
            "otherAmountThreshold": str(int(threshold.scaleb(self._token_decimals))),
            "slippageBps": max_slippage_bps,
            "priceImpactPct": str(self.price_impact_pct),
        }
        if self.malformed_quotes:
            del raw["outAmount"]

        self.quotes_served += 1
        return parse_quote(raw, _SOL_DECIMALS, self._token_decimals)

    async def build_swap_transaction(self, quote: Quote, signer: str) -> LedgerTransaction:
        if self.fail_builds:
            raise QuoteOrSwapServiceError("Simulated swap build failure")

        out_amount = round_to_step(
            quote.expected_out * self.fill_ratio, step_for_decimals(self._token_decimals)
        )
        serialized = base64.b64encode(json.dumps(quote.raw).encode("utf-8")).decode("ascii")
        logger.debug(
            "simulated_swap_built",
            in_amount=str(quote.in_amount),
            out_amount=str(out_amount),
        )
        return LedgerTransaction(
            kind="swap",
            signer=signer,
            payload={
                "swap_transaction": serialized,
                "input_mint": quote.input_mint,
                "output_mint": quote.output_mint,
                "in_amount": str(quote.in_amount),
                "out_amount": str(out_amount),
            },
        )
