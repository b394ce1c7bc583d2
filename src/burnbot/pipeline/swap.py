"""Swap executor: convert claimed SOL into the project token.

Only ``swap_fraction`` of the claimed amount is swapped; the remainder stays
in the wallet for transaction fees and is recorded as sol_amount_reserved.

tokens_bought is the quote's expected output. The fill is not read back
here; the burn step compares it with the wallet's held balance and burns
the smaller of the two.
"""

from decimal import Decimal

from burnbot.config import LedgerSettings, PipelineSettings, RetrySettings
from burnbot.exceptions import (
    ConfirmationTimeout,
    InvalidStatusTransition,
    SlippageExceeded,
    TransactionFailed,
)
from burnbot.ledger import instructions
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.types import pipeline_memo, round_to_step, step_for_decimals
from burnbot.logging import get_logger
from burnbot.models import RewardRecord, RewardStatus, cleared_marker, pending_marker
from burnbot.retry import submit_and_confirm
from burnbot.storage.store import RecordStore
from burnbot.swap.service import SwapService

logger = get_logger(__name__)

_SOL_STEP = step_for_decimals(9)


class SwapExecutor:
    """Quotes, submits, and records the buy transaction for one reward."""

    def __init__(
        self,
        gateway: LedgerGateway,
        store: RecordStore,
        swap_service: SwapService,
        ledger_settings: LedgerSettings,
        pipeline_settings: PipelineSettings,
        retry_settings: RetrySettings,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._swap_service = swap_service
        self._ledger = ledger_settings
        self._pipeline = pipeline_settings
        self._retry = retry_settings

    async def swap(self, reward_id: str, sol_amount: Decimal) -> RewardRecord:
        """Swap the claimed SOL and advance the reward to ``bought``.

        Any failure other than a confirmation timeout marks the reward
        ``failed`` before re-raising. A timeout leaves it ``claimed`` with a
        pending marker for the reconciler.

        Raises:
            InvalidStatusTransition: The reward is not ``claimed``.
            QuoteOrSwapServiceError: Aggregator failure or malformed response.
            SlippageExceeded: Quoted price impact above max_slippage_bps.
            ConfirmationTimeout: Submitted but not confirmed in time.
        """
        record = await self._store.get_reward(reward_id)
        if record.status != RewardStatus.CLAIMED:
            raise InvalidStatusTransition(
                f"Reward {reward_id} is {record.status.value}, expected claimed"
            )

        amount_in = round_to_step(sol_amount * self._pipeline.swap_fraction, _SOL_STEP)
        reserved = sol_amount - amount_in
        submitted_ref: str | None = None

        async def write_pending(tx_ref: str) -> None:
            nonlocal submitted_ref
            submitted_ref = tx_ref
            await self._store.update_reward(
                reward_id,
                **pending_marker(
                    "swap",
                    tx_ref,
                    tokens_bought=quote.expected_out,
                    sol_amount_used=amount_in,
                    sol_amount_reserved=reserved,
                ),
            )

        try:
            quote = await self._swap_service.quote(
                self._ledger.quote_mint,
                self._ledger.token_mint,
                amount_in,
                self._pipeline.max_slippage_bps,
            )
            if quote.price_impact_bps > self._pipeline.max_slippage_bps:
                raise SlippageExceeded(
                    f"Price impact {quote.price_impact_bps}bps exceeds "
                    f"{self._pipeline.max_slippage_bps}bps"
                )
            logger.info(
                "swap_quoted",
                reward_id=reward_id,
                amount_in=str(amount_in),
                expected_out=str(quote.expected_out),
                min_out=str(quote.min_out),
                price_impact_bps=str(quote.price_impact_bps),
            )

            tx = await self._swap_service.build_swap_transaction(
                quote, self._ledger.authority
            )
            memo = pipeline_memo(reward_id, "swap")
            tx.instructions.append(instructions.memo(memo, self._ledger.authority))
            tx.memo = memo
            confirmation = await submit_and_confirm(
                self._gateway, tx, self._retry, on_submitted=write_pending
            )
        except ConfirmationTimeout:
            logger.warning("swap_confirmation_pending", reward_id=reward_id)
            raise
        except Exception as e:
            if submitted_ref is not None and not isinstance(e, TransactionFailed):
                # Submitted with an unknown outcome; the marker or memo resolves it
                logger.error(
                    "swap_outcome_unknown",
                    reward_id=reward_id,
                    tx_ref=submitted_ref,
                    error=str(e),
                )
                raise
            await self._mark_failed(reward_id, e)
            raise

        record = await self._store.update_reward(
            reward_id,
            status=RewardStatus.BOUGHT,
            tokens_bought=quote.expected_out,
            buy_tx_ref=confirmation.tx_ref,
            sol_amount_used=amount_in,
            sol_amount_reserved=reserved,
            **cleared_marker(),
        )
        logger.info(
            "swap_confirmed",
            reward_id=reward_id,
            buy_tx_ref=confirmation.tx_ref,
            tokens_bought=str(quote.expected_out),
            sol_amount_used=str(amount_in),
            sol_amount_reserved=str(reserved),
        )
        return record

    async def _mark_failed(self, reward_id: str, error: Exception) -> None:
        retryable = getattr(error, "retryable", False)
        logger.error(
            "swap_failed",
            reward_id=reward_id,
            error=str(error),
            error_type=type(error).__name__,
            retryable=retryable,
        )
        try:
            await self._store.update_reward(
                reward_id,
                status=RewardStatus.FAILED,
                error_message=str(error),
                error_retryable=retryable,
                **cleared_marker(),
            )
        except Exception:
            logger.error("swap_failure_not_recorded", reward_id=reward_id, exc_info=True)
