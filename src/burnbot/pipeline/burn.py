"""Burn executor: destroy the tokens bought for one reward.

The amount burned is ``burn_fraction`` of the bought amount rounded down to
the mint's decimals, capped at the wallet's held balance so a fill below the
quote never leaves the burn short of funds. The BurnRecord and the reward's
``burned`` status are written in a single store transaction.
"""

from decimal import Decimal

from burnbot.config import LedgerSettings, PipelineSettings, RetrySettings
from burnbot.exceptions import (
    ConfirmationTimeout,
    InsufficientTokenBalance,
    InvalidStatusTransition,
    TransactionFailed,
)
from burnbot.ledger import instructions
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.types import (
    LedgerTransaction,
    pipeline_memo,
    round_to_step,
    step_for_decimals,
    to_raw_units,
)
from burnbot.logging import get_logger
from burnbot.models import BurnRecord, RewardStatus, cleared_marker, pending_marker
from burnbot.retry import retry_read, submit_and_confirm
from burnbot.storage.store import RecordStore

logger = get_logger(__name__)


class BurnExecutor:
    """Submits the burn and writes the BurnRecord."""

    def __init__(
        self,
        gateway: LedgerGateway,
        store: RecordStore,
        ledger_settings: LedgerSettings,
        pipeline_settings: PipelineSettings,
        retry_settings: RetrySettings,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._ledger = ledger_settings
        self._pipeline = pipeline_settings
        self._retry = retry_settings

    async def burn(
        self,
        signer: str,
        amount: Decimal,
        asset: str,
        reward_id: str,
        sol_amount: Decimal,
        sol_amount_usd: Decimal,
        buy_tx_ref: str | None = None,
    ) -> BurnRecord:
        """Burn tokens bought for ``reward_id``.

        Args:
            signer: Wallet holding the tokens.
            amount: Tokens bought (quote expected output).
            asset: Token mint.
            reward_id: Reward the burn is linked to. Must be ``bought``.
            sol_amount: SOL spent on the buy, copied to the BurnRecord.
            sol_amount_usd: USD value of sol_amount.
            buy_tx_ref: Buy transaction reference, copied to the BurnRecord.

        Raises:
            InsufficientTokenBalance: The wallet holds none of the token.
            ConfirmationTimeout: Submitted but not confirmed; the reward stays
                ``bought`` with a pending marker.
        """
        record = await self._store.get_reward(reward_id)
        if record.status != RewardStatus.BOUGHT:
            raise InvalidStatusTransition(
                f"Reward {reward_id} is {record.status.value}, expected bought"
            )

        submitted_ref: str | None = None
        burn_amount = Decimal("0")
        decimals = 0

        async def write_pending(tx_ref: str) -> None:
            nonlocal submitted_ref
            submitted_ref = tx_ref
            await self._store.update_reward(
                reward_id,
                **pending_marker(
                    "burn",
                    tx_ref,
                    amount=burn_amount,
                    decimals=decimals,
                    raw_amount=to_raw_units(burn_amount, decimals),
                ),
            )

        try:
            decimals = await retry_read(self._retry, self._gateway.get_token_decimals, asset)
            step = step_for_decimals(decimals)
            safe_amount = round_to_step(amount * self._pipeline.burn_fraction, step)
            held = await retry_read(self._retry, self._gateway.get_balance, signer, asset)
            if held <= 0:
                raise InsufficientTokenBalance(f"No {asset} tokens held by {signer}")

            burn_amount = safe_amount
            if held < safe_amount:
                logger.warning(
                    "quote_fill_shortfall",
                    reward_id=reward_id,
                    quoted=str(amount),
                    safe_amount=str(safe_amount),
                    held=str(held),
                )
                burn_amount = round_to_step(held, step)
            if burn_amount <= 0:
                raise InsufficientTokenBalance(
                    f"Burn amount for {reward_id} rounds to zero at {decimals} decimals"
                )

            tx = self._build_transaction(signer, asset, reward_id, burn_amount, decimals)
            confirmation = await submit_and_confirm(
                self._gateway, tx, self._retry, on_submitted=write_pending
            )
        except ConfirmationTimeout:
            logger.warning("burn_confirmation_pending", reward_id=reward_id)
            raise
        except Exception as e:
            if submitted_ref is not None and not isinstance(e, TransactionFailed):
                logger.error(
                    "burn_outcome_unknown",
                    reward_id=reward_id,
                    tx_ref=submitted_ref,
                    error=str(e),
                )
                raise
            await self._mark_failed(reward_id, e)
            raise

        burn = BurnRecord(
            reward_id=reward_id,
            amount=burn_amount,
            burn_tx_ref=confirmation.tx_ref,
            sol_spent=sol_amount,
            sol_spent_usd=sol_amount_usd,
            buy_tx_ref=buy_tx_ref,
            details={
                "slot": confirmation.details.get("slot"),
                "block_time": confirmation.details.get("block_time"),
                "fee": confirmation.details.get("fee"),
                "decimals": decimals,
                "raw_amount": str(to_raw_units(burn_amount, decimals)),
            },
        )
        await self._store.record_burn(
            burn,
            tokens_burned=burn_amount,
            burn_tx_ref=confirmation.tx_ref,
            **cleared_marker(),
        )
        logger.info(
            "burn_confirmed",
            reward_id=reward_id,
            burn_tx_ref=confirmation.tx_ref,
            amount=str(burn_amount),
        )
        return burn

    def _build_transaction(
        self, signer: str, asset: str, reward_id: str, amount: Decimal, decimals: int
    ) -> LedgerTransaction:
        memo = pipeline_memo(reward_id, "burn")
        token_account = self._gateway.derive_associated_token_address(signer, asset)
        return LedgerTransaction(
            kind="burn",
            signer=signer,
            instructions=[
                instructions.compute_unit_limit(self._ledger.compute_unit_limit),
                instructions.compute_unit_price(self._ledger.compute_unit_price),
                instructions.burn(token_account, asset, signer, to_raw_units(amount, decimals)),
                instructions.memo(memo, signer),
            ],
            memo=memo,
            payload={"mint": asset, "amount": str(amount)},
        )

    async def _mark_failed(self, reward_id: str, error: Exception) -> None:
        retryable = getattr(error, "retryable", False)
        logger.error(
            "burn_failed",
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
            logger.error("burn_failure_not_recorded", reward_id=reward_id, exc_info=True)
