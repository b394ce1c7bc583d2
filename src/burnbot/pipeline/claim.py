"""Claim executor: collect accumulated creator fees from the vault.

Account derivation:
    vault authority      ["creator_vault", authority] under the fee program
    vault token account  associated account of (vault authority, quote mint)
    creator account      associated account of (authority, quote mint)
    event authority      ["__event_authority"] under the fee program

The reward record is written ahead of confirmation: as soon as the claim has
a transaction reference a ``pending`` record carrying only that reference is
stored, and it becomes ``claimed`` with ``claim_tx_ref`` once confirmation is
observed. A submission that never produced a reference leaves no record.
"""

from dataclasses import dataclass
from decimal import Decimal

from burnbot.config import LedgerSettings, RetrySettings
from burnbot.exceptions import ConfirmationTimeout, NoRewardsAvailable, TransactionFailed
from burnbot.ledger import instructions
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.types import LedgerTransaction, pipeline_memo
from burnbot.logging import get_logger
from burnbot.models import (
    RewardRecord,
    RewardStatus,
    VaultBalance,
    cleared_marker,
    new_id,
    pending_marker,
)
from burnbot.pipeline.vault_monitor import VaultMonitor
from burnbot.pricing.oracle import PriceReader
from burnbot.retry import retry_read, submit_and_confirm
from burnbot.storage.store import RecordStore

logger = get_logger(__name__)

_USD_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class ClaimAccounts:
    vault_authority: str
    vault_token_account: str
    creator_token_account: str
    event_authority: str


def derive_claim_accounts(
    gateway: LedgerGateway, authority: str, fee_program_id: str, quote_mint: str
) -> ClaimAccounts:
    """Derive every account the collect instruction references. No I/O."""
    vault_authority = gateway.derive_program_address(
        ["creator_vault", authority], fee_program_id
    )
    return ClaimAccounts(
        vault_authority=vault_authority,
        vault_token_account=gateway.derive_associated_token_address(
            vault_authority, quote_mint
        ),
        creator_token_account=gateway.derive_associated_token_address(
            authority, quote_mint
        ),
        event_authority=gateway.derive_program_address(
            ["__event_authority"], fee_program_id
        ),
    )


class ClaimExecutor:
    """Builds, submits, and records the claim transaction.

    Args:
        gateway: Ledger access.
        store: Record store for the RewardRecord.
        vault_monitor: Used when no observed balance is passed in.
        price_reader: SOL/USD valuation with degraded fallback.
        ledger_settings: Account identities and compute budget.
        retry_settings: Read, submission and confirmation policy.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        store: RecordStore,
        vault_monitor: VaultMonitor,
        price_reader: PriceReader,
        ledger_settings: LedgerSettings,
        retry_settings: RetrySettings,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._vault_monitor = vault_monitor
        self._price_reader = price_reader
        self._ledger = ledger_settings
        self._retry = retry_settings

    async def claim(self, observed: VaultBalance | None = None) -> RewardRecord:
        """Claim everything in the vault and return the ``claimed`` record.

        Args:
            observed: Balance already read by the caller. Read fresh if None.

        Raises:
            NoRewardsAvailable: The vault is empty or missing.
            GatewayUnavailable: Reads or submission failed after retries.
            ConfirmationTimeout: Submitted but not confirmed; the pending
                record is left for the reconciler.
            TransactionFailed: The ledger rejected the claim.
        """
        if observed is None:
            observed = await self._vault_monitor.check_available()
        if observed.available <= 0:
            raise NoRewardsAvailable("No creator fee rewards available to collect")

        authority = self._ledger.authority
        accounts = derive_claim_accounts(
            self._gateway, authority, self._ledger.fee_program_id, self._ledger.quote_mint
        )
        destination_exists = await retry_read(
            self._retry, self._gateway.get_account_exists, accounts.creator_token_account
        )

        reading = await self._price_reader.read()
        reward_amount_usd = (observed.available * reading.rate).quantize(_USD_QUANTUM)

        record_id = new_id()
        tx = self._build_transaction(record_id, accounts, destination_exists)
        record: RewardRecord | None = None

        async def write_pending(tx_ref: str) -> None:
            nonlocal record
            record = await self._store.create_reward(
                RewardRecord(
                    id=record_id,
                    reward_amount=observed.available,
                    reward_amount_usd=reward_amount_usd,
                    usd_rate_degraded=reading.degraded,
                    vault_address=observed.account or self._ledger.vault_address,
                    **pending_marker("claim", tx_ref),
                )
            )

        logger.info(
            "claim_started",
            reward_id=record_id,
            available=str(observed.available),
            creator_account_exists=destination_exists,
        )

        try:
            confirmation = await submit_and_confirm(
                self._gateway, tx, self._retry, on_submitted=write_pending
            )
        except ConfirmationTimeout:
            logger.warning("claim_confirmation_pending", reward_id=record_id)
            raise
        except TransactionFailed as e:
            if record is not None:
                await self._store.update_reward(
                    record_id,
                    status=RewardStatus.FAILED,
                    error_message=str(e),
                    **cleared_marker(),
                )
            raise

        record = await self._store.update_reward(
            record_id,
            status=RewardStatus.CLAIMED,
            claim_tx_ref=confirmation.tx_ref,
            **cleared_marker(),
        )
        logger.info(
            "claim_confirmed",
            reward_id=record_id,
            claim_tx_ref=confirmation.tx_ref,
            reward_amount=str(record.reward_amount),
            reward_amount_usd=str(record.reward_amount_usd),
            usd_rate_status=reading.status.value,
        )
        return record

    def _build_transaction(
        self, record_id: str, accounts: ClaimAccounts, destination_exists: bool
    ) -> LedgerTransaction:
        authority = self._ledger.authority
        memo = pipeline_memo(record_id, "claim")
        ixs = [
            instructions.compute_unit_limit(self._ledger.compute_unit_limit),
            instructions.compute_unit_price(self._ledger.compute_unit_price),
        ]
        if not destination_exists:
            ixs.append(
                instructions.create_associated_account_idempotent(
                    authority,
                    accounts.creator_token_account,
                    authority,
                    self._ledger.quote_mint,
                )
            )
        ixs.append(
            instructions.collect_creator_fee(
                self._ledger.fee_program_id,
                self._ledger.quote_mint,
                authority,
                accounts.vault_authority,
                accounts.vault_token_account,
                accounts.creator_token_account,
                accounts.event_authority,
            )
        )
        ixs.append(instructions.memo(memo, authority))
        return LedgerTransaction(
            kind="claim",
            signer=authority,
            instructions=ixs,
            memo=memo,
            payload={"vault": self._ledger.vault_address},
        )
