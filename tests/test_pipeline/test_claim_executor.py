"""Tests for ClaimExecutor.

Covers:
- Successful claim creates a claimed reward with USD valuation
- Degraded price is flagged on the record
- Empty vault raises NoRewardsAvailable and writes nothing
- Write-ahead: a pending record exists once the claim has a reference
- Timeout leaves the pending record; an on-chain error marks it failed
- Submission failure without a reference leaves no record
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from burnbot.exceptions import (
    ConfirmationTimeout,
    GatewayUnavailable,
    NoRewardsAvailable,
    TransactionFailed,
)
from burnbot.ledger.types import COMPUTE_BUDGET_PROGRAM, MEMO_PROGRAM, pipeline_memo
from burnbot.models import RewardStatus
from burnbot.pipeline.claim import ClaimExecutor, derive_claim_accounts
from burnbot.pipeline.vault_monitor import VaultMonitor
from burnbot.pricing.oracle import PriceReader
from burnbot.storage.store import REWARDS


def _make_executor(settings, gateway, store, oracle) -> ClaimExecutor:
    monitor = VaultMonitor(gateway, settings.ledger, settings.retry)
    reader = PriceReader(oracle, settings.price.fallback_sol_usd)
    return ClaimExecutor(gateway, store, monitor, reader, settings.ledger, settings.retry)


class TestClaimSuccess:
    @pytest.mark.asyncio
    async def test_claims_and_records(self, settings, gateway, store, oracle):
        executor = _make_executor(settings, gateway, store, oracle)

        record = await executor.claim()

        assert record.status == RewardStatus.CLAIMED
        assert record.reward_amount == Decimal("1.0")
        assert record.reward_amount_usd == Decimal("150.00")
        assert record.claim_tx_ref.startswith("sim_")
        assert record.pending_step is None
        assert not record.usd_rate_degraded
        assert await gateway.get_balance(settings.ledger.authority) == Decimal("1.0")

    @pytest.mark.asyncio
    async def test_transaction_layout(self, settings, gateway, store, oracle):
        executor = _make_executor(settings, gateway, store, oracle)

        record = await executor.claim()

        tx = gateway.submitted[0]
        programs = [ix.program_id for ix in tx.instructions]
        assert programs[:2] == [COMPUTE_BUDGET_PROGRAM, COMPUTE_BUDGET_PROGRAM]
        assert programs[-2] == settings.ledger.fee_program_id
        assert programs[-1] == MEMO_PROGRAM
        assert tx.memo == pipeline_memo(record.id, "claim")
        # Creator token account does not exist yet, so it is created first
        assert len(tx.instructions) == 5

    @pytest.mark.asyncio
    async def test_existing_destination_skips_create(self, settings, gateway, store, oracle):
        accounts = derive_claim_accounts(
            gateway,
            settings.ledger.authority,
            settings.ledger.fee_program_id,
            settings.ledger.quote_mint,
        )
        gateway.create_account(accounts.creator_token_account)
        executor = _make_executor(settings, gateway, store, oracle)

        await executor.claim()

        assert len(gateway.submitted[0].instructions) == 4

    @pytest.mark.asyncio
    async def test_degraded_price_flagged(self, settings, gateway, store, oracle):
        oracle.available = False
        executor = _make_executor(settings, gateway, store, oracle)

        record = await executor.claim()

        assert record.usd_rate_degraded
        assert record.reward_amount_usd == Decimal("150.00")


class TestClaimFailures:
    @pytest.mark.asyncio
    async def test_empty_vault(self, settings, gateway, store, oracle):
        gateway.set_balance(settings.ledger.vault_address, Decimal("0"))
        executor = _make_executor(settings, gateway, store, oracle)

        with pytest.raises(NoRewardsAvailable):
            await executor.claim()

        assert await store.count(REWARDS) == 0
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_timeout_leaves_pending_record(self, settings, gateway, store, oracle):
        gateway.hold_confirmations = True
        executor = _make_executor(settings, gateway, store, oracle)

        with pytest.raises(ConfirmationTimeout) as exc_info:
            await executor.claim()

        [record] = await store.find_rewards()
        assert record.status == RewardStatus.PENDING
        assert record.pending_step == "claim"
        assert record.pending_tx_ref == exc_info.value.tx_ref
        assert record.claim_tx_ref is None

    @pytest.mark.asyncio
    async def test_onchain_error_marks_failed(self, settings, gateway, store, oracle):
        gateway.execution_errors["claim"] = "InstructionError"
        executor = _make_executor(settings, gateway, store, oracle)

        with pytest.raises(TransactionFailed):
            await executor.claim()

        [record] = await store.find_rewards()
        assert record.status == RewardStatus.FAILED
        assert "InstructionError" in record.error_message
        assert record.pending_step is None

    @pytest.mark.asyncio
    async def test_submission_failure_writes_nothing(self, settings, gateway, store, oracle):
        gateway.fail_next_submissions = settings.retry.submit_max_attempts
        executor = _make_executor(settings, gateway, store, oracle)

        with patch("burnbot.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(GatewayUnavailable):
                await executor.claim()

        assert await store.count(REWARDS) == 0
