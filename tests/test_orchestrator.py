"""Tests for the pipeline Orchestrator.

Covers:
- Full cycle: one reward and one linked burn per successful run
- Threshold gate: below-threshold and empty vaults abort without writes
- Step failures: failed result, failed reward, earlier refs kept
- Single flight: overlapping runs return run_in_progress
- Stop requests abort at the next step boundary
- resume() continues claimed and bought records
"""

from decimal import Decimal

import pytest

from burnbot.config import PipelineSettings
from burnbot.exceptions import InvalidStatusTransition
from burnbot.main import build_components
from burnbot.models import RewardRecord, RewardStatus, RunState
from burnbot.storage.store import BURNS, REWARDS


class TestFullCycle:
    @pytest.mark.asyncio
    async def test_successful_run(self, components):
        orchestrator = components["orchestrator"]
        store = components["store"]
        gateway = components["gateway"]

        result = await orchestrator.run()

        assert result.state == RunState.DONE
        assert result.simulated
        assert result.available == Decimal("1.0")
        assert result.reward.status == RewardStatus.BOUGHT
        assert result.burn.amount == Decimal("94050")

        [reward] = await store.find_rewards()
        [burn] = await store.find_burns()
        assert reward.status == RewardStatus.BURNED
        assert burn.reward_id == reward.id
        assert burn.sol_spent == reward.sol_amount_used == Decimal("0.95")
        assert burn.sol_spent_usd == Decimal("142.50")
        assert reward.claim_tx_ref and reward.buy_tx_ref and reward.burn_tx_ref
        assert [tx.kind for tx in gateway.submitted] == ["claim", "swap", "burn"]
        assert orchestrator.last_result is result

    @pytest.mark.asyncio
    async def test_second_run_finds_empty_vault(self, components):
        orchestrator = components["orchestrator"]

        await orchestrator.run()
        result = await orchestrator.run()

        assert result.state == RunState.ABORTED
        assert result.reason == "no_rewards"
        assert await components["store"].count(REWARDS) == 1


class TestThresholdGate:
    @pytest.mark.asyncio
    async def test_below_threshold_aborts_without_writes(
        self, settings_factory, gateway, swap_service, oracle
    ):
        settings = settings_factory(
            pipeline=PipelineSettings(reward_threshold=Decimal("0.3")),
        )
        gateway.set_balance(settings.ledger.vault_address, Decimal("0.2"))
        components = build_components(settings, gateway, swap_service, oracle)
        await components["database"].connect()
        try:
            result = await components["orchestrator"].run()

            assert result.state == RunState.ABORTED
            assert result.reason == "below_threshold"
            assert result.available == Decimal("0.2")
            assert await components["store"].count(REWARDS) == 0
            assert gateway.submitted == []
        finally:
            await components["database"].close()

    @pytest.mark.asyncio
    async def test_missing_vault_aborts(self, components, settings):
        gateway = components["gateway"]
        gateway.set_balance(settings.ledger.vault_address, Decimal("0"))

        result = await components["orchestrator"].run()

        assert result.state == RunState.ABORTED
        assert result.reason == "no_rewards"

    @pytest.mark.asyncio
    async def test_gateway_outage_fails_run(self, components):
        components["gateway"].unavailable = True

        result = await components["orchestrator"].run()

        assert result.state == RunState.FAILED
        assert result.failed_step == RunState.CHECK_THRESHOLD
        assert result.reason == "GatewayUnavailable"


class TestStepFailures:
    @pytest.mark.asyncio
    async def test_swap_error_fails_reward(self, components):
        components["swap_service"].fail_quotes = True

        result = await components["orchestrator"].run()

        assert result.state == RunState.FAILED
        assert result.failed_step == RunState.SWAP
        assert result.reason == "QuoteOrSwapServiceError"
        [reward] = await components["store"].find_rewards()
        assert reward.status == RewardStatus.FAILED
        assert reward.error_message
        assert reward.claim_tx_ref is not None
        assert await components["store"].count(BURNS) == 0

    @pytest.mark.asyncio
    async def test_confirmation_timeout_leaves_record_for_recovery(self, components):
        components["gateway"].hold_confirmations = True

        result = await components["orchestrator"].run()

        assert result.state == RunState.FAILED
        assert result.failed_step == RunState.CLAIM
        assert result.reason == "ConfirmationTimeout"
        [reward] = await components["store"].find_rewards()
        assert reward.status == RewardStatus.PENDING
        assert reward.pending_step == "claim"


class TestRunControl:
    @pytest.mark.asyncio
    async def test_overlapping_run_rejected(self, components):
        orchestrator = components["orchestrator"]

        async with orchestrator._run_lock:
            assert orchestrator.is_running
            result = await orchestrator.run()

        assert result.state == RunState.ABORTED
        assert result.reason == "run_in_progress"
        assert components["gateway"].submitted == []

    @pytest.mark.asyncio
    async def test_stop_request_aborts_at_boundary(self, components):
        orchestrator = components["orchestrator"]
        orchestrator.request_stop()

        result = await orchestrator.run()

        assert result.state == RunState.ABORTED
        assert result.reason == "stop_requested"
        assert await components["store"].count(REWARDS) == 0

        orchestrator.clear_stop()
        assert (await orchestrator.run()).state == RunState.DONE


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_bought_record(self, components, settings):
        store = components["store"]
        components["gateway"].set_balance(
            settings.ledger.authority, Decimal("95000"), mint=settings.ledger.token_mint
        )
        reward = await store.create_reward(
            RewardRecord(reward_amount=Decimal("1.0"), reward_amount_usd=Decimal("150.00"))
        )
        await store.update_reward(reward.id, status=RewardStatus.CLAIMED, claim_tx_ref="sim_c")
        reward = await store.update_reward(
            reward.id,
            status=RewardStatus.BOUGHT,
            buy_tx_ref="sim_b",
            tokens_bought=Decimal("95000"),
            sol_amount_used=Decimal("0.95"),
        )

        result = await components["orchestrator"].resume(reward)

        assert result.state == RunState.DONE
        assert result.burn.reward_id == reward.id
        assert result.burn.buy_tx_ref == "sim_b"
        assert (await store.get_reward(reward.id)).status == RewardStatus.BURNED
        assert [tx.kind for tx in components["gateway"].submitted] == ["burn"]

    @pytest.mark.asyncio
    async def test_resume_rejects_terminal_record(self, components):
        record = RewardRecord(
            reward_amount=Decimal("1"),
            reward_amount_usd=Decimal("150"),
            status=RewardStatus.FAILED,
        )

        result = await components["orchestrator"].resume(record)

        assert result.state == RunState.ABORTED
        assert result.reason == "not_resumable"

    @pytest.mark.asyncio
    async def test_resume_bought_record_without_tokens_fails(self, components):
        store = components["store"]
        reward = await store.create_reward(
            RewardRecord(reward_amount=Decimal("1.0"), reward_amount_usd=Decimal("150.00"))
        )
        await store.update_reward(reward.id, status=RewardStatus.CLAIMED, claim_tx_ref="sim_c")
        reward = await store.update_reward(
            reward.id, status=RewardStatus.BOUGHT, buy_tx_ref="sim_b"
        )

        result = await components["orchestrator"].resume(reward)

        assert result.state == RunState.FAILED
        assert result.failed_step == RunState.BURN
        assert isinstance(result.error, InvalidStatusTransition)
        assert components["gateway"].submitted == []
