"""Tests for the Reconciler.

Covers:
- Stranded records advance when their next transaction confirmed
  (located by pending marker or by memo)
- Missing, unconfirmed or failed transactions mark the record failed
- A second pass with no ledger change makes no transitions
- Resume after recovery completes the pipeline
- Retryable failures are reported
- Metrics drift correction and burn folding
"""

import time
from decimal import Decimal

import pytest

from burnbot.config import RecoverySettings
from burnbot.ledger.types import pipeline_memo
from burnbot.main import build_components
from burnbot.models import (
    BurnRecord,
    MetricsSnapshot,
    RewardRecord,
    RewardStatus,
    pending_marker,
)
from burnbot.recovery.reconciler import Reconciler
from burnbot.storage.store import BURNS, METRICS

_STALE = 3600.0


@pytest.fixture
def recovery_settings(settings_factory):
    """Grace period long enough that freshly advanced records are skipped."""
    return settings_factory(
        recovery=RecoverySettings(grace_period_seconds=60.0, resume_after_recovery=False),
    )


def _stale_reward(**overrides) -> RewardRecord:
    stale = time.time() - _STALE
    defaults = dict(
        reward_amount=Decimal("1.0"),
        reward_amount_usd=Decimal("150.00"),
        created_at=stale,
        updated_at=stale,
    )
    defaults.update(overrides)
    return RewardRecord(**defaults)


def _claimed(**overrides) -> RewardRecord:
    return _stale_reward(status=RewardStatus.CLAIMED, claim_tx_ref="sim_claim", **overrides)


def _bought(**overrides) -> RewardRecord:
    return _stale_reward(
        status=RewardStatus.BOUGHT,
        claim_tx_ref="sim_claim",
        buy_tx_ref="sim_buy",
        tokens_bought=Decimal("95000"),
        sol_amount_used=Decimal("0.95"),
        sol_amount_reserved=Decimal("0.05"),
        **overrides,
    )


class TestReconcileRecords:
    @pytest.mark.asyncio
    async def test_stuck_claimed_with_confirmed_buy(self, recovery_settings, gateway, store):
        reward = await store.create_reward(_claimed())
        buy_ref = gateway.inject_transaction(pipeline_memo(reward.id, "swap"))
        gateway.set_balance(
            recovery_settings.ledger.authority,
            Decimal("94000"),
            mint=recovery_settings.ledger.token_mint,
        )
        reconciler = Reconciler(recovery_settings, gateway, store)

        report = await reconciler.reconcile_all()

        assert report.recovered >= 1
        assert report.per_category["claimed"]["recovered"] == 1
        record = await store.get_reward(reward.id)
        assert record.status == RewardStatus.BOUGHT
        assert record.buy_tx_ref == buy_ref
        assert record.tokens_bought == Decimal("94000")
        assert record.sol_amount_used == Decimal("0.950")
        assert record.recovery_attempts == 1

    @pytest.mark.asyncio
    async def test_pending_claim_with_marker(self, recovery_settings, gateway, store):
        claim_ref = gateway.inject_transaction("unrelated")
        reward = await store.create_reward(_stale_reward(**pending_marker("claim", claim_ref)))
        reconciler = Reconciler(recovery_settings, gateway, store)

        await reconciler.reconcile_all()

        record = await store.get_reward(reward.id)
        assert record.status == RewardStatus.CLAIMED
        assert record.claim_tx_ref == claim_ref
        assert record.pending_step is None

    @pytest.mark.asyncio
    async def test_swap_marker_details_used(self, recovery_settings, gateway, store):
        buy_ref = gateway.inject_transaction("unrelated")
        reward = await store.create_reward(
            _claimed(
                **pending_marker(
                    "swap",
                    buy_ref,
                    tokens_bought=Decimal("95000"),
                    sol_amount_used=Decimal("0.95"),
                    sol_amount_reserved=Decimal("0.05"),
                )
            )
        )

        await Reconciler(recovery_settings, gateway, store).reconcile_all()

        record = await store.get_reward(reward.id)
        assert record.status == RewardStatus.BOUGHT
        assert record.tokens_bought == Decimal("95000")
        assert record.sol_amount_reserved == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_stuck_bought_with_confirmed_burn(self, recovery_settings, gateway, store):
        reward = await store.create_reward(_bought())
        burn_ref = gateway.inject_transaction(pipeline_memo(reward.id, "burn"))

        await Reconciler(recovery_settings, gateway, store).reconcile_all()

        record = await store.get_reward(reward.id)
        burn = await store.find_burn_for_reward(reward.id)
        assert record.status == RewardStatus.BURNED
        assert record.burn_tx_ref == burn_ref
        assert burn.burn_type == "buyback-recovery"
        assert burn.amount == Decimal("95000")
        assert burn.sol_spent_usd == Decimal("142.50")

    @pytest.mark.asyncio
    async def test_no_transaction_marks_failed(self, recovery_settings, gateway, store):
        reward = await store.create_reward(_claimed())

        report = await Reconciler(recovery_settings, gateway, store).reconcile_all()

        record = await store.get_reward(reward.id)
        assert record.status == RewardStatus.FAILED
        assert record.error_message.startswith("Reconciliation:")
        assert record.claim_tx_ref == "sim_claim"
        assert report.failures == 1

    @pytest.mark.asyncio
    async def test_onchain_error_marks_failed(self, recovery_settings, gateway, store):
        reward = await store.create_reward(_bought())
        gateway.inject_transaction(pipeline_memo(reward.id, "burn"), err="InstructionError")

        await Reconciler(recovery_settings, gateway, store).reconcile_all()

        record = await store.get_reward(reward.id)
        assert record.status == RewardStatus.FAILED
        assert "InstructionError" in record.error_message
        assert await store.count(BURNS) == 0

    @pytest.mark.asyncio
    async def test_fresh_records_left_alone(self, recovery_settings, gateway, store):
        reward = await store.create_reward(
            RewardRecord(
                reward_amount=Decimal("1"),
                reward_amount_usd=Decimal("150"),
                status=RewardStatus.CLAIMED,
                claim_tx_ref="sim_claim",
            )
        )

        report = await Reconciler(recovery_settings, gateway, store).reconcile_all()

        assert (await store.get_reward(reward.id)).status == RewardStatus.CLAIMED
        assert report.recovered == 0 and report.failures == 0

    @pytest.mark.asyncio
    async def test_gateway_outage_skips_record(self, recovery_settings, gateway, store):
        reward = await store.create_reward(_claimed())
        gateway.unavailable = True

        report = await Reconciler(recovery_settings, gateway, store).reconcile_all()

        assert report.per_category["claimed"]["errors"] == 1
        assert (await store.get_reward(reward.id)).status == RewardStatus.CLAIMED

    @pytest.mark.asyncio
    async def test_second_pass_makes_no_transitions(self, recovery_settings, gateway, store):
        advanced = await store.create_reward(_claimed())
        gateway.inject_transaction(pipeline_memo(advanced.id, "swap"))
        failed = await store.create_reward(_bought())
        reconciler = Reconciler(recovery_settings, gateway, store)

        await reconciler.reconcile_all()
        first = {r.id: r.status for r in await store.find_rewards()}
        second_report = await reconciler.reconcile_all()
        second = {r.id: r.status for r in await store.find_rewards()}

        assert first == second
        assert first[advanced.id] == RewardStatus.BOUGHT
        assert first[failed.id] == RewardStatus.FAILED
        assert second_report.recovered == 0
        assert second_report.failures == 0
        assert reconciler.last_report is second_report

    @pytest.mark.asyncio
    async def test_retryable_failures_reported(self, recovery_settings, gateway, store):
        reward = await store.create_reward(_claimed())
        await store.update_reward(
            reward.id,
            status=RewardStatus.FAILED,
            error_message="quote service down",
            error_retryable=True,
        )

        report = await Reconciler(recovery_settings, gateway, store).reconcile_all()

        assert report.retryable_failures == [reward.id]
        assert report.to_dict()["retryable_failures"] == [reward.id]


class TestResumeAfterRecovery:
    @pytest.mark.asyncio
    async def test_recovered_claim_runs_to_burn(
        self, settings_factory, gateway, swap_service, oracle
    ):
        settings = settings_factory(
            recovery=RecoverySettings(grace_period_seconds=60.0, resume_after_recovery=True),
        )
        components = build_components(settings, gateway, swap_service, oracle)
        await components["database"].connect()
        try:
            store = components["store"]
            claim_ref = gateway.inject_transaction("lost-response")
            gateway.set_balance(settings.ledger.authority, Decimal("1.0"))
            reward = await store.create_reward(
                _stale_reward(**pending_marker("claim", claim_ref))
            )

            report = await components["reconciler"].reconcile_all()

            assert report.per_category["pending"]["resumed"] == 1
            record = await store.get_reward(reward.id)
            assert record.status == RewardStatus.BURNED
            assert record.claim_tx_ref == claim_ref
            assert (await store.find_burn_for_reward(reward.id)).burn_type == "buyback"
        finally:
            await components["database"].close()


class TestMetrics:
    @pytest.mark.asyncio
    async def test_drift_skipped_without_snapshot(self, settings, gateway, store):
        report = await Reconciler(settings, gateway, store).check_metrics_drift()
        assert not report.checked
        assert report.reason == "no_metrics"

    @pytest.mark.asyncio
    async def test_drift_within_tolerance(self, settings, gateway, store):
        await store.append_metrics(
            MetricsSnapshot(
                total_supply=Decimal("1000000000"),
                circulating_supply=Decimal("700000000"),
                reserve_wallet_balance=Decimal("300000000"),
            )
        )
        gateway.set_balance(
            settings.ledger.reserve_wallet, Decimal("300000500"), mint=settings.ledger.token_mint
        )

        report = await Reconciler(settings, gateway, store).check_metrics_drift()

        assert report.checked and not report.drifted
        assert await store.count(METRICS) == 1

    @pytest.mark.asyncio
    async def test_drift_appends_corrected_snapshot(self, settings, gateway, store):
        reward = await store.create_reward(_bought())
        await store.append_metrics(
            MetricsSnapshot(
                total_supply=Decimal("1000000000"),
                circulating_supply=Decimal("700000000"),
                reserve_wallet_balance=Decimal("300000000"),
                timestamp=time.time() - 10,
            )
        )
        gateway.set_balance(
            settings.ledger.reserve_wallet, Decimal("299990000"), mint=settings.ledger.token_mint
        )

        report = await Reconciler(settings, gateway, store).check_metrics_drift()

        assert report.drifted
        assert report.balance_difference == Decimal("10000")
        latest = await store.latest_metrics()
        assert latest.reserve_wallet_balance == Decimal("299990000")
        assert latest.circulating_supply == Decimal("700010000")
        assert latest.previous_reserve_balance == Decimal("300000000")
        assert latest.update_reason == "periodic-check"
        # Reward statuses are never touched by the drift check
        assert (await store.get_reward(reward.id)).status == RewardStatus.BOUGHT

    @pytest.mark.asyncio
    async def test_fold_burns_creates_initial_snapshot(self, settings, gateway, store):
        reconciler = Reconciler(settings, gateway, store)
        assert await reconciler.fold_burns() is None

        initial = await store.latest_metrics()
        assert initial.update_reason == "initial"
        assert initial.reserve_wallet_balance == Decimal("300000000")

    @pytest.mark.asyncio
    async def test_fold_burns_by_type(self, settings, gateway, store):
        reconciler = Reconciler(settings, gateway, store)
        await reconciler.fold_burns()
        base = time.time() + 5
        for i, (burn_type, amount) in enumerate(
            (("buyback", "1000"), ("buyback-recovery", "500"), ("milestone", "2000"))
        ):
            reward = await store.create_reward(_bought())
            await store.record_burn(
                BurnRecord(
                    reward_id=reward.id,
                    amount=Decimal(amount),
                    burn_tx_ref=f"sim_{i}",
                    sol_spent=Decimal("0.95"),
                    sol_spent_usd=Decimal("142.50"),
                    burn_type=burn_type,
                    timestamp=base + i,
                ),
                burn_tx_ref=f"sim_{i}",
            )

        snapshot = await reconciler.fold_burns()

        assert snapshot.total_burned == Decimal("3500")
        assert snapshot.total_supply == Decimal("999996500")
        assert snapshot.circulating_supply == Decimal("699998500")
        assert snapshot.reserve_wallet_balance == Decimal("299998000")
        assert snapshot.recovery_burned == Decimal("500")
        assert snapshot.last_burn_at == base + 2
        assert await reconciler.fold_burns() is None
