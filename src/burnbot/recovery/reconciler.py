"""Recovery reconciler -- repairs records stranded by partial failures.

Three passes, each safe to repeat:

reconcile_all
    Rewards left in ``pending``, ``claimed`` or ``bought`` longer than the
    grace period are checked against the ledger. The next step's transaction
    is located from the pending marker, or by its memo when the marker was
    never written. A confirmed transaction advances the record with the same
    fields the executor would have written (and, when enabled, the pipeline
    resumes from there). Anything else marks the record ``failed``. Advanced
    records are either terminal or fresh afterwards, so a second pass with no
    ledger change makes no transitions.

check_metrics_drift
    Compares the latest MetricsSnapshot's reserve balance with the reserve
    wallet's on-chain balance and appends a corrected snapshot when the
    difference exceeds either tolerance. Never touches reward statuses.

fold_burns
    Folds BurnRecords newer than the latest snapshot's ``last_burn_at`` into
    a new snapshot, creating the initial snapshot if none exists.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from burnbot.config import AppSettings
from burnbot.exceptions import GatewayUnavailable, RecordStoreCorruption
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.types import Confirmation, pipeline_memo
from burnbot.logging import get_logger
from burnbot.models import (
    BurnRecord,
    MetricsSnapshot,
    RewardRecord,
    RewardStatus,
    RunState,
    cleared_marker,
)
from burnbot.retry import retry_read
from burnbot.storage.store import RecordStore

if TYPE_CHECKING:
    from burnbot.orchestrator import Orchestrator

logger = get_logger(__name__)

# Status a stranded record is in -> the step whose transaction would advance it
_NEXT_STEP = {
    RewardStatus.PENDING: "claim",
    RewardStatus.CLAIMED: "swap",
    RewardStatus.BOUGHT: "burn",
}


@dataclass
class ReconcileReport:
    """Outcome of one reconcile_all pass.

    ``per_category`` is keyed by the status each record was found in and
    counts scanned, recovered, failed, resumed and error outcomes.
    ``retryable_failures`` lists rewards that failed on a transient error
    class recently; the next pipeline tick starts a fresh run for them.
    """

    recovered: int = 0
    failures: int = 0
    per_category: dict[str, dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(int))
    )
    retryable_failures: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    duration_seconds: float = 0.0

    def count(self, category: str, outcome: str) -> None:
        self.per_category[category][outcome] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "recovered": self.recovered,
            "failures": self.failures,
            "per_category": {k: dict(v) for k, v in self.per_category.items()},
            "retryable_failures": list(self.retryable_failures),
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class DriftReport:
    """Outcome of one reserve balance check."""

    checked: bool
    drifted: bool = False
    recorded_balance: Decimal | None = None
    onchain_balance: Decimal | None = None
    balance_difference: Decimal | None = None
    percentage_difference: Decimal | None = None
    snapshot: MetricsSnapshot | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        def _s(value: Decimal | None) -> str | None:
            return str(value) if value is not None else None

        return {
            "checked": self.checked,
            "drifted": self.drifted,
            "recorded_balance": _s(self.recorded_balance),
            "onchain_balance": _s(self.onchain_balance),
            "balance_difference": _s(self.balance_difference),
            "percentage_difference": _s(self.percentage_difference),
            "snapshot_id": self.snapshot.id if self.snapshot else None,
            "reason": self.reason,
        }


class Reconciler:
    """Compares persisted records with ledger state and repairs drift.

    Args:
        settings: Application-wide settings.
        gateway: Ledger access for confirmations, memo lookups and balances.
        store: Record store.
        orchestrator: Used to resume records after recovery. Optional so the
            reconciler can run standalone.
    """

    def __init__(
        self,
        settings: AppSettings,
        gateway: LedgerGateway,
        store: RecordStore,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self._settings = settings
        self._recovery = settings.recovery
        self._retry = settings.retry
        self._gateway = gateway
        self._store = store
        self._orchestrator = orchestrator
        self._last_report: ReconcileReport | None = None
        self._reconcile_lock = asyncio.Lock()

    @property
    def last_report(self) -> ReconcileReport | None:
        return self._last_report

    @property
    def is_reconciling(self) -> bool:
        return self._reconcile_lock.locked()

    # ──────────────────────────────────────────────
    # Status reconciliation
    # ──────────────────────────────────────────────

    async def reconcile_all(self) -> ReconcileReport:
        """Resolve every non-terminal reward older than the grace period.

        Passes never overlap; a second caller waits for the first to finish.
        """
        async with self._reconcile_lock:
            return await self._reconcile_pass()

    async def _reconcile_pass(self) -> ReconcileReport:
        report = ReconcileReport()
        now = time.time()
        stranded = await self._store.find_rewards(
            status=list(_NEXT_STEP),
            updated_before=now - self._recovery.grace_period_seconds,
            newest_first=False,
        )
        logger.info("reconcile_started", stranded=len(stranded))

        for record in stranded:
            category = record.status.value
            report.count(category, "scanned")
            try:
                await self._reconcile_record(record, report)
            except RecordStoreCorruption:
                raise
            except GatewayUnavailable as e:
                report.count(category, "errors")
                logger.warning(
                    "reconcile_record_skipped",
                    reward_id=record.id,
                    status=category,
                    error=str(e),
                )
            except Exception:
                report.count(category, "errors")
                logger.error(
                    "reconcile_record_error",
                    reward_id=record.id,
                    status=category,
                    exc_info=True,
                )

        window_start = now - self._recovery.reconcile_interval_seconds
        recent_failures = await self._store.find_rewards(
            status=RewardStatus.FAILED, updated_after=window_start
        )
        report.retryable_failures = [r.id for r in recent_failures if r.error_retryable]

        report.duration_seconds = time.time() - report.started_at
        self._last_report = report
        logger.info(
            "reconcile_finished",
            recovered=report.recovered,
            failures=report.failures,
            retryable_failures=len(report.retryable_failures),
            per_category={k: dict(v) for k, v in report.per_category.items()},
        )
        return report

    async def _reconcile_record(self, record: RewardRecord, report: ReconcileReport) -> None:
        category = record.status.value
        step = _NEXT_STEP[record.status]

        tx_ref = record.pending_tx_ref if record.pending_step == step else None
        if tx_ref is None:
            tx_ref = await retry_read(
                self._retry, self._gateway.find_by_memo, pipeline_memo(record.id, step)
            )

        confirmation: Confirmation | None = None
        if tx_ref is not None:
            confirmation = await retry_read(self._retry, self._gateway.confirm, tx_ref)

        if tx_ref is None or confirmation is None or not confirmation.confirmed or confirmation.err:
            if tx_ref is None or confirmation is None:
                reason = f"no {step} transaction found"
            elif not confirmation.confirmed:
                reason = f"{step} transaction {tx_ref} unconfirmed after grace period"
            else:
                reason = f"{step} transaction {tx_ref} failed on-chain: {confirmation.err}"
            await self._store.update_reward(
                record.id,
                status=RewardStatus.FAILED,
                error_message=f"Reconciliation: {reason}",
                recovery_attempts=record.recovery_attempts + 1,
                **cleared_marker(),
            )
            report.failures += 1
            report.count(category, "failed")
            logger.warning(
                "reconcile_marked_failed", reward_id=record.id, status=category, reason=reason
            )
            return

        advanced = await self._advance(record, step, tx_ref, confirmation)
        report.recovered += 1
        report.count(category, "recovered")
        logger.info(
            "reconcile_recovered",
            reward_id=record.id,
            previous=category,
            status=advanced.status.value,
            tx_ref=tx_ref,
        )

        if (
            self._recovery.resume_after_recovery
            and self._orchestrator is not None
            and advanced.status in (RewardStatus.CLAIMED, RewardStatus.BOUGHT)
        ):
            result = await self._orchestrator.resume(advanced)
            if result.state == RunState.DONE:
                report.count(category, "resumed")
            elif result.reason == "run_in_progress":
                report.count(category, "resume_skipped")
            else:
                report.count(category, "resume_failed")

    async def _advance(
        self,
        record: RewardRecord,
        step: str,
        tx_ref: str,
        confirmation: Confirmation,
    ) -> RewardRecord:
        """Write the fields the step's executor would have written."""
        marker = record.pending_details if record.pending_step == step else {}
        details = {**confirmation.details, **marker}
        attempts = record.recovery_attempts + 1

        if step == "claim":
            return await self._store.update_reward(
                record.id,
                status=RewardStatus.CLAIMED,
                claim_tx_ref=tx_ref,
                recovery_attempts=attempts,
                **cleared_marker(),
            )

        if step == "swap":
            sol_used = _decimal(details.get("sol_amount_used") or details.get("in_amount"))
            if sol_used is None:
                sol_used = record.reward_amount * self._settings.pipeline.swap_fraction
            tokens = _decimal(details.get("tokens_bought") or details.get("out_amount"))
            if tokens is None:
                tokens = await retry_read(
                    self._retry,
                    self._gateway.get_balance,
                    self._settings.ledger.authority,
                    self._settings.ledger.token_mint,
                )
            return await self._store.update_reward(
                record.id,
                status=RewardStatus.BOUGHT,
                tokens_bought=tokens,
                buy_tx_ref=tx_ref,
                sol_amount_used=sol_used,
                sol_amount_reserved=record.reward_amount - sol_used,
                recovery_attempts=attempts,
                **cleared_marker(),
            )

        amount = _decimal(details.get("amount") or details.get("burned"))
        if amount is None:
            amount = record.tokens_bought or Decimal("0")
        sol_spent = record.sol_amount_used or Decimal("0")
        burn = BurnRecord(
            reward_id=record.id,
            amount=amount,
            burn_tx_ref=tx_ref,
            sol_spent=sol_spent,
            sol_spent_usd=record.usd_value_of(sol_spent),
            burn_type="buyback-recovery",
            buy_tx_ref=record.buy_tx_ref,
            details={
                "slot": confirmation.details.get("slot"),
                "block_time": confirmation.details.get("block_time"),
                "fee": confirmation.details.get("fee"),
                "decimals": details.get("decimals"),
                "raw_amount": details.get("raw_amount"),
            },
        )
        updated, _ = await self._store.record_burn(
            burn,
            tokens_burned=amount,
            burn_tx_ref=tx_ref,
            recovery_attempts=attempts,
            **cleared_marker(),
        )
        return updated

    # ──────────────────────────────────────────────
    # Metrics
    # ──────────────────────────────────────────────

    async def check_metrics_drift(self) -> DriftReport:
        """Correct the reserve balance in metrics when it drifted on-chain."""
        reserve_wallet = self._settings.ledger.reserve_wallet
        token_mint = self._settings.ledger.token_mint
        if not reserve_wallet or not token_mint:
            logger.warning("metrics_drift_check_skipped", reason="missing_address")
            return DriftReport(checked=False, reason="missing_address")

        latest = await self._store.latest_metrics()
        if latest is None:
            logger.warning("metrics_drift_check_skipped", reason="no_metrics")
            return DriftReport(checked=False, reason="no_metrics")

        onchain = await retry_read(
            self._retry, self._gateway.get_balance, reserve_wallet, token_mint
        )
        recorded_pct = latest.reserve_percentage
        if recorded_pct is None:
            recorded_pct = _percentage(latest.reserve_wallet_balance, latest.total_supply)
        onchain_pct = _percentage(onchain, latest.total_supply)

        balance_difference = abs(onchain - latest.reserve_wallet_balance)
        percentage_difference = abs(onchain_pct - recorded_pct)
        report = DriftReport(
            checked=True,
            recorded_balance=latest.reserve_wallet_balance,
            onchain_balance=onchain,
            balance_difference=balance_difference,
            percentage_difference=percentage_difference,
        )

        if (
            balance_difference <= self._recovery.drift_abs_tolerance
            and percentage_difference <= self._recovery.drift_rel_tolerance
        ):
            logger.info(
                "metrics_drift_within_tolerance",
                balance_difference=str(balance_difference),
                percentage_difference=str(percentage_difference),
            )
            return report

        snapshot = MetricsSnapshot(
            total_supply=latest.total_supply,
            circulating_supply=latest.total_supply - onchain,
            reserve_wallet_balance=onchain,
            total_burned=latest.total_burned,
            buyback_burned=latest.buyback_burned,
            milestone_burned=latest.milestone_burned,
            recovery_burned=latest.recovery_burned,
            reserve_percentage=onchain_pct,
            last_burn_at=latest.last_burn_at,
            update_reason="periodic-check",
            previous_reserve_balance=latest.reserve_wallet_balance,
        )
        await self._store.append_metrics(snapshot)
        report.drifted = True
        report.snapshot = snapshot
        logger.warning(
            "metrics_drift_corrected",
            recorded_balance=str(latest.reserve_wallet_balance),
            onchain_balance=str(onchain),
            balance_difference=str(balance_difference),
            percentage_difference=str(percentage_difference),
        )
        return report

    async def fold_burns(self) -> MetricsSnapshot | None:
        """Fold burns not yet reflected in metrics into a new snapshot.

        Returns the new snapshot, or None when there was nothing to fold.
        """
        latest = await self._store.latest_metrics()
        if latest is None:
            latest = await self._initial_snapshot()

        burns = await self._store.find_burns(after=latest.last_burn_at, newest_first=False)
        if not burns:
            return None

        buyback = sum((b.amount for b in burns if b.burn_type == "buyback"), Decimal("0"))
        recovery = sum(
            (b.amount for b in burns if b.burn_type == "buyback-recovery"), Decimal("0")
        )
        milestone = sum((b.amount for b in burns if b.burn_type == "milestone"), Decimal("0"))
        burned = buyback + recovery + milestone
        total_supply = latest.total_supply - burned

        snapshot = MetricsSnapshot(
            total_supply=total_supply,
            # Milestone burns come out of the reserve, buybacks out of circulation
            circulating_supply=latest.circulating_supply - buyback - recovery,
            reserve_wallet_balance=latest.reserve_wallet_balance - milestone,
            total_burned=latest.total_burned + burned,
            buyback_burned=latest.buyback_burned + buyback,
            milestone_burned=latest.milestone_burned + milestone,
            recovery_burned=latest.recovery_burned + recovery,
            reserve_percentage=_percentage(
                latest.reserve_wallet_balance - milestone, total_supply
            ),
            last_burn_at=max(b.timestamp for b in burns),
            update_reason="burn-fold",
            previous_reserve_balance=latest.reserve_wallet_balance,
        )
        await self._store.append_metrics(snapshot)
        logger.info("burns_folded", burns=len(burns), burned=str(burned))
        return snapshot

    async def _initial_snapshot(self) -> MetricsSnapshot:
        supply = self._recovery.initial_supply
        reserve = supply * self._recovery.reserve_fraction
        snapshot = MetricsSnapshot(
            total_supply=supply,
            circulating_supply=supply - reserve,
            reserve_wallet_balance=reserve,
            reserve_percentage=self._recovery.reserve_fraction,
            update_reason="initial",
        )
        await self._store.append_metrics(snapshot)
        return snapshot


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _percentage(balance: Decimal, total_supply: Decimal) -> Decimal:
    if total_supply <= 0:
        return Decimal("0")
    return balance / total_supply
