"""Pipeline orchestrator -- runs one claim -> swap -> burn cycle.

State machine per run:
  check_threshold -> claim -> swap -> burn -> done
  check_threshold -> aborted   (no rewards, below threshold)
  any step        -> aborted   (stop requested at a step boundary)
  any step        -> failed    (step error carried in the result)

A single asyncio.Lock keeps runs from overlapping. A caller that finds the
lock held gets an ``aborted`` result with reason ``run_in_progress`` instead
of queueing behind it. Each step's store write is committed before the next
step starts, so a crash between steps leaves a record the reconciler can
resume from.

Works identically with simulated and production bindings: the executors
depend only on the gateway, swap service and oracle interfaces.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal

import structlog

from burnbot.config import AppSettings
from burnbot.exceptions import (
    BelowThreshold,
    BurnBotError,
    InvalidStatusTransition,
    NoRewardsAvailable,
)
from burnbot.logging import get_logger
from burnbot.models import (
    PipelineResult,
    RewardRecord,
    RewardStatus,
    RunState,
    new_id,
)
from burnbot.pipeline.burn import BurnExecutor
from burnbot.pipeline.claim import ClaimExecutor
from burnbot.pipeline.swap import SwapExecutor
from burnbot.pipeline.vault_monitor import VaultMonitor

logger = get_logger(__name__)


class _StopRequested(Exception):
    """Raised internally at a step boundary when a stop was requested."""


class Orchestrator:
    """Runs the pipeline state machine under a single-flight lock.

    Args:
        settings: Application-wide settings.
        vault_monitor: Claimable balance check.
        claim_executor: Claim step.
        swap_executor: Swap step.
        burn_executor: Burn step.
    """

    def __init__(
        self,
        settings: AppSettings,
        vault_monitor: VaultMonitor,
        claim_executor: ClaimExecutor,
        swap_executor: SwapExecutor,
        burn_executor: BurnExecutor,
    ) -> None:
        self._settings = settings
        self._vault_monitor = vault_monitor
        self._claim = claim_executor
        self._swap = swap_executor
        self._burn = burn_executor
        self._run_lock = asyncio.Lock()
        self._stop_requested = False
        self._last_result: PipelineResult | None = None

    @property
    def is_running(self) -> bool:
        """Whether a run or resume currently holds the lock."""
        return self._run_lock.locked()

    @property
    def last_result(self) -> PipelineResult | None:
        return self._last_result

    def request_stop(self) -> None:
        """Stop at the next step boundary. In-flight submissions complete."""
        self._stop_requested = True
        logger.info("pipeline_stop_requested")

    def clear_stop(self) -> None:
        self._stop_requested = False

    async def run(self) -> PipelineResult:
        """Run one full cycle from the threshold check."""
        result = PipelineResult(
            run_id=new_id()[:12],
            state=RunState.CHECK_THRESHOLD,
            simulated=self._settings.pipeline.dry_run,
        )
        if self._run_lock.locked():
            return self._finish(result, RunState.ABORTED, reason="run_in_progress")

        async with self._run_lock:
            with structlog.contextvars.bound_contextvars(run_id=result.run_id):
                return await self._execute(result, None)

    async def resume(self, record: RewardRecord) -> PipelineResult:
        """Continue ``record`` from its current status.

        Used by the reconciler after it advanced a stranded record. Only
        ``claimed`` and ``bought`` records can be resumed; anything else
        returns ``aborted`` with reason ``not_resumable``.
        """
        result = PipelineResult(
            run_id=new_id()[:12],
            state=RunState.CHECK_THRESHOLD,
            reward=record,
            simulated=self._settings.pipeline.dry_run,
        )
        if self._run_lock.locked():
            return self._finish(result, RunState.ABORTED, reason="run_in_progress")
        if record.status not in (RewardStatus.CLAIMED, RewardStatus.BOUGHT):
            return self._finish(result, RunState.ABORTED, reason="not_resumable")

        async with self._run_lock:
            with structlog.contextvars.bound_contextvars(
                run_id=result.run_id, reward_id=record.id
            ):
                logger.info("pipeline_resume_started", status=record.status.value)
                return await self._execute(result, record)

    # ──────────────────────────────────────────────
    # State machine
    # ──────────────────────────────────────────────

    async def _execute(
        self, result: PipelineResult, record: RewardRecord | None
    ) -> PipelineResult:
        try:
            if record is None:
                record = await self._check_and_claim(result)
                result.reward = record
            record = await self._continue(result, record)
        except (NoRewardsAvailable, BelowThreshold) as e:
            reason = "no_rewards" if isinstance(e, NoRewardsAvailable) else "below_threshold"
            return self._finish(result, RunState.ABORTED, reason=reason)
        except _StopRequested:
            return self._finish(result, RunState.ABORTED, reason="stop_requested")
        except Exception as e:
            result.failed_step = result.state
            result.error = e
            logger.error(
                "pipeline_step_failed",
                step=result.state.value,
                error=str(e),
                error_type=type(e).__name__,
                retryable=getattr(e, "retryable", False),
                exc_info=not isinstance(e, BurnBotError),
            )
            return self._finish(result, RunState.FAILED, reason=type(e).__name__)

        return self._finish(result, RunState.DONE)

    async def _check_and_claim(self, result: PipelineResult) -> RewardRecord:
        balance = await self._vault_monitor.check_available()
        result.available = balance.available
        if balance.available <= 0:
            raise NoRewardsAvailable("Vault is empty")
        threshold = self._settings.pipeline.reward_threshold
        if balance.available < threshold:
            raise BelowThreshold(balance.available, threshold)

        self._boundary(result, RunState.CLAIM)
        return await self._claim.claim(balance)

    async def _continue(self, result: PipelineResult, record: RewardRecord) -> RewardRecord:
        if record.status == RewardStatus.CLAIMED:
            self._boundary(result, RunState.SWAP)
            record = await self._swap.swap(record.id, record.reward_amount)
            result.reward = record

        if record.status == RewardStatus.BOUGHT:
            self._boundary(result, RunState.BURN)
            if record.tokens_bought is None:
                raise InvalidStatusTransition(
                    f"Reward {record.id} is bought but has no tokens_bought"
                )
            sol_used = record.sol_amount_used or Decimal("0")
            result.burn = await self._burn.burn(
                signer=self._settings.ledger.authority,
                amount=record.tokens_bought,
                asset=self._settings.ledger.token_mint,
                reward_id=record.id,
                sol_amount=sol_used,
                sol_amount_usd=record.usd_value_of(sol_used),
                buy_tx_ref=record.buy_tx_ref,
            )
        return record

    def _boundary(self, result: PipelineResult, next_state: RunState) -> None:
        if self._stop_requested:
            raise _StopRequested()
        result.state = next_state

    def _finish(
        self, result: PipelineResult, state: RunState, reason: str | None = None
    ) -> PipelineResult:
        result.state = state
        result.reason = reason
        result.duration_seconds = time.time() - result.started_at
        self._last_result = result

        reward = result.reward
        log = logger.error if state == RunState.FAILED else logger.info
        log(
            "pipeline_run_finished",
            run_id=result.run_id,
            state=state.value,
            reason=reason,
            failed_step=result.failed_step.value if result.failed_step else None,
            error=str(result.error) if result.error else None,
            available=str(result.available) if result.available is not None else None,
            reward_id=reward.id if reward else None,
            claim_tx_ref=reward.claim_tx_ref if reward else None,
            buy_tx_ref=reward.buy_tx_ref if reward else None,
            tokens_bought=str(reward.tokens_bought) if reward and reward.tokens_bought else None,
            burn_tx_ref=result.burn.burn_tx_ref if result.burn else None,
            tokens_burned=str(result.burn.amount) if result.burn else None,
            duration_seconds=round(result.duration_seconds, 3),
            simulated=result.simulated,
        )
        return result

