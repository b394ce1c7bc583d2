"""Retry helpers for ledger reads, submission, and confirmation polling.

Three policies:
- Idempotent reads retry with exponential backoff: base_delay * 2**attempt.
- Submission retries only while the gateway raised before issuing a
  transaction reference. Once a reference exists it is never resubmitted.
- Confirmation is polled with the same doubling backoff, starting at
  confirm_poll_interval, until confirm_timeout_seconds. Then
  ConfirmationTimeout is raised and the outcome is left to the reconciler.

Submissions run as shielded tasks tracked in a module-level set, so
shutdown can wait for them with wait_for_in_flight() before closing the
database and gateway.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from burnbot.config import RetrySettings
from burnbot.exceptions import ConfirmationTimeout, GatewayUnavailable, TransactionFailed
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.types import Confirmation, LedgerTransaction
from burnbot.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_in_flight: set[asyncio.Task] = set()  # type: ignore[type-arg]


async def retry_read(
    settings: RetrySettings,
    read_fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Execute an idempotent read with exponential backoff retry.

    Retries GatewayUnavailable up to read_max_retries times with delays
    1s, 2s, 4s, ... Re-raises on final failure. Other exceptions propagate
    immediately.
    """
    max_retries = settings.read_max_retries
    base_delay = settings.retry_base_delay

    for attempt in range(max_retries):
        try:
            return await read_fn(*args, **kwargs)
        except GatewayUnavailable as e:
            if attempt == max_retries - 1:
                logger.error(
                    "ledger_read_failed_permanently",
                    operation=getattr(read_fn, "__name__", repr(read_fn)),
                    error=str(e),
                    attempts=max_retries,
                )
                raise

            delay = base_delay * (2**attempt)
            logger.warning(
                "ledger_read_retry",
                operation=getattr(read_fn, "__name__", repr(read_fn)),
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise GatewayUnavailable("read_max_retries must be at least 1")


async def submit_with_retry(
    gateway: LedgerGateway, tx: LedgerTransaction, settings: RetrySettings
) -> str:
    """Submit a transaction, retrying only failures that returned no reference."""
    max_attempts = settings.submit_max_attempts

    for attempt in range(max_attempts):
        try:
            return await gateway.submit_transaction(tx)
        except GatewayUnavailable as e:
            if attempt == max_attempts - 1:
                logger.error(
                    "submission_failed_permanently",
                    kind=tx.kind,
                    error=str(e),
                    attempts=max_attempts,
                )
                raise

            delay = settings.retry_base_delay * (2**attempt)
            logger.warning(
                "submission_retry",
                kind=tx.kind,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise GatewayUnavailable("submit_max_attempts must be at least 1")


async def await_confirmation(
    gateway: LedgerGateway, tx_ref: str, settings: RetrySettings
) -> Confirmation:
    """Poll until the transaction is confirmed or the timeout elapses.

    The wait between polls starts at confirm_poll_interval and doubles after
    each poll, capped by what is left of confirm_timeout_seconds. A poll that
    raises GatewayUnavailable counts as not yet confirmed.

    Raises:
        TransactionFailed: The ledger confirmed the transaction with an error.
        ConfirmationTimeout: No confirmation within confirm_timeout_seconds.
    """
    delay = settings.confirm_poll_interval
    timeout = settings.confirm_timeout_seconds
    waited = 0.0
    poll = 0

    while True:
        poll += 1
        try:
            confirmation = await gateway.confirm(tx_ref)
        except GatewayUnavailable as e:
            logger.warning("confirmation_poll_error", tx_ref=tx_ref, poll=poll, error=str(e))
        else:
            if confirmation.confirmed:
                if confirmation.err is not None:
                    raise TransactionFailed(tx_ref, confirmation.err)
                return confirmation

        remaining = timeout - waited
        if remaining <= 0 or delay <= 0:
            break
        step = min(delay, remaining)
        await asyncio.sleep(step)
        waited += step
        delay *= 2

    logger.warning("confirmation_timeout", tx_ref=tx_ref, timeout=timeout, polls=poll)
    raise ConfirmationTimeout(tx_ref, timeout)


async def submit_and_confirm(
    gateway: LedgerGateway,
    tx: LedgerTransaction,
    settings: RetrySettings,
    on_submitted: Callable[[str], Awaitable[None]] | None = None,
) -> Confirmation:
    """Submit, record the reference, then wait for confirmation.

    ``on_submitted`` runs as soon as a reference exists so callers can write
    a pending marker before confirmation is observed. The whole sequence is
    shielded: cancelling the caller does not abandon a submitted transaction
    mid-flight. The task stays in the in-flight set until it finishes.
    """

    async def _run() -> Confirmation:
        tx_ref = await submit_with_retry(gateway, tx, settings)
        logger.info("transaction_submitted", kind=tx.kind, tx_ref=tx_ref, memo=tx.memo)
        if on_submitted is not None:
            await on_submitted(tx_ref)
        confirmation = await await_confirmation(gateway, tx_ref, settings)
        logger.info("transaction_confirmed", kind=tx.kind, tx_ref=tx_ref)
        return confirmation

    task = asyncio.create_task(_run(), name=f"submit_{tx.kind}")
    _in_flight.add(task)
    task.add_done_callback(_in_flight.discard)
    return await asyncio.shield(task)


def in_flight_count() -> int:
    return len(_in_flight)


async def wait_for_in_flight(timeout: float) -> int:
    """Wait for shielded submissions to finish. Returns how many are still running.

    Errors from finished submissions are logged here, since a cancelled
    caller never sees them.
    """
    pending = set(_in_flight)
    if not pending:
        return 0

    logger.info("waiting_for_in_flight_submissions", count=len(pending), timeout=timeout)
    done, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "in_flight_submission_unresolved",
                task=task.get_name(),
                error=str(task.exception()),
                error_type=type(task.exception()).__name__,
            )
    if still_running:
        logger.error("in_flight_submissions_abandoned", count=len(still_running))
    return len(still_running)
