"""Scheduler -- three independent timers driving the pipeline and recovery.

    pipeline    Orchestrator.run()                    every pipeline_interval_seconds
    reconcile   Reconciler.reconcile_all()            every reconcile_interval_seconds
    metrics     fold_burns() + check_metrics_drift()  every metrics_interval_seconds

Each timer ticks once at startup, then sleeps its interval. A tick that
raises is logged and the timer keeps going. On stop, a tick in progress is
allowed to reach a step boundary instead of being cancelled. The scheduler
holds no business logic of its own.
"""

import asyncio
from collections.abc import Awaitable, Callable

from burnbot.config import AppSettings
from burnbot.logging import get_logger
from burnbot.orchestrator import Orchestrator
from burnbot.recovery.reconciler import Reconciler
from burnbot.retry import wait_for_in_flight

logger = get_logger(__name__)


class Scheduler:
    """Runs the pipeline, reconcile and metrics timers as background tasks."""

    def __init__(
        self,
        settings: AppSettings,
        orchestrator: Orchestrator,
        reconciler: Reconciler,
    ) -> None:
        self._orchestrator = orchestrator
        self._reconciler = reconciler
        self._intervals = {
            "pipeline": settings.pipeline.pipeline_interval_seconds,
            "reconcile": settings.recovery.reconcile_interval_seconds,
            "metrics": settings.recovery.metrics_interval_seconds,
        }
        self._shutdown_timeout = settings.pipeline.shutdown_timeout_seconds
        self._running = False
        self._tasks: list[asyncio.Task] = []  # type: ignore[type-arg]
        self._busy: set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start all timers in the background."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        self._running = True
        self._orchestrator.clear_stop()
        ticks: dict[str, Callable[[], Awaitable[object]]] = {
            "pipeline": self._orchestrator.run,
            "reconcile": self._reconciler.reconcile_all,
            "metrics": self._metrics_tick,
        }
        self._tasks = [
            asyncio.create_task(self._timer(name, self._intervals[name], tick), name=name)
            for name, tick in ticks.items()
        ]
        logger.info("scheduler_started", **{f"{k}_interval": v for k, v in self._intervals.items()})

    async def stop(self) -> None:
        """Stop the timers without abandoning a step mid-flight.

        The pipeline is asked to stop at its next step boundary. Timers
        sleeping between ticks are cancelled; a timer in the middle of a tick
        is awaited for up to shutdown_timeout_seconds. Shielded submissions
        still running after that get the same bound before this returns, so
        the caller can close the database and gateway safely.
        """
        self._running = False
        self._orchestrator.request_stop()

        busy = [task for task in self._tasks if task.get_name() in self._busy]
        for task in self._tasks:
            if task not in busy:
                task.cancel()

        if busy:
            logger.info(
                "scheduler_draining",
                timers=[task.get_name() for task in busy],
                timeout=self._shutdown_timeout,
            )
            _, unfinished = await asyncio.wait(busy, timeout=self._shutdown_timeout)
            for task in unfinished:
                logger.error("scheduler_tick_abandoned", timer=task.get_name())
                task.cancel()

        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        abandoned = await wait_for_in_flight(self._shutdown_timeout)
        logger.info("scheduler_stopped", abandoned_submissions=abandoned)

    async def _timer(
        self, name: str, interval: float, tick: Callable[[], Awaitable[object]]
    ) -> None:
        while self._running:
            self._busy.add(name)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("scheduler_tick_error", timer=name, exc_info=True)
            finally:
                self._busy.discard(name)
            if self._running:
                await asyncio.sleep(interval)

    async def _metrics_tick(self) -> None:
        await self._reconciler.fold_burns()
        await self._reconciler.check_metrics_drift()
