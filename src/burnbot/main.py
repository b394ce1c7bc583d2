"""Entry point for burnbot.

Wires all components together, optionally embeds the FastAPI status API,
and starts the scheduler. When the API is enabled (default), the scheduler
and API share a single asyncio event loop via uvicorn's programmatic API and
FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown: the pipeline stops at the next
step boundary and in-flight submissions finish confirming.

Component wiring order (in build_components):
1. Ledger gateway, swap service, price oracle (simulated in dry-run mode,
   injected otherwise)
2. RecordDatabase + RecordStore
3. VaultMonitor, ClaimExecutor, SwapExecutor, BurnExecutor
4. Orchestrator
5. Reconciler
6. Scheduler
"""

import asyncio
import signal
from collections.abc import Callable
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

import uvicorn
from fastapi import FastAPI

from burnbot.config import AppSettings
from burnbot.exceptions import ConfigurationError
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.simulated import SimulatedLedgerGateway
from burnbot.logging import get_logger, setup_logging
from burnbot.orchestrator import Orchestrator
from burnbot.pipeline.burn import BurnExecutor
from burnbot.pipeline.claim import ClaimExecutor
from burnbot.pipeline.swap import SwapExecutor
from burnbot.pipeline.vault_monitor import VaultMonitor
from burnbot.pricing.oracle import PriceOracle, PriceReader, StaticPriceOracle
from burnbot.recovery.reconciler import Reconciler
from burnbot.scheduler import Scheduler
from burnbot.storage.database import RecordDatabase
from burnbot.storage.store import RecordStore
from burnbot.swap.service import SwapService
from burnbot.swap.simulated import SimulatedSwapService


def build_components(
    settings: AppSettings,
    gateway: LedgerGateway | None = None,
    swap_service: SwapService | None = None,
    oracle: PriceOracle | None = None,
) -> dict[str, Any]:
    """Build all components from settings.

    In dry-run mode any binding not passed in is replaced by its simulated
    counterpart. Outside dry-run mode all three bindings must be injected.

    Note: Does NOT connect the database or gateway -- that happens in the
    lifespan (API mode) or run() (headless mode).

    Raises:
        ConfigurationError: A production binding is missing, or the token
            mint is not configured outside dry-run mode.
    """
    if settings.pipeline.dry_run:
        gateway = gateway or SimulatedLedgerGateway()
        swap_service = swap_service or SimulatedSwapService(
            settings.price.simulated_tokens_per_sol
        )
        oracle = oracle or StaticPriceOracle(
            {("SOL", "USD"): settings.price.simulated_sol_usd}
        )
    else:
        missing = [
            name
            for name, binding in (
                ("gateway", gateway),
                ("swap_service", swap_service),
                ("oracle", oracle),
            )
            if binding is None
        ]
        if missing:
            raise ConfigurationError(
                f"Live mode requires injected bindings: {', '.join(missing)}"
            )
        if not settings.ledger.token_mint:
            raise ConfigurationError("LEDGER_TOKEN_MINT must be set in live mode")
    assert gateway is not None and swap_service is not None and oracle is not None

    if not Decimal("0") < settings.pipeline.swap_fraction <= Decimal("1"):
        raise ConfigurationError("swap_fraction must be in (0, 1]")
    if not Decimal("0") < settings.pipeline.burn_fraction <= Decimal("1"):
        raise ConfigurationError("burn_fraction must be in (0, 1]")

    database = RecordDatabase(settings.storage.db_path)
    store = RecordStore(database)
    price_reader = PriceReader(oracle, settings.price.fallback_sol_usd)

    vault_monitor = VaultMonitor(gateway, settings.ledger, settings.retry)
    claim_executor = ClaimExecutor(
        gateway, store, vault_monitor, price_reader, settings.ledger, settings.retry
    )
    swap_executor = SwapExecutor(
        gateway, store, swap_service, settings.ledger, settings.pipeline, settings.retry
    )
    burn_executor = BurnExecutor(
        gateway, store, settings.ledger, settings.pipeline, settings.retry
    )
    orchestrator = Orchestrator(
        settings, vault_monitor, claim_executor, swap_executor, burn_executor
    )
    reconciler = Reconciler(settings, gateway, store, orchestrator)
    scheduler = Scheduler(settings, orchestrator, reconciler)

    return {
        "gateway": gateway,
        "swap_service": swap_service,
        "oracle": oracle,
        "database": database,
        "store": store,
        "vault_monitor": vault_monitor,
        "orchestrator": orchestrator,
        "reconciler": reconciler,
        "scheduler": scheduler,
    }


def _setup_signal_handlers(on_shutdown: Callable[[], None]) -> None:
    """Register SIGINT/SIGTERM handlers. Must be called inside the running loop."""
    logger = get_logger("burnbot.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        on_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _start(components: dict[str, Any]) -> None:
    await components["database"].connect()
    await components["gateway"].connect()
    await components["scheduler"].start()


async def _stop(components: dict[str, Any]) -> None:
    await components["scheduler"].stop()
    await components["gateway"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application.

    On startup: stores components on app.state, connects the database and
    gateway, starts the scheduler timers.

    On shutdown: stops the scheduler, then closes gateway and database.
    """
    logger = get_logger("burnbot.main")
    settings = app.state.settings
    components = app.state.components

    app.state.store = components["store"]
    app.state.orchestrator = components["orchestrator"]
    app.state.reconciler = components["reconciler"]
    app.state.scheduler = components["scheduler"]

    await _start(components)
    logger.info("lifespan_started", dry_run=settings.pipeline.dry_run)

    yield

    await _stop(components)
    logger.info("burnbot_stopped")


async def run() -> None:
    """Run burnbot.

    With the API enabled (API_ENABLED=true, the default) uvicorn serves the
    status API and the lifespan manages component startup/shutdown. Without
    it the scheduler runs headless until SIGINT/SIGTERM.
    """
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("burnbot.main")

    components = build_components(settings)

    if settings.api.enabled:
        from burnbot.api.app import create_api_app

        app = create_api_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            dry_run=settings.pipeline.dry_run,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event.set)

    logger.info(
        "starting_headless",
        dry_run=settings.pipeline.dry_run,
        reward_threshold=str(settings.pipeline.reward_threshold),
        pipeline_interval=settings.pipeline.pipeline_interval_seconds,
    )
    try:
        await _start(components)
        await stop_event.wait()
    finally:
        await _stop(components)
        logger.info("burnbot_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
