"""Shared test fixtures for burnbot."""

from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

from burnbot.config import (
    AppSettings,
    LedgerSettings,
    PipelineSettings,
    RecoverySettings,
    RetrySettings,
    StorageSettings,
)
from burnbot.ledger.simulated import SimulatedLedgerGateway
from burnbot.main import build_components
from burnbot.pricing.oracle import StaticPriceOracle
from burnbot.storage.database import RecordDatabase
from burnbot.storage.store import RecordStore
from burnbot.swap.simulated import SimulatedSwapService

TOKEN_MINT = "BurnTokenMint11111111111111111111111111111"
RESERVE_WALLET = "ReserveWa11et1111111111111111111111111111111"


def make_settings(db_path: Path | str = ":memory:", **overrides) -> AppSettings:
    """AppSettings for tests: dry run, no retry delays, zero grace period."""
    groups = {
        "log_level": "DEBUG",
        "ledger": LedgerSettings(token_mint=TOKEN_MINT, reserve_wallet=RESERVE_WALLET),
        "pipeline": PipelineSettings(dry_run=True),
        "retry": RetrySettings(
            read_max_retries=3,
            retry_base_delay=0.0,
            submit_max_attempts=3,
            confirm_timeout_seconds=0.0,
            confirm_poll_interval=0.0,
        ),
        "recovery": RecoverySettings(grace_period_seconds=0.0, resume_after_recovery=False),
        "storage": StorageSettings(db_path=str(db_path)),
    }
    groups.update(overrides)
    return AppSettings(**groups)


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path / "records.db")


@pytest.fixture
def gateway(settings: AppSettings) -> SimulatedLedgerGateway:
    """Simulated ledger with 1 SOL claimable in the vault."""
    gw = SimulatedLedgerGateway(token_decimals={TOKEN_MINT: 6})
    gw.set_balance(settings.ledger.vault_address, Decimal("1.0"))
    gw.create_account(settings.ledger.authority)
    return gw


@pytest.fixture
def swap_service() -> SimulatedSwapService:
    """100,000 tokens per SOL, 6 decimals."""
    return SimulatedSwapService(Decimal("100000"), token_decimals=6)


@pytest.fixture
def oracle() -> StaticPriceOracle:
    return StaticPriceOracle({("SOL", "USD"): Decimal("150")})


@pytest_asyncio.fixture
async def database(tmp_path: Path):
    async with RecordDatabase(str(tmp_path / "store.db")) as db:
        yield db


@pytest_asyncio.fixture
async def store(database: RecordDatabase) -> RecordStore:
    return RecordStore(database)


@pytest_asyncio.fixture
async def components(
    settings: AppSettings,
    gateway: SimulatedLedgerGateway,
    swap_service: SimulatedSwapService,
    oracle: StaticPriceOracle,
):
    """Fully wired component graph over a connected temporary database."""
    built = build_components(settings, gateway, swap_service, oracle)
    await built["database"].connect()
    yield built
    await built["database"].close()


@pytest.fixture
def settings_factory(tmp_path: Path):
    """Build AppSettings with some groups replaced, on a fresh database path."""

    def _make(**overrides) -> AppSettings:
        return make_settings(tmp_path / "custom.db", **overrides)

    return _make
