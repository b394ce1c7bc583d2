"""Tests for PriceReader's live and degraded readings."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from burnbot.pricing.oracle import PriceReader, PriceStatus, StaticPriceOracle


@pytest.mark.asyncio
async def test_live_reading():
    reader = PriceReader(StaticPriceOracle({("SOL", "USD"): Decimal("172.5")}), Decimal("150"))

    reading = await reader.read()

    assert reading.rate == Decimal("172.5")
    assert reading.status == PriceStatus.LIVE
    assert reading.source == "StaticPriceOracle"
    assert not reading.degraded


@pytest.mark.asyncio
async def test_outage_falls_back_explicitly():
    oracle = StaticPriceOracle({("SOL", "USD"): Decimal("172.5")})
    oracle.available = False
    reader = PriceReader(oracle, Decimal("150"))

    reading = await reader.read()

    assert reading.rate == Decimal("150")
    assert reading.degraded
    assert reading.source == "fallback"


@pytest.mark.asyncio
async def test_missing_pair_falls_back():
    reader = PriceReader(StaticPriceOracle({}), Decimal("150"))
    assert (await reader.read()).status == PriceStatus.DEGRADED


@pytest.mark.asyncio
async def test_unexpected_oracle_error_falls_back():
    oracle = MagicMock()
    oracle.get_rate = AsyncMock(side_effect=ValueError("bad payload"))
    reader = PriceReader(oracle, Decimal("99"))

    reading = await reader.read()

    assert reading.rate == Decimal("99")
    assert reading.degraded
