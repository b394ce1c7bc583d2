"""Price oracle interface and the reader that applies the fallback rate.

The oracle is only used to value rewards and burns in USD for reporting, so
an outage must not stop the pipeline. PriceReader turns an oracle failure
into an explicit ``degraded`` reading carrying the configured fallback rate
instead of failing silently.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from burnbot.exceptions import GatewayUnavailable
from burnbot.logging import get_logger

logger = get_logger(__name__)


class PriceStatus(str, Enum):
    LIVE = "live"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class PriceReading:
    """A rate and where it came from."""

    rate: Decimal
    status: PriceStatus
    source: str

    @property
    def degraded(self) -> bool:
        return self.status == PriceStatus.DEGRADED


class PriceOracle(ABC):
    """Abstract rate source."""

    @abstractmethod
    async def get_rate(self, asset_a: str, asset_b: str) -> Decimal:
        """Return how many ``asset_b`` one unit of ``asset_a`` is worth."""
        ...


class StaticPriceOracle(PriceOracle):
    """Fixed-rate oracle used for dry runs and tests.

    Set ``available`` to False to simulate an outage.
    """

    def __init__(self, rates: dict[tuple[str, str], Decimal]) -> None:
        self._rates = dict(rates)
        self.available = True

    def set_rate(self, asset_a: str, asset_b: str, rate: Decimal) -> None:
        self._rates[(asset_a, asset_b)] = rate

    async def get_rate(self, asset_a: str, asset_b: str) -> Decimal:
        if not self.available:
            raise GatewayUnavailable("Simulated price oracle unavailable")
        try:
            return self._rates[(asset_a, asset_b)]
        except KeyError:
            raise GatewayUnavailable(f"No rate for {asset_a}/{asset_b}") from None


class PriceReader:
    """Reads a single rate with an explicit degraded fallback.

    Args:
        oracle: Live rate source.
        fallback_rate: Constant used when the oracle fails.
        asset_a: Base asset (default "SOL").
        asset_b: Quote asset (default "USD").
    """

    def __init__(
        self,
        oracle: PriceOracle,
        fallback_rate: Decimal,
        asset_a: str = "SOL",
        asset_b: str = "USD",
    ) -> None:
        self._oracle = oracle
        self._fallback_rate = fallback_rate
        self._asset_a = asset_a
        self._asset_b = asset_b

    async def read(self) -> PriceReading:
        try:
            rate = await self._oracle.get_rate(self._asset_a, self._asset_b)
        except Exception as e:
            logger.warning(
                "price_oracle_degraded",
                pair=f"{self._asset_a}/{self._asset_b}",
                fallback_rate=str(self._fallback_rate),
                error=str(e),
            )
            return PriceReading(
                rate=self._fallback_rate,
                status=PriceStatus.DEGRADED,
                source="fallback",
            )
        return PriceReading(
            rate=rate, status=PriceStatus.LIVE, source=type(self._oracle).__name__
        )
