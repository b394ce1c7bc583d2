from burnbot.pricing.oracle import (
    PriceOracle,
    PriceReader,
    PriceReading,
    PriceStatus,
    StaticPriceOracle,
)

__all__ = [
    "PriceOracle",
    "PriceReader",
    "PriceReading",
    "PriceStatus",
    "StaticPriceOracle",
]
