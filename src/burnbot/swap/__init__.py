from burnbot.swap.service import SwapService, parse_quote
from burnbot.swap.simulated import SimulatedSwapService

__all__ = ["SimulatedSwapService", "SwapService", "parse_quote"]
