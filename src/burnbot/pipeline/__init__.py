"""Pipeline steps: vault check, claim, swap, burn."""

from burnbot.pipeline.burn import BurnExecutor
from burnbot.pipeline.claim import ClaimExecutor, derive_claim_accounts
from burnbot.pipeline.swap import SwapExecutor
from burnbot.pipeline.vault_monitor import VaultMonitor

__all__ = [
    "BurnExecutor",
    "ClaimExecutor",
    "SwapExecutor",
    "VaultMonitor",
    "derive_claim_accounts",
]
