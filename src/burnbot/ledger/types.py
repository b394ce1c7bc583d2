"""Ledger-specific type definitions and utility functions.

All monetary values use Decimal. Never use float for balances or amounts.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

SYSTEM_PROGRAM = "11111111111111111111111111111111"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
COMPUTE_BUDGET_PROGRAM = "ComputeBudget111111111111111111111111111111"
MEMO_PROGRAM = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"


@dataclass
class AccountMeta:
    """An account referenced by an instruction."""

    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass
class Instruction:
    """A single program instruction."""

    program_id: str
    accounts: list[AccountMeta] = field(default_factory=list)
    data: bytes = b""


@dataclass
class LedgerTransaction:
    """A transaction ready for signing and submission.

    ``kind`` names the pipeline step ("claim", "swap", "burn"). ``payload``
    carries step parameters the gateway may need, for example the
    aggregator's serialized transaction for a swap.
    """

    kind: str
    signer: str
    instructions: list[Instruction] = field(default_factory=list)
    memo: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class Confirmation:
    """Result of a confirmation lookup for a submitted transaction."""

    tx_ref: str
    confirmed: bool
    err: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value down to the nearest step increment.

    Uses integer division to ensure we always round DOWN (never up),
    which prevents burning more than the wallet actually holds.

    Args:
        value: The raw amount to round.
        step: The minimum increment (e.g., Decimal("0.000001") for 6 decimals).

    Returns:
        The value rounded down to the nearest step.
    """
    return (value // step) * step


def step_for_decimals(decimals: int) -> Decimal:
    """Smallest representable unit for a token with ``decimals`` places."""
    return Decimal(1).scaleb(-decimals)


def to_raw_units(amount: Decimal, decimals: int) -> int:
    """Convert a UI amount to integer base units, rounding down."""
    return int(round_to_step(amount, step_for_decimals(decimals)).scaleb(decimals))


def pipeline_memo(record_id: str, step: str) -> str:
    """Memo attached to every pipeline transaction for later lookup."""
    return f"burnbot:{record_id}:{step}"
