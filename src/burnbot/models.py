"""Shared data models for the claim -> swap -> burn pipeline.

CRITICAL: All monetary values use Decimal. Never use float for SOL amounts,
token amounts, or USD values. Timestamps are Unix epoch seconds.

Records are plain dataclasses. ``to_document`` / ``from_document`` convert
them to and from the JSON-safe dicts the record store persists (Decimals as
strings, enums as their values).
"""

from __future__ import annotations

import time
import types
import typing
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar
from uuid import uuid4

from burnbot.exceptions import InvalidStatusTransition


def new_id() -> str:
    """Generate a record id."""
    return uuid4().hex


class RewardStatus(str, Enum):
    """Lifecycle of a claimed reward. Ordered except for FAILED."""

    PENDING = "pending"
    CLAIMED = "claimed"
    BOUGHT = "bought"
    BURNED = "burned"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RewardStatus.BURNED, RewardStatus.FAILED)


_STATUS_ORDER = {
    RewardStatus.PENDING: 0,
    RewardStatus.CLAIMED: 1,
    RewardStatus.BOUGHT: 2,
    RewardStatus.BURNED: 3,
}


def next_status(status: RewardStatus) -> RewardStatus | None:
    """Return the status that follows ``status`` on the happy path."""
    if status.is_terminal:
        return None
    rank = _STATUS_ORDER[status] + 1
    return next(s for s, r in _STATUS_ORDER.items() if r == rank)


def validate_transition(current: RewardStatus, new: RewardStatus) -> None:
    """Reject any status change other than one step forward or to FAILED.

    Same-status updates are allowed so non-status fields (pending markers,
    error details) can be written without a transition.

    Raises:
        InvalidStatusTransition: On regressions, skips, or leaving a terminal state.
    """
    if current == new:
        return
    if current.is_terminal:
        raise InvalidStatusTransition(
            f"Cannot move from terminal status {current.value} to {new.value}"
        )
    if new == RewardStatus.FAILED:
        return
    if next_status(current) != new:
        raise InvalidStatusTransition(
            f"Illegal transition {current.value} -> {new.value}"
        )


@dataclass
class RewardRecord:
    """One claim attempt and everything that happened to its proceeds."""

    reward_amount: Decimal  # SOL observed in the vault before claiming
    reward_amount_usd: Decimal
    id: str = field(default_factory=new_id)
    status: RewardStatus = RewardStatus.PENDING
    claim_tx_ref: str | None = None
    tokens_bought: Decimal | None = None
    buy_tx_ref: str | None = None
    sol_amount_used: Decimal | None = None
    sol_amount_reserved: Decimal | None = None
    tokens_burned: Decimal | None = None
    burn_tx_ref: str | None = None
    usd_rate_degraded: bool = False
    # Write-ahead marker: set after submission, cleared on the status write
    pending_step: str | None = None
    pending_tx_ref: str | None = None
    pending_details: dict[str, str] = field(default_factory=dict)
    pending_submitted_at: float | None = None
    error_message: str | None = None
    error_retryable: bool = False
    recovery_attempts: int = 0
    source: str = "creator_vault"
    vault_address: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def usd_value_of(self, sol_amount: Decimal) -> Decimal:
        """USD value of ``sol_amount`` at the rate this reward was valued at."""
        if self.reward_amount <= 0:
            return Decimal("0")
        rate = self.reward_amount_usd / self.reward_amount
        return (sol_amount * rate).quantize(Decimal("0.01"))

    def check_invariants(self) -> None:
        """Verify that transaction references agree with the status.

        Raises:
            InvalidStatusTransition: If a reference is set on a status that
                cannot carry it.
        """
        if self.claim_tx_ref and self.status == RewardStatus.PENDING:
            raise InvalidStatusTransition("claim_tx_ref set on a pending reward")
        if self.buy_tx_ref and self.status in (
            RewardStatus.PENDING,
            RewardStatus.CLAIMED,
        ):
            raise InvalidStatusTransition(
                f"buy_tx_ref set on a {self.status.value} reward"
            )
        if self.burn_tx_ref and self.status != RewardStatus.BURNED:
            raise InvalidStatusTransition(
                f"burn_tx_ref set on a {self.status.value} reward"
            )


def pending_marker(step: str, tx_ref: str, **details: Any) -> dict[str, Any]:
    """Field changes that record a submitted but unconfirmed transaction."""
    return {
        "pending_step": step,
        "pending_tx_ref": tx_ref,
        "pending_details": {k: str(v) for k, v in details.items()},
        "pending_submitted_at": time.time(),
    }


def cleared_marker() -> dict[str, Any]:
    """Field changes that clear the pending marker."""
    return {
        "pending_step": None,
        "pending_tx_ref": None,
        "pending_details": {},
        "pending_submitted_at": None,
    }


@dataclass
class BurnRecord:
    """A confirmed burn, linked 1:1 to the reward that funded it."""

    reward_id: str
    amount: Decimal  # tokens burned
    burn_tx_ref: str
    sol_spent: Decimal
    sol_spent_usd: Decimal
    burn_type: str = "buyback"
    buy_tx_ref: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)


@dataclass
class MetricsSnapshot:
    """Point-in-time supply summary. Append-only; latest wins."""

    total_supply: Decimal
    circulating_supply: Decimal
    reserve_wallet_balance: Decimal
    total_burned: Decimal = Decimal("0")
    buyback_burned: Decimal = Decimal("0")
    milestone_burned: Decimal = Decimal("0")
    recovery_burned: Decimal = Decimal("0")
    reserve_percentage: Decimal | None = None
    last_burn_at: float | None = None
    update_reason: str = ""
    previous_reserve_balance: Decimal | None = None
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)


@dataclass
class MilestoneRecord:
    """A scheduled burn keyed by market-cap threshold. Read-only here."""

    market_cap: Decimal
    burn_amount: Decimal
    percent_of_supply: Decimal
    completed: bool = False
    tx_ref: str | None = None
    completed_at: float | None = None
    id: str = field(default_factory=new_id)


@dataclass
class VaultBalance:
    """Claimable reward balance observed in the creator vault."""

    available: Decimal
    exists: bool
    account: str = ""


@dataclass
class Quote:
    """Swap aggregator quote. ``raw`` is passed back to build the transaction."""

    input_mint: str
    output_mint: str
    in_amount: Decimal
    expected_out: Decimal
    min_out: Decimal
    slippage_bps: int
    price_impact_bps: Decimal = Decimal("0")
    raw: dict[str, Any] = field(default_factory=dict)


class RunState(str, Enum):
    """Pipeline run state machine."""

    CHECK_THRESHOLD = "check_threshold"
    CLAIM = "claim"
    SWAP = "swap"
    BURN = "burn"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """Outcome of one orchestrator run or resume."""

    run_id: str
    state: RunState
    reason: str | None = None
    failed_step: RunState | None = None
    error: Exception | None = None
    available: Decimal | None = None
    reward: RewardRecord | None = None
    burn: BurnRecord | None = None
    simulated: bool = False
    started_at: float = field(default_factory=time.time)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe summary for logs and the status API."""
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "reason": self.reason,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "available": str(self.available) if self.available is not None else None,
            "reward": to_document(self.reward) if self.reward else None,
            "burn": to_document(self.burn) if self.burn else None,
            "simulated": self.simulated,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 3),
        }


# ──────────────────────────────────────────────
# Document conversion
# ──────────────────────────────────────────────

RecordT = TypeVar("RecordT")


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(hint: Any, raw: Any) -> Any:
    if raw is None:
        return None
    origin = typing.get_origin(hint)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        hint = args[0] if len(args) == 1 else Any
    if hint is Decimal:
        return Decimal(str(raw))
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(raw)
    return raw


def to_document(record: Any) -> dict[str, Any]:
    """Convert a record dataclass into a JSON-safe dict."""
    return _encode(asdict(record))


def from_document(cls: type[RecordT], document: dict[str, Any]) -> RecordT:
    """Rebuild a record dataclass from a stored document.

    Unknown keys are ignored and missing keys fall back to field defaults,
    so documents written by older versions still load.
    """
    hints = typing.get_type_hints(cls)
    kwargs = {
        f.name: _decode(hints[f.name], document[f.name])
        for f in fields(cls)  # type: ignore[arg-type]
        if f.name in document
    }
    return cls(**kwargs)
