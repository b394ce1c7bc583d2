"""In-memory ledger gateway for dry runs and tests.

Mirrors the effects of the three pipeline transactions on a set of virtual
balances so a full claim -> swap -> burn cycle can run without a network.
Failure injection hooks let tests reproduce outages, unconfirmed submissions,
and on-chain execution errors.

All transaction references have the form ``sim_<hex>``.
"""

import hashlib
import time
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import uuid4

from burnbot.exceptions import GatewayUnavailable
from burnbot.ledger import instructions
from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.types import MEMO_PROGRAM, Confirmation, LedgerTransaction
from burnbot.logging import get_logger

logger = get_logger(__name__)

_PDA_MARKER = b"ProgramDerivedAddress"


@dataclass
class _SimulatedTx:
    tx: LedgerTransaction
    slot: int
    block_time: int
    err: str | None = None
    held: bool = False
    details: dict = field(default_factory=dict)


class SimulatedLedgerGateway(LedgerGateway):
    """Virtual ledger with instant settlement.

    Balances are keyed by ``(account, mint)`` where mint None is the native
    balance. Effects are applied at submission time; confirmation only
    reports what was recorded.

    Args:
        token_decimals: Decimals per mint for get_token_decimals().
        fee: Simulated network fee reported in confirmation details.
    """

    def __init__(
        self,
        token_decimals: dict[str, int] | None = None,
        fee: Decimal = Decimal("0.000005"),
    ) -> None:
        self._balances: dict[tuple[str, str | None], Decimal] = {}
        self._accounts: set[str] = set()
        self._decimals = dict(token_decimals or {})
        self._fee = fee
        self._transactions: dict[str, _SimulatedTx] = {}
        self._memos: dict[str, str] = {}
        self._slot = 1
        self._connected = False

        # Failure injection
        self.unavailable = False
        self.fail_next_submissions = 0
        self.hold_confirmations = False
        self.execution_errors: dict[str, str] = {}

        self.submitted: list[LedgerTransaction] = []
        self.burned: dict[str, Decimal] = {}

    # ──────────────────────────────────────────────
    # Test setup helpers
    # ──────────────────────────────────────────────

    def set_balance(self, account: str, amount: Decimal, mint: str | None = None) -> None:
        """Set a virtual balance, creating the account if needed."""
        self._accounts.add(account)
        self._balances[(account, mint)] = amount

    def create_account(self, account: str) -> None:
        self._accounts.add(account)

    def release(self, tx_ref: str) -> None:
        """Let a held transaction report as confirmed."""
        self._transactions[tx_ref].held = False

    def inject_transaction(self, memo: str, err: str | None = None) -> str:
        """Record a transaction that landed outside this process.

        Used to simulate a submission whose response was lost: the ledger
        knows the transaction, but the caller never saw its reference.
        """
        tx_ref = self._new_ref()
        self._transactions[tx_ref] = _SimulatedTx(
            tx=LedgerTransaction(
                kind="external",
                signer="",
                instructions=[instructions.memo(memo, "")],
                memo=memo,
            ),
            slot=self._next_slot(),
            block_time=int(time.time()),
            err=err,
        )
        self._memos[memo] = tx_ref
        return tx_ref

    # ──────────────────────────────────────────────
    # LedgerGateway
    # ──────────────────────────────────────────────

    async def connect(self) -> None:
        self._connected = True
        logger.info("simulated_ledger_connected")

    async def close(self) -> None:
        self._connected = False
        logger.info("simulated_ledger_closed")

    async def get_balance(self, account: str, mint: str | None = None) -> Decimal:
        self._check_available()
        return self._balances.get((account, mint), Decimal("0"))

    async def get_account_exists(self, account: str) -> bool:
        self._check_available()
        return account in self._accounts

    async def get_token_decimals(self, mint: str) -> int:
        self._check_available()
        return self._decimals.get(mint, 6)

    async def submit_transaction(self, tx: LedgerTransaction) -> str:
        self._check_available()
        if self.fail_next_submissions > 0:
            self.fail_next_submissions -= 1
            raise GatewayUnavailable(f"Simulated submission failure for {tx.kind}")

        tx_ref = self._new_ref()
        err = self.execution_errors.get(tx.kind)
        details: dict = {}
        if err is None:
            details = self._apply(tx)

        self._transactions[tx_ref] = _SimulatedTx(
            tx=tx,
            slot=self._next_slot(),
            block_time=int(time.time()),
            err=err,
            held=self.hold_confirmations,
            details=details,
        )
        for ix in tx.instructions:
            if ix.program_id == MEMO_PROGRAM:
                self._memos[ix.data.decode("utf-8")] = tx_ref
        self.submitted.append(tx)

        logger.info(
            "simulated_transaction_submitted",
            kind=tx.kind,
            tx_ref=tx_ref,
            memo=tx.memo,
            err=err,
        )
        return tx_ref

    async def confirm(self, tx_ref: str) -> Confirmation:
        self._check_available()
        entry = self._transactions.get(tx_ref)
        if entry is None or entry.held:
            return Confirmation(tx_ref=tx_ref, confirmed=False)
        return Confirmation(
            tx_ref=tx_ref,
            confirmed=True,
            err=entry.err,
            details={
                "slot": entry.slot,
                "block_time": entry.block_time,
                "fee": str(self._fee),
                **entry.details,
            },
        )

    async def find_by_memo(self, memo: str) -> str | None:
        self._check_available()
        return self._memos.get(memo)

    def derive_program_address(self, seeds: list[str | bytes], program_id: str) -> str:
        hasher = hashlib.sha256()
        for seed in seeds:
            hasher.update(seed.encode("utf-8") if isinstance(seed, str) else seed)
        hasher.update(program_id.encode("utf-8"))
        hasher.update(_PDA_MARKER)
        return hasher.hexdigest()

    # ──────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────

    def _check_available(self) -> None:
        if self.unavailable:
            raise GatewayUnavailable("Simulated ledger unavailable")

    def _new_ref(self) -> str:
        return f"sim_{uuid4().hex}"

    def _next_slot(self) -> int:
        self._slot += 1
        return self._slot

    def _apply(self, tx: LedgerTransaction) -> dict:
        """Apply a transaction's balance effects. Returns confirmation details."""
        payload = tx.payload
        if tx.kind == "claim":
            vault = payload["vault"]
            amount = self._balances.get((vault, None), Decimal("0"))
            self._balances[(vault, None)] = Decimal("0")
            self._credit(tx.signer, None, amount)
            return {"claimed": str(amount)}

        if tx.kind == "swap":
            in_amount = Decimal(payload["in_amount"])
            out_amount = Decimal(payload["out_amount"])
            self._credit(tx.signer, None, -in_amount)
            self._credit(tx.signer, payload["output_mint"], out_amount)
            return {"in_amount": str(in_amount), "out_amount": str(out_amount)}

        if tx.kind == "burn":
            mint = payload["mint"]
            amount = Decimal(payload["amount"])
            held = self._balances.get((tx.signer, mint), Decimal("0"))
            if amount > held:
                raise GatewayUnavailable(
                    f"Simulated preflight failure: burn {amount} exceeds balance {held}"
                )
            self._credit(tx.signer, mint, -amount)
            self.burned[mint] = self.burned.get(mint, Decimal("0")) + amount
            return {"burned": str(amount)}

        return {}

    def _credit(self, account: str, mint: str | None, amount: Decimal) -> None:
        self._accounts.add(account)
        key = (account, mint)
        self._balances[key] = self._balances.get(key, Decimal("0")) + amount
