"""Abstract ledger gateway interface.

Defines the contract for ledger access. Pipeline and recovery code depends
only on this interface; the concrete binding (simulated or a production RPC
client) is injected at startup.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from burnbot.ledger.types import (
    ASSOCIATED_TOKEN_PROGRAM,
    TOKEN_PROGRAM,
    Confirmation,
    LedgerTransaction,
)


class LedgerGateway(ABC):
    """Abstract base class for ledger clients.

    Implementations wrap transport failures in GatewayUnavailable so the
    retry helpers can tell transient errors from programming errors.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the underlying connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connection resources."""
        ...

    @abstractmethod
    async def get_balance(self, account: str, mint: str | None = None) -> Decimal:
        """Return the account's balance in UI units.

        With ``mint`` None the native balance is returned, otherwise the
        balance of the owner's token account for that mint.
        """
        ...

    @abstractmethod
    async def get_account_exists(self, account: str) -> bool:
        """Return True if the account exists on-chain."""
        ...

    @abstractmethod
    async def get_token_decimals(self, mint: str) -> int:
        """Return the decimals configured on a token mint."""
        ...

    @abstractmethod
    async def submit_transaction(self, tx: LedgerTransaction) -> str:
        """Sign and submit a transaction, returning its reference (signature).

        ``tx.instructions`` are submitted as given. For a swap they are
        appended to the aggregator transaction in ``payload``. Lookups by
        find_by_memo only see memos carried as memo-program instructions;
        ``tx.memo`` is informational.

        Raises:
            GatewayUnavailable: If the transaction could not be submitted.
                No reference was issued, so resubmission is safe.
        """
        ...

    @abstractmethod
    async def confirm(self, tx_ref: str) -> Confirmation:
        """Look up whether a transaction has been confirmed. Idempotent."""
        ...

    @abstractmethod
    async def find_by_memo(self, memo: str) -> str | None:
        """Return the reference of a recent transaction carrying ``memo``."""
        ...

    @abstractmethod
    def derive_program_address(self, seeds: list[str | bytes], program_id: str) -> str:
        """Derive a program address from seeds. Pure, no I/O."""
        ...

    def derive_associated_token_address(self, owner: str, mint: str) -> str:
        """Associated token account for ``owner`` and ``mint``."""
        return self.derive_program_address(
            [owner, TOKEN_PROGRAM, mint], ASSOCIATED_TOKEN_PROGRAM
        )
