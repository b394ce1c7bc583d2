"""Custom exceptions for the claim/swap/burn pipeline.

All pipeline, ledger and storage exceptions live here to avoid circular
imports between modules. ``retryable`` marks transient classes: the step
failed but trying again on a later tick is expected to help.
"""


class BurnBotError(Exception):
    """Base exception for all burnbot errors."""

    retryable: bool = False


class ConfigurationError(BurnBotError):
    """Raised when settings or bindings are inconsistent at startup."""


class NoRewardsAvailable(BurnBotError):
    """Raised when the vault holds nothing to claim. Expected, not a fault."""


class BelowThreshold(BurnBotError):
    """Raised when claimable rewards are below the configured minimum."""

    def __init__(self, available: object, threshold: object) -> None:
        super().__init__(f"Available {available} below threshold {threshold}")
        self.available = available
        self.threshold = threshold


class GatewayUnavailable(BurnBotError):
    """Raised when the ledger RPC cannot be reached or answers with an error."""

    retryable = True


class QuoteOrSwapServiceError(BurnBotError):
    """Raised on swap aggregator failures, including malformed responses."""

    retryable = True


class SlippageExceeded(BurnBotError):
    """Raised when a quote or fill exceeds the configured slippage tolerance."""

    retryable = True


class ConfirmationTimeout(BurnBotError):
    """Raised when a submitted transaction is not confirmed in time.

    The outcome is ambiguous: the transaction may still land. Callers must
    leave it for reconciliation instead of treating it as failed.
    """

    def __init__(self, tx_ref: str, timeout: float) -> None:
        super().__init__(f"Transaction {tx_ref} not confirmed within {timeout}s")
        self.tx_ref = tx_ref
        self.timeout = timeout


class TransactionFailed(BurnBotError):
    """Raised when the ledger confirms a transaction with an execution error."""

    def __init__(self, tx_ref: str, err: object) -> None:
        super().__init__(f"Transaction {tx_ref} failed on-chain: {err}")
        self.tx_ref = tx_ref
        self.err = err


class InsufficientTokenBalance(BurnBotError):
    """Raised when the wallet holds no tokens to burn."""


class RecordNotFound(BurnBotError):
    """Raised when a record id does not exist in its collection."""


class InvalidStatusTransition(BurnBotError):
    """Raised when a reward status update would regress or skip illegally."""


class RecordStoreCorruption(BurnBotError):
    """Raised when a stored document cannot be decoded.

    The corrupt document is copied aside before raising; repair is manual.
    """
