"""Creator vault balance check.

A missing vault account or an empty balance is the normal "nothing to claim"
case and returns available=0. Gateway outages propagate as
GatewayUnavailable after the read retries are exhausted so the orchestrator
can tell them apart from an empty vault.
"""

from decimal import Decimal

from burnbot.config import LedgerSettings, RetrySettings
from burnbot.ledger.gateway import LedgerGateway
from burnbot.logging import get_logger
from burnbot.models import VaultBalance
from burnbot.retry import retry_read

logger = get_logger(__name__)


class VaultMonitor:
    """Reads the claimable reward balance from the creator vault."""

    def __init__(
        self,
        gateway: LedgerGateway,
        ledger_settings: LedgerSettings,
        retry_settings: RetrySettings,
    ) -> None:
        self._gateway = gateway
        self._vault = ledger_settings.vault_address
        self._retry = retry_settings

    async def check_available(self) -> VaultBalance:
        exists = await retry_read(self._retry, self._gateway.get_account_exists, self._vault)
        if not exists:
            logger.info("vault_account_missing", vault=self._vault)
            return VaultBalance(available=Decimal("0"), exists=False, account=self._vault)

        balance = await retry_read(self._retry, self._gateway.get_balance, self._vault)
        logger.debug("vault_balance_checked", vault=self._vault, available=str(balance))
        return VaultBalance(available=max(balance, Decimal("0")), exists=True, account=self._vault)
