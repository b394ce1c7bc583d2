"""Ledger access layer: gateway interface, transaction types, simulated binding."""

from burnbot.ledger.gateway import LedgerGateway
from burnbot.ledger.simulated import SimulatedLedgerGateway
from burnbot.ledger.types import Confirmation, LedgerTransaction

__all__ = [
    "Confirmation",
    "LedgerGateway",
    "LedgerTransaction",
    "SimulatedLedgerGateway",
]
