"""Instruction builders for the claim and burn transactions.

Byte layouts follow the on-chain programs: compute-budget instructions take
a one-byte tag followed by a little-endian integer, SPL Token ``Burn`` is tag
8 followed by a u64 amount, and the fee program's collect instruction is an
8-byte Anchor discriminator with no arguments.
"""

import struct

from burnbot.ledger.types import (
    ASSOCIATED_TOKEN_PROGRAM,
    COMPUTE_BUDGET_PROGRAM,
    MEMO_PROGRAM,
    SYSTEM_PROGRAM,
    TOKEN_PROGRAM,
    AccountMeta,
    Instruction,
)

# Anchor discriminator for collect_coin_creator_fee
COLLECT_CREATOR_FEE_DISCRIMINATOR = bytes([160, 57, 89, 42, 181, 139, 43, 66])

_SET_COMPUTE_UNIT_LIMIT = 2
_SET_COMPUTE_UNIT_PRICE = 3
_SPL_BURN = 8
_ATA_CREATE_IDEMPOTENT = 1


def compute_unit_limit(units: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM,
        data=struct.pack("<BI", _SET_COMPUTE_UNIT_LIMIT, units),
    )


def compute_unit_price(micro_lamports: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM,
        data=struct.pack("<BQ", _SET_COMPUTE_UNIT_PRICE, micro_lamports),
    )


def create_associated_account_idempotent(
    payer: str, associated: str, owner: str, mint: str
) -> Instruction:
    """Create an associated token account, succeeding if it already exists."""
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM,
        accounts=[
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(associated, is_writable=True),
            AccountMeta(owner),
            AccountMeta(mint),
            AccountMeta(SYSTEM_PROGRAM),
            AccountMeta(TOKEN_PROGRAM),
        ],
        data=bytes([_ATA_CREATE_IDEMPOTENT]),
    )


def collect_creator_fee(
    program_id: str,
    quote_mint: str,
    creator: str,
    vault_authority: str,
    vault_token_account: str,
    creator_token_account: str,
    event_authority: str,
) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=[
            AccountMeta(quote_mint),
            AccountMeta(TOKEN_PROGRAM),
            AccountMeta(creator, is_signer=True),
            AccountMeta(vault_authority),
            AccountMeta(vault_token_account, is_writable=True),
            AccountMeta(creator_token_account, is_writable=True),
            AccountMeta(event_authority),
            AccountMeta(program_id),
        ],
        data=COLLECT_CREATOR_FEE_DISCRIMINATOR,
    )


def burn(token_account: str, mint: str, owner: str, raw_amount: int) -> Instruction:
    return Instruction(
        program_id=TOKEN_PROGRAM,
        accounts=[
            AccountMeta(token_account, is_writable=True),
            AccountMeta(mint, is_writable=True),
            AccountMeta(owner, is_signer=True),
        ],
        data=struct.pack("<BQ", _SPL_BURN, raw_amount),
    )


def memo(text: str, signer: str) -> Instruction:
    return Instruction(
        program_id=MEMO_PROGRAM,
        accounts=[AccountMeta(signer, is_signer=True)],
        data=text.encode("utf-8"),
    )
