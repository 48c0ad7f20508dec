"""
Handshake program instruction encoders

Instruction data is the 8-byte discriminator sha256("global:<name>")[:8]
followed by Borsh-encoded arguments. Account lists follow the program's
account structs in declaration order.
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from services.address_deriver import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)

RENT_SYSVAR_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


@dataclass(frozen=True)
class InstructionLayout:
    """Where the interesting accounts sit in one instruction's account list"""
    name: str
    log_name: str
    pool_index: int
    transfer_index: Optional[int] = None


INSTRUCTION_LAYOUTS: Dict[str, InstructionLayout] = {
    layout.name: layout
    for layout in (
        InstructionLayout("init_pool", "InitPool", pool_index=2),
        InstructionLayout("create_transfer", "CreateTransfer", pool_index=1, transfer_index=5),
        InstructionLayout("claim_transfer", "ClaimTransfer", pool_index=1, transfer_index=5),
        InstructionLayout("cancel_transfer", "CancelTransfer", pool_index=1, transfer_index=5),
        InstructionLayout("reject_transfer", "RejectTransfer", pool_index=1, transfer_index=5),
        InstructionLayout("decline_transfer", "DeclineTransfer", pool_index=1, transfer_index=5),
        InstructionLayout("expire_transfer", "ExpireTransfer", pool_index=1, transfer_index=5),
        InstructionLayout("pause_pool", "PausePool", pool_index=1),
        InstructionLayout("reset_pool", "ResetPool", pool_index=1),
        InstructionLayout("close_pool", "ClosePool", pool_index=1),
    )
}

DISCRIMINATORS: Dict[bytes, InstructionLayout] = {
    instruction_discriminator(name): layout for name, layout in INSTRUCTION_LAYOUTS.items()
}


def identify_instruction(data: bytes) -> Optional[InstructionLayout]:
    return DISCRIMINATORS.get(bytes(data[:8]))


# ---------------------------------------------------------------------------
# Borsh helpers
# ---------------------------------------------------------------------------

def borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def borsh_option_u8(value: Optional[int]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + struct.pack("<B", value)


def _writable(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=True)


def _readonly(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=False)


def _instruction(program_id: Pubkey, name: str, args: bytes, accounts: List[AccountMeta]) -> Instruction:
    return Instruction(program_id, instruction_discriminator(name) + args, accounts)


# ---------------------------------------------------------------------------
# Pool instructions
# ---------------------------------------------------------------------------

def init_pool(
    program_id: Pubkey,
    operator: Pubkey,
    mint: Pubkey,
    pool: Pubkey,
    pool_token_account: Pubkey,
    pool_id: Pubkey,
    transfer_fee_bps: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    args = bytes(pool_id) + struct.pack("<H", transfer_fee_bps)
    return _instruction(program_id, "init_pool", args, [
        _writable(operator, signer=True),
        _readonly(mint),
        _writable(pool),
        _writable(pool_token_account),
        _readonly(token_program),
        _readonly(ASSOCIATED_TOKEN_PROGRAM_ID),
        _readonly(SYSTEM_PROGRAM_ID),
        _readonly(RENT_SYSVAR_ID),
    ])


def pause_pool(program_id: Pubkey, operator: Pubkey, pool: Pubkey, is_paused: bool) -> Instruction:
    return _instruction(program_id, "pause_pool", struct.pack("<?", is_paused), [
        _writable(operator, signer=True),
        _writable(pool),
    ])


def reset_pool(program_id: Pubkey, operator: Pubkey, pool: Pubkey) -> Instruction:
    return _instruction(program_id, "reset_pool", b"", [
        _writable(operator, signer=True),
        _writable(pool),
    ])


def close_pool(
    program_id: Pubkey,
    operator: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    operator_token_account: Pubkey,
    withdrawal_amount: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return _instruction(program_id, "close_pool", struct.pack("<Q", withdrawal_amount), [
        _writable(operator, signer=True),
        _writable(pool),
        _readonly(mint),
        _writable(pool_token_account),
        _writable(operator_token_account),
        _readonly(token_program),
    ])


# ---------------------------------------------------------------------------
# Transfer instructions
# ---------------------------------------------------------------------------

def create_transfer(
    program_id: Pubkey,
    sender: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    sender_token_account: Pubkey,
    transfer: Pubkey,
    recipient: Pubkey,
    nonce: int,
    amount: int,
    memo: str,
    claimable_after: int,
    claimable_until: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    args = (
        bytes(recipient)
        + struct.pack("<QQ", nonce, amount)
        + borsh_string(memo)
        + struct.pack("<qq", claimable_after, claimable_until)
    )
    return _instruction(program_id, "create_transfer", args, [
        _writable(sender, signer=True),
        _writable(pool),
        _readonly(mint),
        _writable(pool_token_account),
        _writable(sender_token_account),
        _writable(transfer),
        _readonly(token_program),
        _readonly(SYSTEM_PROGRAM_ID),
        _readonly(ASSOCIATED_TOKEN_PROGRAM_ID),
    ])


def claim_transfer(
    program_id: Pubkey,
    recipient: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    recipient_token_account: Pubkey,
    transfer: Pubkey,
    sender: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return _instruction(program_id, "claim_transfer", b"", [
        _writable(recipient, signer=True),
        _writable(pool),
        _readonly(mint),
        _writable(pool_token_account),
        _writable(recipient_token_account),
        _writable(transfer),
        _writable(sender),
        _readonly(token_program),
    ])


def cancel_transfer(
    program_id: Pubkey,
    sender: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    sender_token_account: Pubkey,
    transfer: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return _instruction(program_id, "cancel_transfer", b"", [
        _writable(sender, signer=True),
        _writable(pool),
        _readonly(mint),
        _writable(pool_token_account),
        _writable(sender_token_account),
        _writable(transfer),
        _readonly(token_program),
    ])


def _refund_accounts(
    authority: AccountMeta,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    sender_token_account: Pubkey,
    transfer: Pubkey,
    sender: Pubkey,
    token_program: Pubkey,
) -> List[AccountMeta]:
    return [
        authority,
        _writable(pool),
        _readonly(mint),
        _writable(pool_token_account),
        _writable(sender_token_account),
        _writable(transfer),
        _writable(sender),
        _readonly(token_program),
    ]


def reject_transfer(
    program_id: Pubkey,
    operator: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    sender_token_account: Pubkey,
    transfer: Pubkey,
    sender: Pubkey,
    reason: Optional[int] = None,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return _instruction(program_id, "reject_transfer", borsh_option_u8(reason), _refund_accounts(
        _writable(operator, signer=True), pool, mint, pool_token_account,
        sender_token_account, transfer, sender, token_program,
    ))


def decline_transfer(
    program_id: Pubkey,
    recipient: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    sender_token_account: Pubkey,
    transfer: Pubkey,
    sender: Pubkey,
    reason: Optional[int] = None,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return _instruction(program_id, "decline_transfer", borsh_option_u8(reason), _refund_accounts(
        _writable(recipient, signer=True), pool, mint, pool_token_account,
        sender_token_account, transfer, sender, token_program,
    ))


def expire_transfer(
    program_id: Pubkey,
    caller: Pubkey,
    pool: Pubkey,
    mint: Pubkey,
    pool_token_account: Pubkey,
    sender_token_account: Pubkey,
    transfer: Pubkey,
    sender: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return _instruction(program_id, "expire_transfer", b"", _refund_accounts(
        _readonly(caller, signer=True), pool, mint, pool_token_account,
        sender_token_account, transfer, sender, token_program,
    ))
