"""
Address Deriver - deterministic ledger addresses

Pools and transfers live at program-derived addresses: each entity type has a
fixed seed tag, followed by the varying fields. Derivation is pure; the same
inputs always yield the same address and no bump search result is cached.
"""

import hashlib
from typing import Tuple, Union

from solders.pubkey import Pubkey

POOL_SEED = b"pool"
SENDER_SEED = b"sender"
RECIPIENT_SEED = b"recipient"
NONCE_SEED = b"nonce"

U64_MAX = 2 ** 64 - 1

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

PubkeyLike = Union[Pubkey, str]


def as_pubkey(value: PubkeyLike) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def nonce_bytes(nonce: int) -> bytes:
    if nonce < 0 or nonce > U64_MAX:
        raise ValueError(f"nonce out of u64 range: {nonce}")
    return nonce.to_bytes(8, "little")


def named_pool_id(pool_name: str) -> Pubkey:
    """Stable 32-byte pool identifier from a human-readable pool name"""
    return Pubkey.from_bytes(hashlib.sha256(pool_name.encode("utf-8")).digest())


def derive_pool_address(pool_id: PubkeyLike, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [POOL_SEED, bytes(as_pubkey(pool_id))],
        as_pubkey(program_id),
    )


def derive_named_pool_address(pool_name: str, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return derive_pool_address(named_pool_id(pool_name), program_id)


def derive_transfer_address(
    sender: PubkeyLike,
    recipient: PubkeyLike,
    nonce: int,
    program_id: PubkeyLike,
) -> Tuple[Pubkey, int]:
    """Transfer record address for one (sender, recipient, nonce) triple"""
    return Pubkey.find_program_address(
        [
            SENDER_SEED, bytes(as_pubkey(sender)),
            RECIPIENT_SEED, bytes(as_pubkey(recipient)),
            NONCE_SEED, nonce_bytes(nonce),
        ],
        as_pubkey(program_id),
    )


def token_program_for(is_token_2022: bool) -> Pubkey:
    return TOKEN_2022_PROGRAM_ID if is_token_2022 else TOKEN_PROGRAM_ID


def derive_associated_token_address(
    owner: PubkeyLike,
    mint: PubkeyLike,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Pubkey:
    """Associated token account; owners may be off-curve (pool vaults are)"""
    address, _ = Pubkey.find_program_address(
        [bytes(as_pubkey(owner)), bytes(token_program), bytes(as_pubkey(mint))],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
