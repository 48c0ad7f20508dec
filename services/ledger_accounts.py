"""
Ledger account decoding

The handshake program stores two account kinds. Each is prefixed with an
8-byte discriminator (sha256("account:<Name>")[:8]); decode_account dispatches
on it and returns a typed state object. Untyped account data never leaves
this module.
"""

import hashlib
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import Optional, Union

from solders.pubkey import Pubkey

from models import TransferStatus
from services.handshake_errors import AccountDecodeError

MEMO_MAX_BYTES = 64
RELEASE_CONDITION_BYTES = 64
COMPLIANCE_HASH_BYTES = 32


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


POOL_DISCRIMINATOR = account_discriminator("Pool")
TRANSFER_DISCRIMINATOR = account_discriminator("SecureTransfer")

# disc, version, bump, pool_id, operator, mint, fee_bps, six u64 counters, is_paused
_POOL_LAYOUT = struct.Struct("<8sBB32s32s32sHQQQQQQ?")
# disc, version, bump, nonce, sender, recipient, pool, amount, created_at, claimable_after, claimable_until, status
_TRANSFER_HEAD = struct.Struct("<8sBBQ32s32s32sQqqqB")


class LedgerTransferStatus(IntEnum):
    """On-ledger status byte, in program declaration order"""
    ACTIVE = 0
    CLAIMED = 1
    CANCELLED = 2
    REJECTED = 3
    EXPIRED = 4
    DECLINED = 5

    def to_mirror(self) -> TransferStatus:
        return TransferStatus[self.name]


def timestamp_to_datetime(value: int) -> Optional[datetime]:
    """Zero means unset"""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def decode_memo(raw: bytes) -> Optional[str]:
    text = raw.replace(b"\x00", b"").decode("utf-8", errors="replace")
    return text or None


def encode_memo(memo: Optional[str]) -> bytes:
    raw = (memo or "").encode("utf-8")
    if len(raw) > MEMO_MAX_BYTES:
        raise ValueError(f"memo exceeds {MEMO_MAX_BYTES} bytes")
    return raw.ljust(MEMO_MAX_BYTES, b"\x00")


@dataclass(frozen=True)
class PoolState:
    address: Pubkey
    version: int
    bump: int
    pool_id: Pubkey
    operator: Pubkey
    mint: Pubkey
    transfer_fee_bps: int
    total_deposits: int
    total_withdrawals: int
    total_escrowed: int
    total_transfers_created: int
    total_transfers_resolved: int
    collected_fees: int
    is_paused: bool

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "PoolState":
        if len(data) < _POOL_LAYOUT.size:
            raise AccountDecodeError(f"Pool account {address} too short: {len(data)} bytes")
        fields = _POOL_LAYOUT.unpack_from(data, 0)
        if fields[0] != POOL_DISCRIMINATOR:
            raise AccountDecodeError(f"Account {address} is not a Pool")
        return cls(
            address=address,
            version=fields[1],
            bump=fields[2],
            pool_id=Pubkey.from_bytes(fields[3]),
            operator=Pubkey.from_bytes(fields[4]),
            mint=Pubkey.from_bytes(fields[5]),
            transfer_fee_bps=fields[6],
            total_deposits=fields[7],
            total_withdrawals=fields[8],
            total_escrowed=fields[9],
            total_transfers_created=fields[10],
            total_transfers_resolved=fields[11],
            collected_fees=fields[12],
            is_paused=fields[13],
        )

    def encode(self) -> bytes:
        return _POOL_LAYOUT.pack(
            POOL_DISCRIMINATOR, self.version, self.bump,
            bytes(self.pool_id), bytes(self.operator), bytes(self.mint),
            self.transfer_fee_bps,
            self.total_deposits, self.total_withdrawals, self.total_escrowed,
            self.total_transfers_created, self.total_transfers_resolved, self.collected_fees,
            self.is_paused,
        )


@dataclass(frozen=True)
class TransferState:
    address: Pubkey
    version: int
    bump: int
    nonce: int
    sender: Pubkey
    recipient: Pubkey
    pool: Pubkey
    amount: int
    created_at: int
    claimable_after: int
    claimable_until: int
    status: LedgerTransferStatus
    memo: Optional[str] = None
    release_condition: Optional[tuple] = None
    compliance_hash: Optional[bytes] = None

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "TransferState":
        if len(data) < _TRANSFER_HEAD.size:
            raise AccountDecodeError(f"Transfer account {address} too short: {len(data)} bytes")
        fields = _TRANSFER_HEAD.unpack_from(data, 0)
        if fields[0] != TRANSFER_DISCRIMINATOR:
            raise AccountDecodeError(f"Account {address} is not a SecureTransfer")
        try:
            status = LedgerTransferStatus(fields[11])
        except ValueError:
            raise AccountDecodeError(f"Transfer {address} has unknown status byte {fields[11]}")

        offset = _TRANSFER_HEAD.size
        try:
            release_condition = None
            if data[offset]:
                condition_type = data[offset + 1]
                payload = bytes(data[offset + 2:offset + 2 + RELEASE_CONDITION_BYTES])
                release_condition = (condition_type, payload)
                offset += 2 + RELEASE_CONDITION_BYTES
            else:
                offset += 1

            memo_raw = bytes(data[offset:offset + MEMO_MAX_BYTES])
            if len(memo_raw) != MEMO_MAX_BYTES:
                raise IndexError("memo truncated")
            offset += MEMO_MAX_BYTES

            compliance_hash = None
            if offset < len(data) and data[offset]:
                compliance_hash = bytes(data[offset + 1:offset + 1 + COMPLIANCE_HASH_BYTES])
        except IndexError:
            raise AccountDecodeError(f"Transfer account {address} is truncated")

        return cls(
            address=address,
            version=fields[1],
            bump=fields[2],
            nonce=fields[3],
            sender=Pubkey.from_bytes(fields[4]),
            recipient=Pubkey.from_bytes(fields[5]),
            pool=Pubkey.from_bytes(fields[6]),
            amount=fields[7],
            created_at=fields[8],
            claimable_after=fields[9],
            claimable_until=fields[10],
            status=status,
            memo=decode_memo(memo_raw),
            release_condition=release_condition,
            compliance_hash=compliance_hash,
        )

    def encode(self) -> bytes:
        head = _TRANSFER_HEAD.pack(
            TRANSFER_DISCRIMINATOR, self.version, self.bump, self.nonce,
            bytes(self.sender), bytes(self.recipient), bytes(self.pool),
            self.amount, self.created_at, self.claimable_after, self.claimable_until,
            int(self.status),
        )
        if self.release_condition is None:
            release = b"\x00"
        else:
            condition_type, payload = self.release_condition
            release = b"\x01" + bytes([condition_type]) + payload.ljust(RELEASE_CONDITION_BYTES, b"\x00")
        if self.compliance_hash is None:
            compliance = b"\x00"
        else:
            compliance = b"\x01" + self.compliance_hash
        return head + release + encode_memo(self.memo) + compliance


LedgerAccount = Union[PoolState, TransferState]


def decode_account(address: Pubkey, data: bytes) -> LedgerAccount:
    """Decode any handshake account by its discriminator"""
    discriminator = bytes(data[:8])
    if discriminator == POOL_DISCRIMINATOR:
        return PoolState.decode(address, data)
    if discriminator == TRANSFER_DISCRIMINATOR:
        return TransferState.decode(address, data)
    raise AccountDecodeError(f"Account {address} has unknown discriminator {discriminator.hex()}")
