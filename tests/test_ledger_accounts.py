"""
Tests for ledger account decoding
"""

import hashlib
from datetime import datetime, timezone

import pytest
from solders.keypair import Keypair

from models import TransferStatus
from services.handshake_errors import AccountDecodeError
from services.ledger_accounts import (
    POOL_DISCRIMINATOR,
    TRANSFER_DISCRIMINATOR,
    LedgerTransferStatus,
    PoolState,
    TransferState,
    decode_account,
    decode_memo,
    timestamp_to_datetime,
)


def make_pool(**overrides):
    fields = dict(
        address=Keypair().pubkey(), version=1, bump=254, pool_id=Keypair().pubkey(),
        operator=Keypair().pubkey(), mint=Keypair().pubkey(), transfer_fee_bps=250,
        total_deposits=5_000, total_withdrawals=1_000, total_escrowed=4_000,
        total_transfers_created=3, total_transfers_resolved=1, collected_fees=25, is_paused=False,
    )
    fields.update(overrides)
    return PoolState(**fields)


def make_transfer(**overrides):
    fields = dict(
        address=Keypair().pubkey(), version=1, bump=253, nonce=1_700_000_000_123,
        sender=Keypair().pubkey(), recipient=Keypair().pubkey(), pool=Keypair().pubkey(),
        amount=10_000_000, created_at=1_700_000_000, claimable_after=0, claimable_until=0,
        status=LedgerTransferStatus.ACTIVE, memo="rent for march",
    )
    fields.update(overrides)
    return TransferState(**fields)


class TestDiscriminators:
    def test_anchor_account_discriminators(self):
        assert POOL_DISCRIMINATOR == hashlib.sha256(b"account:Pool").digest()[:8]
        assert TRANSFER_DISCRIMINATOR == hashlib.sha256(b"account:SecureTransfer").digest()[:8]

    def test_unknown_discriminator_rejected(self):
        with pytest.raises(AccountDecodeError):
            decode_account(Keypair().pubkey(), b"\x00" * 200)

    def test_pool_bytes_not_decoded_as_transfer(self):
        pool = make_pool()
        with pytest.raises(AccountDecodeError):
            TransferState.decode(pool.address, pool.encode())


class TestPoolDecoding:
    def test_decodes_every_field(self):
        pool = make_pool(is_paused=True)
        decoded = decode_account(pool.address, pool.encode())
        assert isinstance(decoded, PoolState)
        assert decoded == pool

    def test_trailing_space_is_ignored(self):
        pool = make_pool()
        assert PoolState.decode(pool.address, pool.encode() + b"\x00" * 64) == pool

    def test_truncated_pool(self):
        pool = make_pool()
        with pytest.raises(AccountDecodeError):
            PoolState.decode(pool.address, pool.encode()[:40])


class TestTransferDecoding:
    def test_decodes_every_field(self):
        transfer = make_transfer(claimable_after=1_700_000_100, claimable_until=1_700_086_400)
        decoded = decode_account(transfer.address, transfer.encode())
        assert isinstance(decoded, TransferState)
        assert decoded == transfer

    def test_optional_sections_present(self):
        transfer = make_transfer(release_condition=(2, b"\x07" * 64), compliance_hash=b"\x01" * 32)
        decoded = TransferState.decode(transfer.address, transfer.encode())
        assert decoded.release_condition == (2, b"\x07" * 64)
        assert decoded.compliance_hash == b"\x01" * 32
        assert decoded.memo == "rent for march"

    def test_status_maps_to_mirror_status(self):
        assert LedgerTransferStatus.CLAIMED.to_mirror() == TransferStatus.CLAIMED
        assert LedgerTransferStatus.EXPIRED.to_mirror() == TransferStatus.EXPIRED
        assert LedgerTransferStatus.DECLINED.to_mirror() == TransferStatus.DECLINED

    def test_unknown_status_byte(self):
        transfer = make_transfer()
        data = bytearray(transfer.encode())
        # status byte follows the fixed head
        data[8 + 1 + 1 + 8 + 32 * 3 + 8 * 4] = 9
        with pytest.raises(AccountDecodeError):
            TransferState.decode(transfer.address, bytes(data))

    def test_truncated_memo(self):
        transfer = make_transfer()
        with pytest.raises(AccountDecodeError):
            TransferState.decode(transfer.address, transfer.encode()[:180])


class TestHelpers:
    def test_memo_strips_padding(self):
        assert decode_memo(b"hello" + b"\x00" * 59) == "hello"
        assert decode_memo(b"\x00" * 64) is None

    def test_zero_timestamp_is_unset(self):
        assert timestamp_to_datetime(0) is None
        assert timestamp_to_datetime(1_700_000_000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
