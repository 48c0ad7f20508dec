"""
Tests for handshake instruction encoding
"""

import hashlib
import struct

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import DEFAULT_PROGRAM_ID
from services import handshake_instructions as ix
from services.address_deriver import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID

PROGRAM_ID = Pubkey.from_string(DEFAULT_PROGRAM_ID)


def keys(count):
    return [Keypair().pubkey() for _ in range(count)]


class TestDiscriminators:
    def test_global_namespace(self):
        assert ix.instruction_discriminator("claim_transfer") == hashlib.sha256(b"global:claim_transfer").digest()[:8]

    def test_identify_round_trip(self):
        for name, layout in ix.INSTRUCTION_LAYOUTS.items():
            assert ix.identify_instruction(ix.instruction_discriminator(name) + b"\x00" * 4) is layout

    def test_unknown_data(self):
        assert ix.identify_instruction(b"\x00" * 8) is None
        assert ix.identify_instruction(b"") is None


class TestCreateTransfer:
    def test_data_layout(self):
        sender, pool, mint, vault, sender_ata, transfer, recipient = keys(7)
        instruction = ix.create_transfer(
            PROGRAM_ID, sender, pool, mint, vault, sender_ata, transfer, recipient,
            nonce=1_700_000_000_000, amount=10_000_000, memo="héllo",
            claimable_after=100, claimable_until=200,
        )
        data = bytes(instruction.data)
        memo = "héllo".encode("utf-8")

        assert data[:8] == ix.instruction_discriminator("create_transfer")
        assert data[8:40] == bytes(recipient)
        assert struct.unpack_from("<QQ", data, 40) == (1_700_000_000_000, 10_000_000)
        assert struct.unpack_from("<I", data, 56)[0] == len(memo)
        assert data[60:60 + len(memo)] == memo
        assert struct.unpack_from("<qq", data, 60 + len(memo)) == (100, 200)
        assert len(data) == 60 + len(memo) + 16

    def test_account_order(self):
        sender, pool, mint, vault, sender_ata, transfer, recipient = keys(7)
        instruction = ix.create_transfer(
            PROGRAM_ID, sender, pool, mint, vault, sender_ata, transfer, recipient,
            nonce=1, amount=1, memo="", claimable_after=0, claimable_until=0,
        )
        metas = instruction.accounts
        layout = ix.INSTRUCTION_LAYOUTS["create_transfer"]

        assert metas[0].pubkey == sender and metas[0].is_signer and metas[0].is_writable
        assert metas[layout.pool_index].pubkey == pool
        assert metas[layout.transfer_index].pubkey == transfer and metas[layout.transfer_index].is_writable
        assert metas[6].pubkey == TOKEN_PROGRAM_ID
        assert metas[7].pubkey == SYSTEM_PROGRAM_ID
        assert not any(meta.is_signer for meta in metas[1:])


class TestResolutionInstructions:
    def test_transfer_always_at_fixed_slot(self):
        authority, pool, mint, vault, ata, transfer, sender = keys(7)
        built = {
            "claim_transfer": ix.claim_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer, sender),
            "cancel_transfer": ix.cancel_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer),
            "reject_transfer": ix.reject_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer, sender),
            "decline_transfer": ix.decline_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer, sender),
            "expire_transfer": ix.expire_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer, sender),
        }
        for name, instruction in built.items():
            layout = ix.INSTRUCTION_LAYOUTS[name]
            assert instruction.accounts[layout.transfer_index].pubkey == transfer, name
            assert instruction.accounts[layout.pool_index].pubkey == pool, name
            assert ix.identify_instruction(bytes(instruction.data)) is layout

    def test_reason_is_borsh_option(self):
        authority, pool, mint, vault, ata, transfer, sender = keys(7)
        without = ix.reject_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer, sender)
        with_reason = ix.decline_transfer(PROGRAM_ID, authority, pool, mint, vault, ata, transfer, sender, reason=3)
        assert bytes(without.data)[8:] == b"\x00"
        assert bytes(with_reason.data)[8:] == b"\x01\x03"

    def test_expire_caller_signs_without_write(self):
        caller, pool, mint, vault, ata, transfer, sender = keys(7)
        instruction = ix.expire_transfer(PROGRAM_ID, caller, pool, mint, vault, ata, transfer, sender)
        assert instruction.accounts[0].is_signer
        assert not instruction.accounts[0].is_writable


class TestPoolInstructions:
    def test_pause_pool(self):
        operator, pool = keys(2)
        instruction = ix.pause_pool(PROGRAM_ID, operator, pool, True)
        assert bytes(instruction.data) == ix.instruction_discriminator("pause_pool") + b"\x01"
        assert [meta.pubkey for meta in instruction.accounts] == [operator, pool]

    def test_init_pool_arguments(self):
        operator, mint, pool, vault, pool_id = keys(5)
        instruction = ix.init_pool(PROGRAM_ID, operator, mint, pool, vault, pool_id, 250)
        data = bytes(instruction.data)
        assert data[8:40] == bytes(pool_id)
        assert struct.unpack_from("<H", data, 40)[0] == 250
        assert instruction.accounts[ix.INSTRUCTION_LAYOUTS["init_pool"].pool_index].pubkey == pool

    def test_close_pool_withdrawal(self):
        operator, pool, mint, vault, operator_ata = keys(5)
        instruction = ix.close_pool(PROGRAM_ID, operator, pool, mint, vault, operator_ata, 5_000)
        assert struct.unpack_from("<Q", bytes(instruction.data), 8)[0] == 5_000

    def test_reset_pool_has_no_arguments(self):
        operator, pool = keys(2)
        assert bytes(ix.reset_pool(PROGRAM_ID, operator, pool).data) == ix.instruction_discriminator("reset_pool")
