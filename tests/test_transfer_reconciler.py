"""
Tests for the Transfer Reconciler: idempotence, terminal monotonicity, untracked and ambiguous outcomes
"""

import base64
import dataclasses
from unittest.mock import AsyncMock, patch

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database import managed_session
from ledger_simulator import sign_batch
from models import Transfer, TransferStatus
from services import handshake_instructions as ix
from services.address_deriver import derive_associated_token_address
from services.handshake_client import ConfirmedOperation, ExecutedInstruction
from services.ledger_accounts import LedgerTransferStatus
from services.mirror_store import ActiveWrite, TerminalWrite
from services.transfer_reconciler import RefreshOutcome


def claim_call(harness, address: str) -> ExecutedInstruction:
    vault = derive_associated_token_address(harness.pool, harness.mint)
    instruction = ix.claim_transfer(
        harness.ctx.config.program_pubkey,
        recipient=harness.recipient.pubkey(),
        pool=harness.pool,
        mint=harness.mint,
        pool_token_account=vault,
        recipient_token_account=derive_associated_token_address(harness.recipient.pubkey(), harness.mint),
        transfer=Pubkey.from_string(address),
        sender=harness.sender.pubkey(),
    )
    return ExecutedInstruction(
        program_id=instruction.program_id,
        accounts=[meta.pubkey for meta in instruction.accounts],
        data=bytes(instruction.data),
    )


def operation_with_markers(harness, calls, marker_names, op_id="manual-op") -> ConfirmedOperation:
    program = str(harness.ctx.config.program_pubkey)
    logs = []
    for name in marker_names:
        logs += [
            f"Program {program} invoke [1]",
            f"Program log: Instruction: {name}",
            f"Program {program} success",
        ]
    keys = []
    for call in calls:
        keys += [key for key in call.accounts if key not in keys]
    return ConfirmedOperation(op_id=op_id, account_keys=keys, instructions=calls, log_messages=logs)


async def direct_create(harness, amount):
    """Land a create on the ledger without reconciling it; the mirror row stays PENDING"""
    batch = await harness.ctx.builder.build_create(harness.sender.pubkey(), harness.recipient.pubkey(), amount)
    signed = sign_batch(batch.transaction_b64, harness.sender)
    await harness.ledger.send_raw_transaction(base64.b64decode(signed), f"direct-{batch.address}")
    return batch


async def claim(harness, address):
    batch = await harness.ctx.builder.build_claim(harness.recipient.pubkey(), address)
    return await harness.submit(batch, harness.recipient)


@pytest.mark.asyncio
class TestIdempotence:
    async def test_replaying_a_claim_is_a_duplicate(self, harness):
        await harness.setup_pool(fee_bps=100)
        address = await harness.create_transfer(1_000_000)
        result = await claim(harness, address)
        assert result.reconciliation.terminal_updates == {address: "claimed"}

        replay = await harness.ctx.reconciler.reconcile_operation(result.op_id)

        assert replay.terminal_updates == {}
        assert replay.duplicates == [address]
        assert not replay.changed
        row = await harness.transfer_row(address)
        assert row.claim_op_id == result.op_id
        assert int(row.fee_amount) == 10_000

    async def test_replaying_a_create_keeps_one_row(self, harness):
        await harness.setup_pool()
        batch = await harness.ctx.builder.build_create(harness.sender.pubkey(), harness.recipient.pubkey(), 700)
        result = await harness.submit(batch, harness.sender)

        replay = await harness.ctx.reconciler.reconcile_operation(result.op_id)

        assert replay.activated == [batch.address]
        assert await harness.ctx.transfers.count_all() == 1
        row = await harness.transfer_row(batch.address)
        assert row.create_op_id == result.op_id


@pytest.mark.asyncio
class TestTerminalMonotonicity:
    async def test_different_terminal_status_is_refused(self, harness):
        await harness.setup_pool()
        address = await harness.create_transfer(1_000)
        await claim(harness, address)

        outcome = await harness.ctx.store.apply_terminal(address, TransferStatus.CANCELLED, "other-op")

        assert outcome is TerminalWrite.CONFLICT
        row = await harness.transfer_row(address)
        assert row.status == TransferStatus.CLAIMED.value
        assert row.cancel_op_id is None

    async def test_same_terminal_status_is_duplicate(self, harness):
        await harness.setup_pool()
        address = await harness.create_transfer(1_000)
        await claim(harness, address)

        outcome = await harness.ctx.store.apply_terminal(address, TransferStatus.CLAIMED, "other-op")
        assert outcome is TerminalWrite.DUPLICATE

    async def test_refresh_never_reopens_a_terminal_row(self, harness):
        await harness.setup_pool()
        address = await harness.create_transfer(1_000)
        await harness.ctx.store.apply_terminal(address, TransferStatus.DECLINED, "out-of-band")

        # The ledger still has the record as active
        assert await harness.ctx.reconciler.refresh_address(address) is RefreshOutcome.MIRRORED
        row = await harness.transfer_row(address)
        assert row.status == TransferStatus.DECLINED.value

    async def test_terminal_write_landing_after_load_is_kept(self, harness):
        await harness.setup_pool()
        batch = await direct_create(harness, 1_000)
        state = await harness.ledger.fetch_transfer(Pubkey.from_string(batch.address))
        pool = await harness.ctx.store.get_pool(str(harness.pool))
        store = harness.ctx.store

        original_execute = AsyncSession.execute
        concurrent = {}

        async def execute_then_claim(session, statement, *args, **kwargs):
            result = await original_execute(session, statement, *args, **kwargs)
            if "outcome" not in concurrent:
                concurrent["outcome"] = None
                concurrent["outcome"] = await store.apply_terminal(
                    batch.address, TransferStatus.CLAIMED, "concurrent-claim"
                )
            return result

        with patch.object(AsyncSession, "execute", execute_then_claim):
            outcome = await store.upsert_active(state, pool, "create-op")

        assert concurrent["outcome"] is TerminalWrite.APPLIED
        assert outcome is ActiveWrite.TERMINAL_GUARD
        row = await harness.transfer_row(batch.address)
        assert row.status == TransferStatus.CLAIMED.value
        assert row.claim_op_id == "concurrent-claim"
        assert row.create_op_id is None

    async def test_pending_row_is_promoted_with_create_op(self, harness):
        await harness.setup_pool()
        batch = await direct_create(harness, 1_000)
        state = await harness.ledger.fetch_transfer(Pubkey.from_string(batch.address))
        pool = await harness.ctx.store.get_pool(str(harness.pool))

        outcome = await harness.ctx.store.upsert_active(state, pool, "create-op")

        assert outcome is ActiveWrite.UPDATED
        row = await harness.transfer_row(batch.address)
        assert row.status == TransferStatus.ACTIVE.value
        assert row.create_op_id == "create-op"

    async def test_repeated_integrity_error_is_raised(self, harness):
        await harness.setup_pool()
        batch = await direct_create(harness, 1_000)
        state = await harness.ledger.fetch_transfer(Pubkey.from_string(batch.address))
        pool = await harness.ctx.store.get_pool(str(harness.pool))
        failure = IntegrityError("INSERT INTO transfers", {}, Exception("CHECK constraint failed"))

        with patch.object(harness.ctx.store, "_write_active", AsyncMock(side_effect=failure)) as write:
            with pytest.raises(IntegrityError):
                await harness.ctx.store.upsert_active(state, pool, None)
        assert write.await_count == 2


@pytest.mark.asyncio
class TestDestroyedRecords:
    async def test_untracked_terminal_is_reported_not_fabricated(self, harness):
        await harness.setup_pool()
        address = await harness.create_transfer(1_000)
        async with managed_session(harness.ctx.session_factory) as session:
            await session.execute(delete(Transfer).where(Transfer.address == address))

        result = await claim(harness, address)

        assert result.reconciliation.untracked_terminals == [address]
        assert result.reconciliation.terminal_updates == {}
        assert await harness.transfer_row(address) is None

    async def test_unpaired_markers_with_mixed_outcomes_are_ambiguous(self, harness):
        await harness.setup_pool()
        first = await harness.create_transfer(1_000)
        second = await harness.create_transfer(2_000)
        for address in (first, second):
            harness.ledger.destroy_transfer(Pubkey.from_string(address))

        operation = operation_with_markers(
            harness,
            [claim_call(harness, first), claim_call(harness, second)],
            ["ClaimTransfer", "CancelTransfer", "ClaimTransfer"],
        )
        report = await harness.ctx.reconciler.reconcile(operation)

        assert sorted(report.ambiguous) == sorted([first, second])
        assert report.terminal_updates == {}
        for address in (first, second):
            row = await harness.transfer_row(address)
            assert row.status == TransferStatus.ACTIVE.value

    async def test_unpaired_markers_with_single_outcome_apply_to_all(self, harness):
        await harness.setup_pool()
        first = await harness.create_transfer(1_000)
        second = await harness.create_transfer(2_000)
        for address in (first, second):
            harness.ledger.destroy_transfer(Pubkey.from_string(address))

        operation = operation_with_markers(
            harness,
            [claim_call(harness, first), claim_call(harness, second)],
            ["ClaimTransfer", "ClaimTransfer", "ClaimTransfer"],
        )
        report = await harness.ctx.reconciler.reconcile(operation)

        assert report.terminal_updates == {first: "claimed", second: "claimed"}
        assert report.ambiguous == []

    async def test_paired_markers_drive_each_slot(self, harness):
        await harness.setup_pool()
        address = await harness.create_transfer(1_000)
        harness.ledger.destroy_transfer(Pubkey.from_string(address))

        operation = operation_with_markers(harness, [claim_call(harness, address)], ["ClaimTransfer"])
        report = await harness.ctx.reconciler.reconcile(operation)

        assert report.terminal_updates == {address: "claimed"}
        row = await harness.transfer_row(address)
        assert row.claim_op_id == "manual-op"


@pytest.mark.asyncio
class TestSkippedOperations:
    async def test_failed_operation_is_not_applied(self, harness):
        await harness.setup_pool()
        address = await harness.create_transfer(1_000)
        operation = operation_with_markers(harness, [claim_call(harness, address)], ["ClaimTransfer"])
        failed = ConfirmedOperation(
            op_id=operation.op_id,
            account_keys=operation.account_keys,
            instructions=operation.instructions,
            log_messages=operation.log_messages,
            err="InstructionError(0, Unauthorized)",
        )

        report = await harness.ctx.reconciler.reconcile(failed)

        assert report.skipped_reason == "operation_failed"
        row = await harness.transfer_row(address)
        assert row.status == TransferStatus.ACTIVE.value

    async def test_unknown_operation(self, harness):
        report = await harness.ctx.reconciler.reconcile_operation("missing-op")
        assert report.skipped_reason == "operation_not_found"


@pytest.mark.asyncio
class TestPoolsAndRefresh:
    async def test_pool_counters_follow_every_operation(self, harness):
        await harness.setup_pool(fee_bps=500)
        result_address = await harness.create_transfer(4_000)

        pool = await harness.ctx.store.get_pool(str(harness.pool))
        assert int(pool.total_escrowed) == 4_000
        assert int(pool.total_transfers_created) == 1

        result = await claim(harness, result_address)
        assert result.reconciliation.pools_refreshed == [str(harness.pool)]
        pool = await harness.ctx.store.get_pool(str(harness.pool))
        assert int(pool.collected_fees) == 200
        assert int(pool.total_withdrawals) == 3_800

    async def test_refresh_adopts_a_record_created_elsewhere(self, harness):
        await harness.setup_pool()
        batch = await harness.ctx.builder.build_create(harness.sender.pubkey(), harness.recipient.pubkey(), 900)
        # Submitted straight to the ledger, bypassing the gateway
        signed = sign_batch(batch.transaction_b64, harness.sender)
        await harness.ledger.send_raw_transaction(base64.b64decode(signed), "direct-op")

        assert await harness.ctx.reconciler.refresh_address(batch.address) is RefreshOutcome.MIRRORED
        row = await harness.transfer_row(batch.address)
        assert row.status == TransferStatus.ACTIVE.value

    async def test_refresh_of_missing_record(self, harness):
        await harness.setup_pool()
        assert await harness.ctx.reconciler.refresh_address(Keypair().pubkey()) is RefreshOutcome.GONE

    async def test_resolved_record_still_on_ledger_is_inserted(self, harness):
        await harness.setup_pool(fee_bps=100)
        address = await harness.create_transfer(1_000)
        async with managed_session(harness.ctx.session_factory) as session:
            await session.execute(delete(Transfer).where(Transfer.address == address))
        key = Pubkey.from_string(address)
        harness.ledger.transfers[key] = dataclasses.replace(
            harness.ledger.transfers[key], status=LedgerTransferStatus.CLAIMED
        )

        assert await harness.ctx.reconciler.refresh_address(address) is RefreshOutcome.MIRRORED

        row = await harness.transfer_row(address)
        assert row.status == TransferStatus.CLAIMED.value
        assert int(row.amount) == 1_000
        assert row.sender == str(harness.sender.pubkey())
        assert (int(row.fee_amount), int(row.net_amount)) == (10, 990)
        assert row.resolved_at is not None

    async def test_refresh_when_pool_is_gone(self, harness):
        await harness.setup_pool()
        batch = await direct_create(harness, 1_000)
        del harness.ledger.pools[harness.pool]

        outcome = await harness.ctx.reconciler.refresh_address(batch.address)

        assert outcome is RefreshOutcome.POOL_MISSING
        row = await harness.transfer_row(batch.address)
        assert row.status == TransferStatus.PENDING.value
