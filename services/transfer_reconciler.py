"""
Transfer Reconciler - applies confirmed ledger operations to the Mirror

Two cases per touched transfer address:
1. The account still exists: re-read it and mirror every field (create path).
2. The account is gone: terminal instructions close the account, so the
   outcome is inferred from the operation's log markers through the log
   contract table and applied to the existing Mirror row exactly once.

A destroyed transfer that was never mirrored cannot be rebuilt from logs
(amount and parties are lost with the account). That gap is logged as
RECONCILE_UNTRACKED_TERMINAL and reported; no row is fabricated. A resolved
record the ledger still holds is different: its decoded state is inserted
with its terminal status.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from solders.pubkey import Pubkey

from config import Config
from models import Pool, TransferStatus
from services.address_deriver import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    as_pubkey,
)
from services.handshake_client import ConfirmedOperation
from services.handshake_instructions import RENT_SYSVAR_ID, identify_instruction
from services.ledger_accounts import LedgerTransferStatus, TransferState
from services.mirror_store import ActiveWrite, MirrorStore, TerminalWrite
from services.terminal_status_table import (
    LOG_CONTRACT_VERSION,
    parse_instruction_markers,
    terminal_statuses_in,
)

logger = logging.getLogger(__name__)

NON_RECORD_ADDRESSES = frozenset({
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    RENT_SYSVAR_ID,
})


@dataclass
class ReconciliationReport:
    op_id: Optional[str]
    activated: List[str] = field(default_factory=list)
    terminal_updates: Dict[str, str] = field(default_factory=dict)
    duplicates: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    untracked_terminals: List[str] = field(default_factory=list)
    ambiguous: List[str] = field(default_factory=list)
    pools_refreshed: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.activated or self.terminal_updates)


class RefreshOutcome(Enum):
    """Result of re-reading one transfer address"""
    MIRRORED = "mirrored"
    GONE = "gone"                    # Not on the ledger
    POOL_MISSING = "pool_missing"    # On the ledger, but its pool could not be synced


@dataclass
class _OperationPlan:
    """Addresses worth reading, and the status hint for each transfer slot"""
    transfer_slots: List[Pubkey] = field(default_factory=list)
    status_hints: Dict[Pubkey, Optional[TransferStatus]] = field(default_factory=dict)
    pools: List[Pubkey] = field(default_factory=list)
    other_candidates: List[Pubkey] = field(default_factory=list)
    paired: bool = False
    creates: bool = False
    fallback_status: Optional[TransferStatus] = None
    terminal_statuses: Set[TransferStatus] = field(default_factory=set)


class TransferReconciler:
    """Brings the Mirror in line with the ledger after an operation confirms"""

    def __init__(self, config: Config, ledger, store: MirrorStore):
        self.config = config
        self.ledger = ledger
        self.store = store
        self.program_id = config.program_pubkey

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def reconcile_operation(self, op_id: str) -> ReconciliationReport:
        """Fetch a confirmed operation by id and reconcile it"""
        operation = await self.ledger.get_confirmed_operation(op_id)
        if operation is None:
            logger.warning(f"⚠️ RECONCILE_OPERATION_MISSING: {op_id} not found on ledger")
            return ReconciliationReport(op_id=op_id, skipped_reason="operation_not_found")
        return await self.reconcile(operation)

    async def reconcile(self, operation: ConfirmedOperation) -> ReconciliationReport:
        report = ReconciliationReport(op_id=operation.op_id)

        if operation.err:
            logger.info(f"RECONCILE_SKIP_FAILED: {operation.op_id} failed on ledger ({operation.err})")
            report.skipped_reason = "operation_failed"
            return report

        plan = self._plan(operation)

        pools: Dict[str, Pool] = {}
        for pool_address in plan.pools:
            pool = await self.sync_pool(pool_address)
            if pool is not None:
                pools[pool.address] = pool
                report.pools_refreshed.append(pool.address)

        for address in plan.transfer_slots + plan.other_candidates:
            await self._reconcile_address(operation.op_id, address, plan, pools, report)

        logger.info(
            f"✅ RECONCILE_COMPLETE: {operation.op_id} activated={len(report.activated)} "
            f"terminal={len(report.terminal_updates)} duplicates={len(report.duplicates)} "
            f"untracked={len(report.untracked_terminals)} ambiguous={len(report.ambiguous)} "
            f"pools={len(report.pools_refreshed)}"
        )
        return report

    async def refresh_address(self, address) -> RefreshOutcome:
        """Re-read one transfer and mirror it if it still exists.

        A missing record leaves the Mirror row as it is: without logs there is
        no outcome to infer.
        """
        address = as_pubkey(address)
        state = await self.ledger.fetch_transfer(address)
        if state is None:
            logger.debug(f"RECONCILE_REFRESH_GONE: {address} not on ledger")
            return RefreshOutcome.GONE

        pool = await self.sync_pool(state.pool)
        if pool is None:
            logger.warning(f"⚠️ RECONCILE_POOL_MISSING: transfer {address} references unknown pool {state.pool}")
            return RefreshOutcome.POOL_MISSING

        report = ReconciliationReport(op_id=None)
        await self._mirror_existing(None, state, pool, report)
        return RefreshOutcome.MIRRORED

    async def sync_pool(self, address) -> Optional[Pool]:
        """Overwrite the cached pool (and lazily its token) from a fresh ledger read"""
        address = as_pubkey(address)
        state = await self.ledger.fetch_pool(address)
        if state is None:
            logger.debug(f"RECONCILE_POOL_SKIP: {address} is not a pool on ledger")
            return None

        mint_info = await self.ledger.fetch_mint_info(state.mint)
        token = await self.store.ensure_token(
            str(state.mint),
            decimals=mint_info.decimals if mint_info is not None else None,
        )
        return await self.store.upsert_pool(
            state,
            token,
            is_token_2022=mint_info.is_token_2022 if mint_info is not None else False,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan(self, operation: ConfirmedOperation) -> _OperationPlan:
        plan = _OperationPlan()
        program_calls = [ix for ix in operation.instructions if ix.program_id == self.program_id]
        markers = parse_instruction_markers(operation.log_messages, str(self.program_id))
        plan.terminal_statuses = terminal_statuses_in(markers)
        plan.creates = any(m.name == "CreateTransfer" for m in markers)
        if len(plan.terminal_statuses) == 1:
            plan.fallback_status = next(iter(plan.terminal_statuses))

        plan.paired = len(program_calls) == len(markers)
        if not plan.paired:
            logger.warning(
                f"⚠️ RECONCILE_PAIRING_UNAVAILABLE: {operation.op_id} has {len(program_calls)} program "
                f"instructions but {len(markers)} markers (log contract v{LOG_CONTRACT_VERSION})"
            )

        for position, call in enumerate(program_calls):
            layout = identify_instruction(call.data)
            if layout is None:
                continue
            if plan.paired and markers[position].name != layout.log_name:
                logger.warning(
                    f"⚠️ RECONCILE_MARKER_MISMATCH: {operation.op_id} instruction {position} is "
                    f"{layout.log_name} but log says {markers[position].name}"
                )
                plan.paired = False

            if layout.pool_index < len(call.accounts) and call.accounts[layout.pool_index] not in plan.pools:
                plan.pools.append(call.accounts[layout.pool_index])

            if layout.transfer_index is not None and layout.transfer_index < len(call.accounts):
                address = call.accounts[layout.transfer_index]
                if address not in plan.status_hints:
                    plan.transfer_slots.append(address)
                plan.status_hints[address] = markers[position].terminal_status if plan.paired else None

        if not plan.paired:
            plan.status_hints = {address: None for address in plan.status_hints}

        seen = set(plan.transfer_slots) | set(plan.pools)
        for key in operation.account_keys:
            if key in seen or key in NON_RECORD_ADDRESSES or key == self.program_id:
                continue
            seen.add(key)
            plan.other_candidates.append(key)
        return plan

    # ------------------------------------------------------------------
    # Per-address application
    # ------------------------------------------------------------------

    async def _reconcile_address(
        self,
        op_id: str,
        address: Pubkey,
        plan: _OperationPlan,
        pools: Dict[str, Pool],
        report: ReconciliationReport,
    ) -> None:
        state = await self.ledger.fetch_transfer(address)

        if state is not None:
            pool = pools.get(str(state.pool))
            if pool is None:
                pool = await self.sync_pool(state.pool)
                if pool is None:
                    logger.warning(
                        f"⚠️ RECONCILE_POOL_MISSING: transfer {address} references unknown pool {state.pool}"
                    )
                    return
                pools[pool.address] = pool
                report.pools_refreshed.append(pool.address)
            await self._mirror_existing(op_id if plan.creates else None, state, pool, report)
            return

        is_slot = address in plan.status_hints
        status = plan.status_hints.get(address)
        if status is None:
            status = plan.fallback_status

        if status is None:
            if is_slot and plan.terminal_statuses:
                logger.warning(
                    f"⚠️ RECONCILE_AMBIGUOUS: {address} destroyed by {op_id} but markers "
                    f"{sorted(s.value for s in plan.terminal_statuses)} do not identify its outcome"
                )
                report.ambiguous.append(str(address))
            else:
                logger.debug(f"RECONCILE_SKIP_CANDIDATE: {address} is not a transfer record")
            return

        outcome = await self.store.apply_terminal(str(address), status, op_id)
        self._record_terminal(op_id, str(address), status, outcome, is_slot, report)

    async def _mirror_existing(
        self,
        op_id: Optional[str],
        state: TransferState,
        pool: Pool,
        report: ReconciliationReport,
    ) -> None:
        address = str(state.address)
        if state.status != LedgerTransferStatus.ACTIVE:
            # Ledger still holds a resolved record: its own status byte is authoritative
            status = state.status.to_mirror()
            outcome = await self.store.apply_terminal(address, status, op_id)
            if outcome is TerminalWrite.UNTRACKED:
                outcome = await self.store.insert_resolved(state, pool, status, op_id)
            self._record_terminal(op_id, address, status, outcome, True, report)
            return

        outcome = await self.store.upsert_active(state, pool, op_id)
        if outcome is ActiveWrite.TERMINAL_GUARD:
            report.conflicts.append(address)
            return
        report.activated.append(address)
        logger.info(
            f"📥 RECONCILE_ACTIVE: {address} {outcome.value} amount={state.amount} "
            f"sender={state.sender} recipient={state.recipient}"
        )

    @staticmethod
    def _record_terminal(
        op_id: Optional[str],
        address: str,
        status: TransferStatus,
        outcome: TerminalWrite,
        is_slot: bool,
        report: ReconciliationReport,
    ) -> None:
        if outcome is TerminalWrite.APPLIED:
            report.terminal_updates[address] = status.value
            logger.info(f"🏁 RECONCILE_TERMINAL: {address} -> {status.value} (op {op_id})")
        elif outcome is TerminalWrite.DUPLICATE:
            report.duplicates.append(address)
            logger.debug(f"RECONCILE_DUPLICATE: {address} already {status.value}")
        elif outcome is TerminalWrite.CONFLICT:
            report.conflicts.append(address)
            logger.warning(
                f"⚠️ RECONCILE_TERMINAL_CONFLICT: {address} already terminal, refusing {status.value} (op {op_id})"
            )
        elif is_slot:
            report.untracked_terminals.append(address)
            logger.warning(
                f"⚠️ RECONCILE_UNTRACKED_TERMINAL: {address} became {status.value} in op {op_id} "
                f"but was never mirrored; amount and parties are unrecoverable"
            )
