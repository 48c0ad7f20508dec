"""
Mirror Store - the only write path into Token / Pool / Transfer rows

Callers are the reconciler, the optimistic PENDING insert of the instruction
builder and the pending sweep. Each public method is its own unit of work so a
failure on one transfer never rolls back another.

Concurrency: rows are keyed by their unique ledger address. Inserts that lose
a race hit IntegrityError and fall back to the update path; terminal writes are
guarded in SQL so a terminal status is never downgraded or replaced.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from database import managed_session
from models import (
    REFUND_STATUSES, TERMINAL_STATUS_VALUES, Pool, Token, Transfer, TransferStatus, utcnow,
)
from services.fee_policy import settle_claim, settle_refund
from services.ledger_accounts import PoolState, TransferState, timestamp_to_datetime

logger = logging.getLogger(__name__)

PLACEHOLDER_TOKEN_NAME = "Unknown"
PLACEHOLDER_TOKEN_SYMBOL = "UNK"
PLACEHOLDER_TOKEN_DECIMALS = 6


class TerminalWrite(Enum):
    """Outcome of applying a terminal status to one address"""
    APPLIED = "applied"
    DUPLICATE = "duplicate"          # Same terminal status already recorded
    CONFLICT = "conflict"            # A different terminal status is already recorded
    UNTRACKED = "untracked"          # No Mirror row for the address


class ActiveWrite(Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    TERMINAL_GUARD = "terminal_guard"  # Row already terminal, left untouched


@dataclass
class PendingTransferRow:
    address: str
    sender: str
    recipient: str
    amount: int
    nonce: int
    pool_row_id: int
    token_row_id: int
    memo: Optional[str] = None
    claimable_after: Optional[datetime] = None
    claimable_until: Optional[datetime] = None


class MirrorStore:
    """Mirror writes, one transaction per call"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def ensure_token(
        self,
        mint: str,
        name: Optional[str] = None,
        symbol: Optional[str] = None,
        decimals: Optional[int] = None,
        overwrite_metadata: bool = False,
    ) -> Token:
        """Fetch the token row, creating it with placeholder metadata if absent"""
        async with managed_session(self.session_factory) as session:
            token = (await session.execute(select(Token).where(Token.mint == mint))).scalar_one_or_none()
            if token is not None:
                if overwrite_metadata:
                    token.name = name or token.name
                    token.symbol = symbol or token.symbol
                    if decimals is not None:
                        token.decimals = decimals
                return token

        try:
            async with managed_session(self.session_factory) as session:
                token = Token(
                    mint=mint,
                    name=name or PLACEHOLDER_TOKEN_NAME,
                    symbol=symbol or PLACEHOLDER_TOKEN_SYMBOL,
                    decimals=decimals if decimals is not None else PLACEHOLDER_TOKEN_DECIMALS,
                )
                session.add(token)
                await session.flush()
            logger.info(f"🪙 MIRROR_TOKEN_CREATED: {token.symbol} ({mint})")
            return token
        except IntegrityError:
            # Concurrent writer created it first
            async with managed_session(self.session_factory) as session:
                return (await session.execute(select(Token).where(Token.mint == mint))).scalar_one()

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    @staticmethod
    def _copy_pool_state(pool: Pool, state: PoolState) -> None:
        pool.pool_id = str(state.pool_id)
        pool.operator = str(state.operator)
        pool.fee_bps = state.transfer_fee_bps
        pool.total_deposits = state.total_deposits
        pool.total_withdrawals = state.total_withdrawals
        pool.total_escrowed = state.total_escrowed
        pool.total_transfers_created = state.total_transfers_created
        pool.total_transfers_resolved = state.total_transfers_resolved
        pool.collected_fees = state.collected_fees
        pool.is_paused = state.is_paused

    async def upsert_pool(self, state: PoolState, token: Token, is_token_2022: bool = False) -> Pool:
        """Overwrite the cached pool with a fresh ledger read"""
        address = str(state.address)
        try:
            async with managed_session(self.session_factory) as session:
                pool = (await session.execute(select(Pool).where(Pool.address == address))).scalar_one_or_none()
                created = pool is None
                if created:
                    pool = Pool(address=address, token_id=token.id, is_token_2022=is_token_2022)
                    session.add(pool)
                self._copy_pool_state(pool, state)
                await session.flush()
        except IntegrityError:
            async with managed_session(self.session_factory) as session:
                pool = (await session.execute(select(Pool).where(Pool.address == address))).scalar_one()
                self._copy_pool_state(pool, state)
            created = False

        if created:
            logger.info(f"🏊 MIRROR_POOL_CREATED: {address} fee={state.transfer_fee_bps}bps token={token.mint}")
        else:
            logger.debug(f"MIRROR_POOL_REFRESHED: {address} escrowed={state.total_escrowed} paused={state.is_paused}")
        return pool

    async def get_pool(self, address: str) -> Optional[Pool]:
        async with managed_session(self.session_factory) as session:
            stmt = select(Pool).options(selectinload(Pool.token)).where(Pool.address == address)
            return (await session.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def insert_pending(self, row: PendingTransferRow) -> Transfer:
        """Optimistic row for a built but not yet confirmed create"""
        try:
            async with managed_session(self.session_factory) as session:
                transfer = Transfer(
                    address=row.address,
                    sender=row.sender,
                    recipient=row.recipient,
                    amount=row.amount,
                    nonce=row.nonce,
                    pool_id=row.pool_row_id,
                    token_id=row.token_row_id,
                    memo=row.memo,
                    claimable_after=row.claimable_after,
                    claimable_until=row.claimable_until,
                    status=TransferStatus.PENDING.value,
                )
                session.add(transfer)
                await session.flush()
            logger.info(f"⏳ BUILD_PENDING_ROW: {row.address} amount={row.amount}")
            return transfer
        except IntegrityError:
            logger.warning(f"⚠️ BUILD_PENDING_EXISTS: {row.address} already mirrored")
            async with managed_session(self.session_factory) as session:
                return (await session.execute(
                    select(Transfer).where(Transfer.address == row.address)
                )).scalar_one()

    @staticmethod
    def _transfer_values(state: TransferState, pool: Pool) -> dict:
        return {
            "sender": str(state.sender),
            "recipient": str(state.recipient),
            "amount": state.amount,
            "nonce": state.nonce,
            "pool_id": pool.id,
            "token_id": pool.token_id,
            "memo": state.memo,
            "claimable_after": timestamp_to_datetime(state.claimable_after),
            "claimable_until": timestamp_to_datetime(state.claimable_until),
        }

    @staticmethod
    def _resolution_values(amount: int, fee_bps: int, status: TransferStatus, op_id: Optional[str]) -> dict:
        if status in REFUND_STATUSES:
            settlement = settle_refund(amount)
        else:
            settlement = settle_claim(amount, fee_bps)

        values = {
            "status": status.value,
            "fee_amount": settlement.fee,
            "net_amount": settlement.net,
            "resolved_at": utcnow(),
            "updated_at": utcnow(),
        }
        if status is TransferStatus.CLAIMED:
            values["claim_op_id"] = op_id
        else:
            values["cancel_op_id"] = op_id
        return values

    async def upsert_active(self, state: TransferState, pool: Pool, op_id: Optional[str]) -> ActiveWrite:
        """Mirror a transfer that still exists on the ledger"""
        try:
            return await self._write_active(state, pool, op_id)
        except IntegrityError:
            # Lost an insert race; the row exists now. A second failure is not a race.
            logger.debug(f"MIRROR_ACTIVE_RACE: {state.address} inserted concurrently, updating instead")
            return await self._write_active(state, pool, op_id)

    async def _write_active(self, state: TransferState, pool: Pool, op_id: Optional[str]) -> ActiveWrite:
        address = str(state.address)
        async with managed_session(self.session_factory) as session:
            transfer = (await session.execute(
                select(Transfer).where(Transfer.address == address)
            )).scalar_one_or_none()

            if transfer is None:
                transfer = Transfer(
                    address=address,
                    status=TransferStatus.ACTIVE.value,
                    create_op_id=op_id,
                    **self._transfer_values(state, pool),
                )
                created_at = timestamp_to_datetime(state.created_at)
                if created_at is not None:
                    transfer.created_at = created_at
                session.add(transfer)
                await session.flush()
                return ActiveWrite.INSERTED

            if not transfer.is_terminal:
                values = self._transfer_values(state, pool)
                values["status"] = TransferStatus.ACTIVE.value
                values["updated_at"] = utcnow()
                if op_id:
                    values["create_op_id"] = func.coalesce(Transfer.create_op_id, op_id)
                # The status guard is re-checked in SQL: a terminal write may have landed since the load
                result = await session.execute(
                    update(Transfer)
                    .where(Transfer.address == address)
                    .where(Transfer.status.notin_(TERMINAL_STATUS_VALUES))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount > 0:
                    return ActiveWrite.UPDATED
                await session.refresh(transfer)

            logger.warning(
                f"⚠️ RECONCILE_TERMINAL_GUARD: {address} is {transfer.status} in mirror "
                f"but still exists on ledger; leaving it untouched"
            )
            return ActiveWrite.TERMINAL_GUARD

    async def insert_resolved(
        self,
        state: TransferState,
        pool: Pool,
        status: TransferStatus,
        op_id: Optional[str],
    ) -> TerminalWrite:
        """Mirror a resolved record the ledger still holds but the Mirror never saw"""
        address = str(state.address)
        try:
            async with managed_session(self.session_factory) as session:
                transfer = Transfer(
                    address=address,
                    **self._transfer_values(state, pool),
                    **self._resolution_values(int(state.amount), pool.fee_bps, status, op_id),
                )
                created_at = timestamp_to_datetime(state.created_at)
                if created_at is not None:
                    transfer.created_at = created_at
                session.add(transfer)
                await session.flush()
        except IntegrityError:
            return await self.apply_terminal(address, status, op_id)
        return TerminalWrite.APPLIED

    async def apply_terminal(self, address: str, status: TransferStatus, op_id: Optional[str]) -> TerminalWrite:
        """Record a terminal outcome for an existing row, exactly once"""
        async with managed_session(self.session_factory) as session:
            stmt = select(Transfer).options(selectinload(Transfer.pool)).where(Transfer.address == address)
            transfer = (await session.execute(stmt)).scalar_one_or_none()

            if transfer is None:
                return TerminalWrite.UNTRACKED
            if transfer.is_terminal:
                return TerminalWrite.DUPLICATE if transfer.status == status.value else TerminalWrite.CONFLICT

            values = self._resolution_values(int(transfer.amount), transfer.pool.fee_bps, status, op_id)
            result = await session.execute(
                update(Transfer)
                .where(Transfer.address == address)
                .where(Transfer.status.notin_(TERMINAL_STATUS_VALUES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Another reconciliation got there first
                await session.refresh(transfer)
                return TerminalWrite.DUPLICATE if transfer.status == status.value else TerminalWrite.CONFLICT

        return TerminalWrite.APPLIED

    # ------------------------------------------------------------------
    # Pending sweep
    # ------------------------------------------------------------------

    async def stale_pending_addresses(self, created_before: datetime) -> List[str]:
        async with managed_session(self.session_factory) as session:
            stmt = (
                select(Transfer.address)
                .where(Transfer.status == TransferStatus.PENDING.value)
                .where(Transfer.created_at < created_before)
                .order_by(Transfer.created_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def delete_pending(self, address: str) -> bool:
        """Drop a never-confirmed optimistic row; confirmed rows are never deleted"""
        async with managed_session(self.session_factory) as session:
            result = await session.execute(
                delete(Transfer)
                .where(Transfer.address == address)
                .where(Transfer.status == TransferStatus.PENDING.value)
            )
            return result.rowcount > 0
