"""Read-only Mirror queries. Nothing here writes."""

import logging
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from database import managed_session
from models import Pool, Token, Transfer

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 50


def _iso(value):
    return value.isoformat() if value is not None else None


def _int_or_none(value):
    return int(value) if value is not None else None


def token_to_dict(token: Token) -> dict:
    return {
        "id": token.id,
        "mint": token.mint,
        "name": token.name,
        "symbol": token.symbol,
        "decimals": token.decimals,
    }


def pool_to_dict(pool: Pool) -> dict:
    return {
        "id": pool.id,
        "pool_id": pool.pool_id,
        "address": pool.address,
        "operator": pool.operator,
        "fee_bps": pool.fee_bps,
        "is_paused": pool.is_paused,
        "total_escrowed": int(pool.total_escrowed),
        "total_transfers_created": int(pool.total_transfers_created),
        "total_transfers_resolved": int(pool.total_transfers_resolved),
        "collected_fees": int(pool.collected_fees),
    }


def transfer_to_dict(transfer: Transfer) -> dict:
    return {
        "id": transfer.id,
        "address": transfer.address,
        "sender": transfer.sender,
        "recipient": transfer.recipient,
        "amount": int(transfer.amount),
        "fee_amount": _int_or_none(transfer.fee_amount),
        "net_amount": _int_or_none(transfer.net_amount),
        "nonce": _int_or_none(transfer.nonce),
        "status": transfer.status,
        "memo": transfer.memo,
        "create_op_id": transfer.create_op_id,
        "claim_op_id": transfer.claim_op_id,
        "cancel_op_id": transfer.cancel_op_id,
        "claimable_after": _iso(transfer.claimable_after),
        "claimable_until": _iso(transfer.claimable_until),
        "created_at": _iso(transfer.created_at),
        "updated_at": _iso(transfer.updated_at),
        "resolved_at": _iso(transfer.resolved_at),
        "token": token_to_dict(transfer.token) if transfer.token is not None else None,
        "pool": pool_to_dict(transfer.pool) if transfer.pool is not None else None,
    }


class TransferQueryService:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _with_relations(stmt):
        return stmt.options(selectinload(Transfer.token), selectinload(Transfer.pool))

    async def find_by_wallet(self, wallet: str) -> List[Transfer]:
        """Transfers where the wallet is sender or recipient, newest first"""
        async with managed_session(self.session_factory) as session:
            stmt = self._with_relations(
                select(Transfer)
                .where(or_(Transfer.sender == wallet, Transfer.recipient == wallet))
                .order_by(Transfer.created_at.desc(), Transfer.id.desc())
            )
            return list((await session.execute(stmt)).scalars().all())

    async def find_by_address(self, address: str) -> Optional[Transfer]:
        async with managed_session(self.session_factory) as session:
            stmt = self._with_relations(select(Transfer).where(Transfer.address == address))
            return (await session.execute(stmt)).scalar_one_or_none()

    async def find_recent(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[Transfer]:
        async with managed_session(self.session_factory) as session:
            stmt = self._with_relations(
                select(Transfer).order_by(Transfer.created_at.desc(), Transfer.id.desc()).limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def count_all(self) -> int:
        async with managed_session(self.session_factory) as session:
            return (await session.execute(select(func.count(Transfer.id)))).scalar_one()


class TokenQueryService:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def list_tokens(self) -> List[Token]:
        async with managed_session(self.session_factory) as session:
            return list((await session.execute(select(Token).order_by(Token.symbol, Token.id))).scalars().all())
