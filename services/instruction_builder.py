"""
Instruction Builder - unsigned handshake transactions

Each build_* call returns an OperationBatch: a serialized, unsigned legacy
transaction with the caller as fee payer, ready for the client to sign and
hand to the submission gateway. Vault and token accounts are always derived
from the pool and token records; callers never name them.

The only side effect is build_create's optimistic PENDING row.
"""

import base64
import logging
import time
from dataclasses import dataclass, asdict
from typing import List, Optional

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from config import Config
from database import managed_session
from models import Pool, Token
from services import handshake_instructions as ix
from services.address_deriver import (
    U64_MAX,
    derive_associated_token_address,
    derive_transfer_address,
    token_program_for,
)
from services.handshake_errors import (
    InvalidAddress,
    InvalidAmount,
    InvalidTimeWindow,
    MemoTooLong,
    NoActivePool,
    PoolNotFound,
    PoolPaused,
    TokenNotFound,
    TransferNotFound,
)
from services.ledger_accounts import MEMO_MAX_BYTES, TransferState, timestamp_to_datetime
from services.mirror_store import MirrorStore, PendingTransferRow
from services.transfer_reconciler import TransferReconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationBatch:
    transaction_b64: str
    fee_payer: str
    recent_blockhash: str
    address: Optional[str] = None
    nonce: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class _TransferContext:
    state: TransferState
    pool: Pool
    mint: Pubkey
    token_program: Pubkey
    pool_token_account: Pubkey


def parse_address(field_name: str, value) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(value)
    except (ValueError, TypeError):
        raise InvalidAddress(field_name, value)


def current_nonce() -> int:
    """Milliseconds since epoch"""
    return int(time.time() * 1000)


def validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer number of raw units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    if amount > U64_MAX:
        raise InvalidAmount(f"Amount exceeds u64 range: {amount}")
    return amount


def validate_memo(memo: Optional[str]) -> str:
    memo = memo or ""
    length = len(memo.encode("utf-8"))
    if length > MEMO_MAX_BYTES:
        raise MemoTooLong(length, MEMO_MAX_BYTES)
    return memo


def validate_window(claimable_after: int, claimable_until: int) -> None:
    if claimable_after < 0 or claimable_until < 0:
        raise InvalidTimeWindow("Claim window timestamps must not be negative")
    if claimable_after and claimable_until and claimable_after >= claimable_until:
        raise InvalidTimeWindow("claimable_after must be earlier than claimable_until")


class InstructionBuilder:
    """Builds unsigned operation batches against deterministically addressed records"""

    def __init__(self, config: Config, ledger, store: MirrorStore, reconciler: TransferReconciler):
        self.config = config
        self.ledger = ledger
        self.store = store
        self.reconciler = reconciler
        self.program_id = config.program_pubkey
        self._last_nonce = 0

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _next_nonce(self) -> int:
        # Two creates in the same millisecond must not share a record address
        nonce = max(current_nonce(), self._last_nonce + 1)
        self._last_nonce = nonce
        return nonce

    async def _serialize(self, instructions: List[Instruction], fee_payer: Pubkey) -> tuple:
        blockhash: Hash = await self.ledger.get_latest_blockhash()
        message = Message.new_with_blockhash(instructions, fee_payer, blockhash)
        transaction = Transaction.new_unsigned(message)
        return base64.b64encode(bytes(transaction)).decode("ascii"), str(blockhash)

    async def _pool_with_token(self, address: str) -> Optional[Pool]:
        pool = await self.store.get_pool(address)
        if pool is None:
            # Self-heal: the pool may exist on the ledger but not be cached yet
            synced = await self.reconciler.sync_pool(address)
            if synced is None:
                return None
            pool = await self.store.get_pool(address)
        return pool

    async def resolve_pool(
        self,
        pool_address: Optional[str] = None,
        mint: Optional[str] = None,
        token_symbol: Optional[str] = None,
    ) -> Pool:
        """Explicit address, then mint, then symbol, then the first unpaused pool.

        Only the explicit-address path may touch the ledger.
        """
        if pool_address:
            parse_address("pool", pool_address)
            pool = await self._pool_with_token(str(pool_address))
            if pool is None:
                raise PoolNotFound(f"Pool {pool_address} not found")
            return pool

        async with managed_session(self.store.session_factory) as session:
            if mint or token_symbol:
                if mint:
                    token_stmt = select(Token).where(Token.mint == str(mint))
                else:
                    token_stmt = select(Token).where(func.lower(Token.symbol) == token_symbol.lower())
                token = (await session.execute(token_stmt.order_by(Token.id))).scalars().first()
                if token is None:
                    raise TokenNotFound(f"Token {mint or token_symbol} not found")

                pool_stmt = (
                    select(Pool)
                    .options(selectinload(Pool.token))
                    .where(Pool.token_id == token.id)
                    .order_by(Pool.is_paused, Pool.id)
                )
                pool = (await session.execute(pool_stmt)).scalars().first()
                if pool is None:
                    raise PoolNotFound(f"No pool for token {token.symbol}")
                return pool

            pool_stmt = (
                select(Pool)
                .options(selectinload(Pool.token))
                .where(Pool.is_paused.is_(False))
                .order_by(Pool.id)
            )
            pool = (await session.execute(pool_stmt)).scalars().first()
            if pool is None:
                raise NoActivePool()
            return pool

    async def _load_transfer(self, transfer_address) -> _TransferContext:
        address = parse_address("transfer", transfer_address)
        state = await self.ledger.fetch_transfer(address)
        if state is None:
            logger.info(f"BUILD_TRANSFER_GONE: {address} not on ledger")
            raise TransferNotFound(str(address))

        pool = await self._pool_with_token(str(state.pool))
        if pool is None:
            raise PoolNotFound(f"Pool {state.pool} not found")

        mint = Pubkey.from_string(pool.token.mint)
        token_program = token_program_for(pool.is_token_2022)
        return _TransferContext(
            state=state,
            pool=pool,
            mint=mint,
            token_program=token_program,
            pool_token_account=derive_associated_token_address(state.pool, mint, token_program),
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def build_create(
        self,
        sender,
        recipient,
        amount: int,
        memo: Optional[str] = None,
        claimable_after: int = 0,
        claimable_until: int = 0,
        pool_address: Optional[str] = None,
        mint: Optional[str] = None,
        token_symbol: Optional[str] = None,
    ) -> OperationBatch:
        sender_key = parse_address("sender", sender)
        recipient_key = parse_address("recipient", recipient)
        amount = validate_amount(amount)
        memo = validate_memo(memo)
        validate_window(claimable_after, claimable_until)

        pool = await self.resolve_pool(pool_address=pool_address, mint=mint, token_symbol=token_symbol)
        pool_key = Pubkey.from_string(pool.address)

        pool_state = await self.ledger.fetch_pool(pool_key)
        if pool_state is None:
            raise PoolNotFound(f"Pool {pool.address} not found on ledger")
        if pool_state.is_paused:
            raise PoolPaused(pool.address)

        nonce = self._next_nonce()
        transfer_key, _ = derive_transfer_address(sender_key, recipient_key, nonce, self.program_id)

        mint_key = Pubkey.from_string(pool.token.mint)
        token_program = token_program_for(pool.is_token_2022)
        instruction = ix.create_transfer(
            self.program_id,
            sender=sender_key,
            pool=pool_key,
            mint=mint_key,
            pool_token_account=derive_associated_token_address(pool_key, mint_key, token_program),
            sender_token_account=derive_associated_token_address(sender_key, mint_key, token_program),
            transfer=transfer_key,
            recipient=recipient_key,
            nonce=nonce,
            amount=amount,
            memo=memo,
            claimable_after=claimable_after,
            claimable_until=claimable_until,
            token_program=token_program,
        )
        transaction_b64, blockhash = await self._serialize([instruction], sender_key)

        await self.store.insert_pending(PendingTransferRow(
            address=str(transfer_key),
            sender=str(sender_key),
            recipient=str(recipient_key),
            amount=amount,
            nonce=nonce,
            pool_row_id=pool.id,
            token_row_id=pool.token_id,
            memo=memo or None,
            claimable_after=timestamp_to_datetime(claimable_after),
            claimable_until=timestamp_to_datetime(claimable_until),
        ))

        logger.info(
            f"🧱 BUILD_CREATE: {transfer_key} {sender_key} -> {recipient_key} "
            f"amount={amount} pool={pool.address} nonce={nonce}"
        )
        return OperationBatch(
            transaction_b64=transaction_b64,
            fee_payer=str(sender_key),
            recent_blockhash=blockhash,
            address=str(transfer_key),
            nonce=nonce,
        )

    # ------------------------------------------------------------------
    # Resolution paths
    # ------------------------------------------------------------------

    async def build_claim(self, claimer, transfer_address) -> OperationBatch:
        claimer_key = parse_address("claimer", claimer)
        ctx = await self._load_transfer(transfer_address)
        instruction = ix.claim_transfer(
            self.program_id,
            recipient=claimer_key,
            pool=ctx.state.pool,
            mint=ctx.mint,
            pool_token_account=ctx.pool_token_account,
            recipient_token_account=derive_associated_token_address(claimer_key, ctx.mint, ctx.token_program),
            transfer=ctx.state.address,
            sender=ctx.state.sender,
            token_program=ctx.token_program,
        )
        return await self._resolution_batch("BUILD_CLAIM", instruction, claimer_key, ctx)

    async def build_cancel(self, canceller, transfer_address) -> OperationBatch:
        canceller_key = parse_address("canceller", canceller)
        ctx = await self._load_transfer(transfer_address)
        instruction = ix.cancel_transfer(
            self.program_id,
            sender=canceller_key,
            pool=ctx.state.pool,
            mint=ctx.mint,
            pool_token_account=ctx.pool_token_account,
            sender_token_account=derive_associated_token_address(canceller_key, ctx.mint, ctx.token_program),
            transfer=ctx.state.address,
            token_program=ctx.token_program,
        )
        return await self._resolution_batch("BUILD_CANCEL", instruction, canceller_key, ctx)

    async def build_reject(self, operator, transfer_address, reason: Optional[int] = None) -> OperationBatch:
        operator_key = parse_address("operator", operator)
        ctx = await self._load_transfer(transfer_address)
        instruction = ix.reject_transfer(
            self.program_id,
            operator=operator_key,
            pool=ctx.state.pool,
            mint=ctx.mint,
            pool_token_account=ctx.pool_token_account,
            sender_token_account=derive_associated_token_address(ctx.state.sender, ctx.mint, ctx.token_program),
            transfer=ctx.state.address,
            sender=ctx.state.sender,
            reason=reason,
            token_program=ctx.token_program,
        )
        return await self._resolution_batch("BUILD_REJECT", instruction, operator_key, ctx)

    async def build_decline(self, recipient, transfer_address, reason: Optional[int] = None) -> OperationBatch:
        recipient_key = parse_address("recipient", recipient)
        ctx = await self._load_transfer(transfer_address)
        instruction = ix.decline_transfer(
            self.program_id,
            recipient=recipient_key,
            pool=ctx.state.pool,
            mint=ctx.mint,
            pool_token_account=ctx.pool_token_account,
            sender_token_account=derive_associated_token_address(ctx.state.sender, ctx.mint, ctx.token_program),
            transfer=ctx.state.address,
            sender=ctx.state.sender,
            reason=reason,
            token_program=ctx.token_program,
        )
        return await self._resolution_batch("BUILD_DECLINE", instruction, recipient_key, ctx)

    async def build_expire(self, caller, transfer_address) -> OperationBatch:
        caller_key = parse_address("caller", caller)
        ctx = await self._load_transfer(transfer_address)
        instruction = ix.expire_transfer(
            self.program_id,
            caller=caller_key,
            pool=ctx.state.pool,
            mint=ctx.mint,
            pool_token_account=ctx.pool_token_account,
            sender_token_account=derive_associated_token_address(ctx.state.sender, ctx.mint, ctx.token_program),
            transfer=ctx.state.address,
            sender=ctx.state.sender,
            token_program=ctx.token_program,
        )
        return await self._resolution_batch("BUILD_EXPIRE", instruction, caller_key, ctx)

    async def _resolution_batch(self, tag: str, instruction: Instruction, fee_payer: Pubkey,
                                ctx: _TransferContext) -> OperationBatch:
        transaction_b64, blockhash = await self._serialize([instruction], fee_payer)
        logger.info(f"🧱 {tag}: {ctx.state.address} by {fee_payer} amount={ctx.state.amount}")
        return OperationBatch(
            transaction_b64=transaction_b64,
            fee_payer=str(fee_payer),
            recent_blockhash=blockhash,
            address=str(ctx.state.address),
            nonce=ctx.state.nonce,
        )

    # ------------------------------------------------------------------
    # Pool administration
    # ------------------------------------------------------------------

    async def build_pause_pool(self, operator, pool_address, is_paused: bool) -> OperationBatch:
        operator_key = parse_address("operator", operator)
        pool_key = parse_address("pool", pool_address)
        state = await self.ledger.fetch_pool(pool_key)
        if state is None:
            raise PoolNotFound(f"Pool {pool_key} not found on ledger")

        instruction = ix.pause_pool(self.program_id, operator_key, pool_key, is_paused)
        transaction_b64, blockhash = await self._serialize([instruction], operator_key)
        logger.info(f"🧱 BUILD_PAUSE_POOL: {pool_key} is_paused={is_paused}")
        return OperationBatch(
            transaction_b64=transaction_b64,
            fee_payer=str(operator_key),
            recent_blockhash=blockhash,
            address=str(pool_key),
        )
