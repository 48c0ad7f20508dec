"""
Handshake Escrow Indexer - Mirror Schema
========================================

Local relational cache of ledger state for escrowed token transfers:
- Token: fungible asset descriptors, created lazily on first reference
- Pool: fee-collecting vaults, one per (pool name, mint)
- Transfer: one escrowed payment between a sender and a recipient

The ledger is the source of truth. Rows here are written only by the
reconciler and by the optimistic PENDING insert of the instruction builder.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransferStatus(Enum):
    """Transfer lifecycle states

    PENDING is the optimistic pre-confirmation row; ACTIVE is the only
    non-terminal ledger state. Every other state is terminal and coincides
    with destruction of the record on the ledger.
    """
    PENDING = "pending"
    ACTIVE = "active"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    DECLINED = "declined"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    TransferStatus.CLAIMED,
    TransferStatus.CANCELLED,
    TransferStatus.REJECTED,
    TransferStatus.DECLINED,
    TransferStatus.EXPIRED,
})

TERMINAL_STATUS_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)

# Refund outcomes return the full gross amount to the sender
REFUND_STATUSES = frozenset(TERMINAL_STATUSES - {TransferStatus.CLAIMED})

# Raw token units are u64 on the ledger
RAW_AMOUNT = Numeric(20, 0)


def is_terminal(status) -> bool:
    """True for terminal statuses, given either the enum or its stored value"""
    if isinstance(status, TransferStatus):
        return status in TERMINAL_STATUSES
    return status in TERMINAL_STATUS_VALUES


# ============================================================================
# MODELS
# ============================================================================

class Token(Base):
    """Fungible asset descriptor"""
    __tablename__ = 'tokens'

    id = Column(Integer, primary_key=True, autoincrement=True)
    mint = Column(String(44), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    symbol = Column(String(20), nullable=False, index=True)
    decimals = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    pools = relationship("Pool", back_populates="token")

    __table_args__ = (
        CheckConstraint('decimals >= 0', name='ck_token_decimals_positive'),
    )

    def __repr__(self):
        return f"<Token(mint={self.mint}, symbol={self.symbol}, decimals={self.decimals})>"


class Pool(Base):
    """Fee-collecting vault scoped to one token

    Counters are advisory: every reconciliation pass that touches the pool
    overwrites them from a fresh ledger read.
    """
    __tablename__ = 'pools'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_id = Column(String(44), nullable=False, index=True)
    address = Column(String(44), unique=True, nullable=False, index=True)
    operator = Column(String(44), nullable=False)
    token_id = Column(Integer, ForeignKey('tokens.id'), nullable=False, index=True)
    fee_bps = Column(Integer, nullable=False, default=0)

    total_deposits = Column(RAW_AMOUNT, nullable=False, default=0)
    total_withdrawals = Column(RAW_AMOUNT, nullable=False, default=0)
    total_escrowed = Column(RAW_AMOUNT, nullable=False, default=0)
    total_transfers_created = Column(RAW_AMOUNT, nullable=False, default=0)
    total_transfers_resolved = Column(RAW_AMOUNT, nullable=False, default=0)
    collected_fees = Column(RAW_AMOUNT, nullable=False, default=0)

    is_paused = Column(Boolean, nullable=False, default=False)
    is_token_2022 = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    token = relationship("Token", back_populates="pools")
    transfers = relationship("Transfer", back_populates="pool")

    __table_args__ = (
        CheckConstraint('fee_bps >= 0 AND fee_bps <= 10000', name='ck_pool_fee_bps_range'),
        Index('ix_pools_paused', 'is_paused'),
    )

    def __repr__(self):
        return f"<Pool(address={self.address}, fee_bps={self.fee_bps}, paused={self.is_paused})>"


class Transfer(Base):
    """One escrowed payment"""
    __tablename__ = 'transfers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(44), unique=True, nullable=False, index=True)

    # Participants
    sender = Column(String(44), nullable=False, index=True)
    recipient = Column(String(44), nullable=False, index=True)

    # Financial details in raw token units
    amount = Column(RAW_AMOUNT, nullable=False)
    fee_amount = Column(RAW_AMOUNT, nullable=True)  # Set on resolution
    net_amount = Column(RAW_AMOUNT, nullable=True)  # Paid out on resolution
    nonce = Column(RAW_AMOUNT, nullable=True)

    token_id = Column(Integer, ForeignKey('tokens.id'), nullable=False, index=True)
    pool_id = Column(Integer, ForeignKey('pools.id'), nullable=False, index=True)

    status = Column(String(16), default=TransferStatus.PENDING.value, nullable=False)
    memo = Column(Text, nullable=True)

    # Audit: operation ids (ledger signatures)
    create_op_id = Column(String(100), nullable=True)  # NULL while PENDING
    claim_op_id = Column(String(100), nullable=True)
    cancel_op_id = Column(String(100), nullable=True)  # cancel / reject / decline / expire

    # Claim window, NULL when unrestricted
    claimable_after = Column(DateTime(timezone=True), nullable=True)
    claimable_until = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    token = relationship("Token")
    pool = relationship("Pool", back_populates="transfers")

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'claimed', 'cancelled', 'rejected', 'declined', 'expired')",
            name='ck_transfer_status_valid',
        ),
        CheckConstraint('amount > 0', name='ck_transfer_amount_positive'),
        CheckConstraint('fee_amount IS NULL OR fee_amount >= 0', name='ck_transfer_fee_positive'),
        Index('ix_transfers_sender_created', 'sender', 'created_at'),
        Index('ix_transfers_recipient_created', 'recipient', 'created_at'),
        Index('ix_transfers_status_created', 'status', 'created_at'),
    )

    def __repr__(self):
        return f"<Transfer(address={self.address}, status={self.status}, amount={self.amount})>"
