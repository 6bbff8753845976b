"""
Duel Wagering Platform - Database Schema
========================================

Focused schema for the money-moving core:
- Accounts (gem balance + reserved stake)
- Append-only transaction history (system of record for reconciliation)
- Deposit addresses and on-chain deposit tracking
- Duels between two players judged by a regional bot
- Payout (withdrawal) requests
- Admin action log

All amounts are integer gems. Status columns store the value of a closed Enum.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    String, Text, JSON
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from utils.datetime_helpers import utcnow


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _status_check(column: str, enum_cls, name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DuelStatus(Enum):
    """Duel lifecycle states"""
    PENDING_CHALLENGE = "pending_challenge"    # Open challenge, anyone may accept
    PENDING_ACCEPTANCE = "pending_acceptance"  # Addressed to a named opponent
    ACTIVE = "active"                          # Stakes reserved, match in play
    AWAITING_RESULT = "awaiting_result"        # Bot acknowledged the match
    COMPLETED_UNSEEN = "completed_unseen"      # Settled, no participant has seen it yet
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DisputeResolution(Enum):
    """Admin outcomes for a disputed duel"""
    CREATOR_WINS = "creator_wins"
    OPPONENT_WINS = "opponent_wins"
    VOID = "void"


class DepositStatus(Enum):
    """On-chain deposit state machine"""
    DETECTED = "detected"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    CREDITED = "credited"
    INVALIDATED = "invalidated"


class PayoutStatus(Enum):
    """Withdrawal request states"""
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TransactionType(Enum):
    """Balance-affecting event types recorded in transaction history"""
    DEPOSIT = "deposit"
    DEPOSIT_REVERSAL = "deposit_reversal"
    DUEL_STAKE = "duel_stake"
    DUEL_WIN = "duel_win"
    DUEL_REFUND = "duel_refund"
    PLATFORM_FEE = "platform_fee"
    PAYOUT_ESCROW = "payout_escrow"
    PAYOUT_REFUND = "payout_refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class AdminActionType(Enum):
    """Privileged actions recorded in the admin log"""
    RESOLVE_DISPUTE = "resolve_dispute"
    APPROVE_PAYOUT = "approve_payout"
    DECLINE_PAYOUT = "decline_payout"
    RESOLVE_STUCK_PAYOUT = "resolve_stuck_payout"
    ADD_ADDRESS = "add_address"
    REMOVE_ADDRESS = "remove_address"
    ATTRIBUTE_ADDRESS = "attribute_address"
    CLEAR_REVIEW_FLAG = "clear_review_flag"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Player account - one gem balance per user"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    # Spendable gems; stakes and payout escrow are already debited from here
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Sum of stakes locked in open duels (display/audit counter)
    reserved: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Set when a credited deposit is later invalidated
    review_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    history: Mapped[list["TransactionHistory"]] = relationship("TransactionHistory", back_populates="user")
    payout_requests: Mapped[list["PayoutRequest"]] = relationship("PayoutRequest", back_populates="user")

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_users_balance_non_negative'),
        CheckConstraint('reserved >= 0', name='ck_users_reserved_non_negative'),
    )


class TransactionHistory(Base):
    """Append-only ledger - one row per balance-affecting event"""
    __tablename__ = 'transaction_history'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=True, index=True)

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    # Signed change applied to users.balance (platform fee rows carry no account)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Deposit hash or "<hash>_reversal"; unique so a credit can never be applied twice
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    user: Mapped[Optional["User"]] = relationship("User", back_populates="history")

    __table_args__ = (
        _status_check('type', TransactionType, 'ck_history_type_valid'),
        Index('ix_history_user_created', 'user_id', 'created_at'),
        Index('ix_history_type_related', 'type', 'related_id'),
    )


class MonitoredAddress(Base):
    """Deposit address watched by the listener - never deleted"""
    __tablename__ = 'monitored_addresses'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    owner_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class DepositTransaction(Base):
    """On-chain transfer to a monitored address"""
    __tablename__ = 'deposit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DepositStatus.DETECTED.value, nullable=False, index=True)
    confirmations_seen: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credited_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        _status_check('status', DepositStatus, 'ck_deposit_status_valid'),
        CheckConstraint('amount > 0', name='ck_deposit_amount_positive'),
        CheckConstraint('confirmations_seen >= 0', name='ck_deposit_confirmations_non_negative'),
        Index('ix_deposit_status_created', 'status', 'created_at'),
    )


class Duel(Base):
    """Wager between two players judged by a regional bot"""
    __tablename__ = 'duels'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    creator_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False, index=True)
    opponent_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=True, index=True)
    stake_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DuelStatus.PENDING_CHALLENGE.value, nullable=False)
    winner_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=True)
    region: Mapped[str] = mapped_column(String(50), nullable=False)

    # Bot-reported telemetry, passed through untouched
    match_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disputed_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    creator: Mapped["User"] = relationship("User", foreign_keys=[creator_id])
    opponent: Mapped[Optional["User"]] = relationship("User", foreign_keys=[opponent_id])

    @property
    def participants(self) -> tuple:
        return (self.creator_id, self.opponent_id)

    __table_args__ = (
        _status_check('status', DuelStatus, 'ck_duel_status_valid'),
        CheckConstraint('stake_amount > 0', name='ck_duel_stake_positive'),
        CheckConstraint('opponent_id IS NULL OR opponent_id != creator_id', name='ck_duel_distinct_players'),
        Index('ix_duels_status_created', 'status', 'created_at'),
    )


class PayoutRequest(Base):
    """User-initiated withdrawal; gems are escrowed at creation"""
    __tablename__ = 'payout_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False, index=True)
    gem_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    destination_address: Mapped[str] = mapped_column(String(255), nullable=False)
    token_type: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=PayoutStatus.PENDING.value, nullable=False, index=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="payout_requests")

    __table_args__ = (
        _status_check('status', PayoutStatus, 'ck_payout_status_valid'),
        CheckConstraint('gem_amount > 0', name='ck_payout_amount_positive'),
    )


class AdminLog(Base):
    """Audit trail of privileged actions"""
    __tablename__ = 'admin_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    target_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        _status_check('action', AdminActionType, 'ck_admin_log_action_valid'),
        Index('ix_admin_logs_action_created', 'action', 'created_at'),
    )
