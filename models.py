"""
Stride Ledger Store - Database Schema
=====================================

Schema for the recurring investment (SIP) platform:
- Users onboarded by phone with an embedded wallet and custodial vault
- Plans (SIPs) executed on a fixed schedule by the execution engine
- Transactions as the audit log of every money or asset movement
- Rewards, reward balances and receipts as secondary side effects
- Webhook ledger, lease locks and indexer cursors for idempotency

All timestamps are naive UTC. Money is stored as smallest-unit integers.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, func
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PlanStatus(Enum):
    """Plan lifecycle states"""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @classmethod
    def terminal(cls) -> tuple:
        return (cls.CANCELLED.value, cls.COMPLETED.value)


class PlanFrequency(Enum):
    """Execution period of a plan"""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def interval_seconds(self) -> int:
        return FREQUENCY_SECONDS[self]


FREQUENCY_SECONDS = {
    PlanFrequency.HOURLY: 3600,
    PlanFrequency.DAILY: 86400,
    PlanFrequency.WEEKLY: 604800,
    PlanFrequency.BIWEEKLY: 1209600,
    PlanFrequency.MONTHLY: 2592000,
}


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SIP_EXECUTION = "sip_execution"
    REWARD = "reward"
    SWAP = "swap"


class TransactionStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> tuple:
        return (cls.SUCCESS.value, cls.FAILED.value)


class ReceiptType(Enum):
    SIP_EXECUTION = "sip_execution"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    MONTHLY_REPORT = "monthly_report"
    TAX_SUMMARY = "tax_summary"


class RewardEventType(Enum):
    SIP_EXECUTION = "sip_execution"
    DEPOSIT = "deposit"
    STREAK_BONUS = "streak_bonus"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Phone-onboarded user with embedded wallet and custodial vault"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Set once by identity provisioning, read-only to the scheduler
    wallet_address: Mapped[Optional[str]] = mapped_column(String(80), nullable=True, index=True)
    vault_address: Mapped[Optional[str]] = mapped_column(String(80), nullable=True, index=True)
    photon_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    # Cached reward state
    reward_tier: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reward_points: Mapped[Decimal] = mapped_column(Numeric(38, 8), default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    plans = relationship("Plan", back_populates="user")

    def is_execution_ready(self) -> bool:
        """Wallet and vault must both be provisioned before any plan can execute"""
        return bool(self.wallet_address and self.vault_address)


class Plan(Base):
    """Recurring investment configuration (SIP)"""
    __tablename__ = 'sip_plans'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Terms
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    target_asset: Mapped[str] = mapped_column(String(20), nullable=False, default="APT")
    input_asset: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, default="INR")

    # Vault binding (set once)
    vault_address: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    vault_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Running statistics
    total_invested: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_received: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    average_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=Decimal("0"), nullable=False)
    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Scheduling state
    status: Mapped[str] = mapped_column(String(20), default=PlanStatus.ACTIVE.value, nullable=False)
    next_execution: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    user = relationship("User", back_populates="plans")

    __table_args__ = (
        UniqueConstraint('vault_address', 'vault_index', name='uq_sip_plans_vault_index'),
        Index('ix_sip_plans_status_next_execution', 'status', 'next_execution'),
        CheckConstraint('amount > 0', name='ck_sip_plans_amount_positive'),
        CheckConstraint('execution_count >= 0', name='ck_sip_plans_execution_count'),
    )

    @property
    def frequency_enum(self) -> PlanFrequency:
        return PlanFrequency(self.frequency)


class Transaction(Base):
    """Audit record of a money or asset movement"""
    __tablename__ = 'transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    plan_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('sip_plans.id'), nullable=True, index=True)

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.PENDING.value)

    amount_in: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_out: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    asset_in: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    asset_out: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(38, 18), nullable=True)

    # Chain linkage - tx_hash is the idempotency key for on-chain effects
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    block_version: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    fill_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    # External gateway reference (payment id) - unique when present
    external_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)

    # Scheduled slot a sip_execution belongs to
    due_window: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        Index('ix_transactions_plan_status_window', 'plan_id', 'status', 'due_window'),
        Index('ix_transactions_user_type', 'user_id', 'type'),
        CheckConstraint(
            "(status IN ('success', 'failed')) = (completed_at IS NOT NULL)",
            name='ck_transactions_completed_at_terminal'
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TransactionStatus.terminal()


class Reward(Base):
    """Reward event reported to the campaign engine - event_id prevents double credit"""
    __tablename__ = 'rewards'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('transactions.id'), nullable=True)
    token_amount: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    credited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)


class RewardLedger(Base):
    """Running balance of credited reward tokens per user and token"""
    __tablename__ = 'reward_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(38, 8), default=Decimal("0"), nullable=False)
    last_event_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint('user_id', 'token_symbol', name='uq_reward_ledger_user_token'),
    )


class Receipt(Base):
    """Pointer to an archived receipt document in blob storage"""
    __tablename__ = 'receipts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('transactions.id'), nullable=True, index=True)
    plan_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('sip_plans.id'), nullable=True)
    receipt_type: Mapped[str] = mapped_column(String(30), nullable=False)
    blob_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    blob_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_type: Mapped[str] = mapped_column(String(50), default="application/pdf", nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    summary: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    period: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)


# ============================================================================
# IDEMPOTENCY, LOCKING AND AUDIT
# ============================================================================

class WebhookEventLedger(Base):
    """Processed inbound events - (provider, event_id) is unique"""
    __tablename__ = 'webhook_event_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="processing", nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
    )


class DistributedLock(Base):
    """Database-backed lease; one row per held lock"""
    __tablename__ = 'distributed_locks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    locked_by: Mapped[str] = mapped_column(String(255), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, index=True)
    lock_metadata: Mapped[Optional[dict]] = mapped_column('metadata', JSON, nullable=True)


class IndexerCursor(Base):
    """Last processed chain transaction version per indexer stream"""
    __tablename__ = 'indexer_cursors'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    last_version: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class AuditLog(Base):
    """Audit trail for plan lifecycle and scheduler decisions"""
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
