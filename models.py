"""
Doers Marketplace - Contract Payment & Escrow Schema
====================================================

Schema for the money-movement core of the services marketplace:
- Users with membership tier, referral state and internal balance
- Jobs with a budget split between one or more selected workers
- Contracts (one per worker) and the Payments that fund them in escrow
- Append-only balance ledger for worker payouts
- Webhook idempotency ledger and notification outbox
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class MembershipTier(Enum):
    """Paid membership level of a user"""
    FREE = "free"
    PRO = "pro"
    SUPER_PRO = "super_pro"


class JobStatus(Enum):
    """Job publication lifecycle"""
    DRAFT = "draft"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ContractStatus(Enum):
    """Contract lifecycle states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class ContractEscrowStatus(Enum):
    """Where the contract's funds currently sit"""
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


class ContractPaymentStatus(Enum):
    """Payment progress as seen from the contract"""
    PENDING = "pending"
    ESCROW = "escrow"
    PENDING_PAYOUT = "pending_payout"
    COMPLETED = "completed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentStatus(Enum):
    """Escrow payment lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    HELD_ESCROW = "held_escrow"
    COMPLETED = "completed"
    PARTIAL_REFUND = "partial_refund"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentType(Enum):
    """Reason a payment was taken"""
    CONTRACT_PAYMENT = "contract_payment"
    PUBLICATION_FEE = "publication_fee"


class BalanceTransactionType(Enum):
    """Balance ledger entry kinds"""
    PAYMENT = "payment"
    REFUND = "refund"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    WITHDRAWAL = "withdrawal"


class BalanceTransactionStatus(Enum):
    """Balance ledger entry states"""
    PENDING = "pending"
    COMPLETED = "completed"
    REVERSED = "reversed"


class NotificationStatus(Enum):
    """Outbox delivery states"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


MONEY = Numeric(12, 2)
RATE = Numeric(5, 2)


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Marketplace user (client and/or doer)"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)

    # Membership and commission
    membership_tier = Column(String(20), default=MembershipTier.FREE.value, nullable=False)
    has_family_plan = Column(Boolean, default=False, nullable=False)
    current_commission_rate = Column(RATE, default=8, nullable=False)
    free_contracts_remaining = Column(Integer, default=0, nullable=False)

    # Referral program
    referral_code = Column(String(20), unique=True, nullable=True, index=True)
    referred_by_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    completed_referrals = Column(Integer, default=0, nullable=False)
    referral_credited = Column(Boolean, default=False, nullable=False)  # counted towards referrer
    has_referral_discount = Column(Boolean, default=False, nullable=False)
    referral_discount_expires_at = Column(DateTime, nullable=True)

    # Spendable balance; written only by the balance ledger confirm step
    balance = Column(MONEY, default=0, nullable=False)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    referred_by = relationship("User", remote_side=[id])

    __table_args__ = (
        CheckConstraint('free_contracts_remaining >= 0', name='ck_users_free_contracts_nonneg'),
        CheckConstraint('completed_referrals >= 0', name='ck_users_completed_referrals_nonneg'),
    )


class Job(Base):
    """Published job; its price is the total budget for all workers"""
    __tablename__ = 'jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    doer_id = Column(Integer, ForeignKey('users.id'), nullable=True)  # primary worker
    title = Column(String(255), nullable=False)
    price = Column(MONEY, nullable=False)
    status = Column(String(20), default=JobStatus.OPEN.value, nullable=False, index=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True, index=True)

    max_workers = Column(Integer, default=1, nullable=False)
    selected_worker_ids = Column(JSON, default=list, nullable=False)
    allocated_total = Column(MONEY, default=0, nullable=False)
    remaining_budget = Column(MONEY, nullable=True)
    allocations_finalized_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    allocations = relationship(
        "JobWorkerAllocation", back_populates="job", cascade="all, delete-orphan",
        order_by="JobWorkerAllocation.position"
    )

    __table_args__ = (
        CheckConstraint('price > 0', name='ck_jobs_price_positive'),
        CheckConstraint('max_workers >= 1', name='ck_jobs_max_workers'),
        CheckConstraint('allocated_total >= 0', name='ck_jobs_allocated_nonneg'),
        CheckConstraint('remaining_budget IS NULL OR remaining_budget >= 0', name='ck_jobs_remaining_nonneg'),
    )


class JobWorkerAllocation(Base):
    """One worker's share of a multi-worker job budget"""
    __tablename__ = 'job_worker_allocations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    worker_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    position = Column(Integer, default=0, nullable=False)  # order workers were selected in
    allocated_amount = Column(MONEY, nullable=False)
    percentage = Column(RATE, nullable=False)
    allocated_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    job = relationship("Job", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint('job_id', 'worker_id', name='uq_job_worker_allocation'),
        CheckConstraint('allocated_amount >= 0', name='ck_allocation_amount_nonneg'),
    )


class Contract(Base):
    """Work engagement between a client and one doer for a job"""
    __tablename__ = 'contracts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    doer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    # Pricing snapshot taken at creation
    price = Column(MONEY, nullable=False)
    commission = Column(MONEY, default=0, nullable=False)
    commission_rate = Column(RATE, default=0, nullable=False)
    total_price = Column(MONEY, nullable=False)  # price + commission
    allocated_amount = Column(MONEY, nullable=True)
    percentage_of_budget = Column(RATE, nullable=True)

    status = Column(String(30), default=ContractStatus.PENDING.value, nullable=False, index=True)
    escrow_status = Column(String(20), default=ContractEscrowStatus.PENDING.value, nullable=False)
    payment_status = Column(String(20), default=ContractPaymentStatus.PENDING.value, nullable=False)

    terms_accepted_by_client = Column(Boolean, default=False, nullable=False)
    terms_accepted_by_doer = Column(Boolean, default=False, nullable=False)

    client_confirmed = Column(Boolean, default=False, nullable=False)
    client_confirmed_at = Column(DateTime, nullable=True)
    doer_confirmed = Column(Boolean, default=False, nullable=False)
    doer_confirmed_at = Column(DateTime, nullable=True)
    awaiting_confirmation_at = Column(DateTime, nullable=True, index=True)
    confirmation_reminder_sent = Column(Boolean, default=False, nullable=False)
    auto_confirmed = Column(Boolean, default=False, nullable=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    cancelled_by_role = Column(String(20), nullable=True)  # client|doer|admin|system
    cancellation_reason = Column(Text, nullable=True)

    disputed_at = Column(DateTime, nullable=True)
    disputed_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    dispute_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    job = relationship("Job")
    client = relationship("User", foreign_keys=[client_id])
    doer = relationship("User", foreign_keys=[doer_id])

    __table_args__ = (
        CheckConstraint('price >= 0', name='ck_contracts_price_nonneg'),
        CheckConstraint('commission >= 0', name='ck_contracts_commission_nonneg'),
        CheckConstraint('total_price >= price', name='ck_contracts_total_covers_price'),
        Index('ix_contracts_status_awaiting', 'status', 'awaiting_confirmation_at'),
    )


class Payment(Base):
    """Money movement for a contract; the escrow ledger state machine row"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_id = Column(Integer, ForeignKey('contracts.id'), nullable=True, index=True)
    payer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)

    amount = Column(MONEY, nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    payment_type = Column(String(30), default=PaymentType.CONTRACT_PAYMENT.value, nullable=False)
    is_escrow = Column(Boolean, default=True, nullable=False)
    platform_fee = Column(MONEY, default=0, nullable=False)
    platform_fee_percentage = Column(RATE, default=0, nullable=False)

    # Gateway references; capture id doubles as the dedupe key for captures
    gateway_order_id = Column(String(64), unique=True, nullable=True)
    gateway_capture_id = Column(String(64), unique=True, nullable=True)

    escrow_released_at = Column(DateTime, nullable=True)
    escrow_released_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    refunded_amount = Column(MONEY, default=0, nullable=False)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refunded_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    contract = relationship("Contract")
    refunds = relationship("PaymentRefund", back_populates="payment", order_by="PaymentRefund.id")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        CheckConstraint('refunded_amount >= 0', name='ck_payments_refunded_nonneg'),
        CheckConstraint('refunded_amount <= amount', name='ck_payments_refund_within_amount'),
    )


class PaymentRefund(Base):
    """One refund applied against a payment (partial refunds accumulate)"""
    __tablename__ = 'payment_refunds'

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    reason = Column(Text, nullable=False)
    gateway_refund_id = Column(String(64), unique=True, nullable=True)
    refunded_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    payment = relationship("Payment", back_populates="refunds")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_refunds_amount_positive'),
    )


class BalanceTransaction(Base):
    """Append-only ledger entry for a user's internal balance"""
    __tablename__ = 'balance_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount = Column(MONEY, nullable=False)
    previous_balance = Column(MONEY, nullable=False)
    new_balance = Column(MONEY, nullable=False)
    status = Column(String(20), default=BalanceTransactionStatus.PENDING.value, nullable=False, index=True)
    description = Column(Text, nullable=True)

    related_model = Column(String(30), nullable=True)
    related_id = Column(Integer, nullable=True)
    related_contract_id = Column(Integer, ForeignKey('contracts.id'), nullable=True, index=True)
    related_payment_id = Column(Integer, ForeignKey('payments.id'), nullable=True)
    tx_metadata = Column("metadata", JSON, nullable=True)

    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    reversed_at = Column(DateTime, nullable=True)
    reversal_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False, index=True)

    contract = relationship("Contract")

    __table_args__ = (
        # One payout entry per worker per contract
        UniqueConstraint('user_id', 'type', 'related_contract_id', name='uq_balance_tx_user_type_contract'),
        CheckConstraint('amount > 0', name='ck_balance_tx_amount_positive'),
        Index('ix_balance_tx_user_status', 'user_id', 'status'),
    )


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

class WebhookEventLedger(Base):
    """Processed gateway webhook events for idempotency"""
    __tablename__ = 'webhook_event_ledger'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_provider = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(80), nullable=False)
    reference_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), default='processing', nullable=False)
    processing_result = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
    )


class NotificationQueue(Base):
    """Outbox of user notifications, written in the same transaction as the state change"""
    __tablename__ = 'notification_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    template = Column(String(80), nullable=False)
    template_data = Column(JSON, nullable=True)
    status = Column(String(20), default=NotificationStatus.PENDING.value, nullable=False, index=True)
    priority = Column(Integer, default=2, nullable=False)  # 1 high, 2 normal, 3 low
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    idempotency_key = Column(String(255), unique=True, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_notification_queue_status_priority', 'status', 'priority', 'created_at'),
    )
