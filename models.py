"""
Escrow Settlement Engine - Database Schema
==========================================

Schema for the hold lifecycle of a work marketplace:
- Holds of customer funds for one completed job
- Disputes with evidence and an append-only timeline
- Payment transfer attempts keyed by idempotency key
- Auto-generated reviews and per-contractor payout statistics

Holds are never deleted; terminal holds are retained for audit.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, TypeDecorator
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on the way in and returns naive values; PostgreSQL
    returns aware values in the session timezone. Both are normalized to UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class HoldStatus(Enum):
    """Escrow hold status"""
    HELD = "held"
    RELEASING = "releasing"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


NON_TERMINAL_HOLD_STATUSES = (
    HoldStatus.HELD.value,
    HoldStatus.RELEASING.value,
    HoldStatus.DISPUTED.value,
)
TERMINAL_HOLD_STATUSES = (
    HoldStatus.RELEASED.value,
    HoldStatus.REFUNDED.value,
    HoldStatus.PARTIALLY_REFUNDED.value,
)


class ReleaseTrigger(Enum):
    """What initiated a release attempt"""
    MANUAL = "manual"
    SWEEP = "sweep"
    DISPUTE_RESOLUTION = "dispute-resolution"


class DisputeStatus(Enum):
    """Dispute status"""
    OPEN = "open"
    RESOLVED = "resolved"


class DisputeResolution(Enum):
    """Outcome chosen by the resolving admin"""
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"
    SPLIT = "split"


class DisputeType(Enum):
    """Dispute type"""
    PAYMENT = "payment"
    QUALITY = "quality"
    TIMELINE = "timeline"
    SCOPE = "scope"
    COMMUNICATION = "communication"
    OTHER = "other"


class DisputeCategory(Enum):
    """Reason category for a dispute"""
    WORK_NOT_COMPLETED = "work_not_completed"
    POOR_QUALITY = "poor_quality"
    OVERCHARGE = "overcharge"
    DAMAGE = "damage"
    NO_SHOW = "no_show"
    CONTRACT_BREACH = "contract_breach"
    NON_PAYMENT = "non_payment"
    OTHER = "other"


class EvidenceType(Enum):
    """Kinds of evidence attached to a dispute"""
    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"
    RECEIPT = "receipt"
    MESSAGE = "message"
    OTHER = "other"


class TransferLeg(Enum):
    """Which side of a hold a transfer pays"""
    PAYOUT = "payout"
    REFUND = "refund"
    # Contractor share of a dispute settlement; never reuses the release payout key
    DISPUTE_PAYOUT = "dispute_payout"


class TransferStatus(Enum):
    """Payment transfer attempt status"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ============================================================================
# ESCROW HOLDS
# ============================================================================

class Hold(Base):
    """Escrowed funds for one unit of completed work"""
    __tablename__ = "holds"

    id = Column(String(64), primary_key=True, default=lambda: new_id("hold"))
    job_id = Column(String(64), nullable=False)
    contractor_id = Column(String(64), nullable=False)
    customer_id = Column(String(64), nullable=False)

    # Gross escrowed amount
    amount = Column(Numeric(18, 2), nullable=False)
    status = Column(String(20), default=HoldStatus.HELD.value, nullable=False)

    held_at = Column(UTCDateTime, default=utc_now, nullable=False)
    release_at = Column(UTCDateTime, nullable=False)
    released_at = Column(UTCDateTime, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)

    # Set when a dispute is filed
    dispute_id = Column(String(64), nullable=True)

    # In-flight release bookkeeping for crash recovery
    releasing_started_at = Column(UTCDateTime, nullable=True)
    release_trigger = Column(String(20), nullable=True)
    last_error = Column(Text, nullable=True)

    # Settlement amounts actually moved
    contractor_payout = Column(Numeric(18, 2), nullable=True)
    customer_refund = Column(Numeric(18, 2), nullable=True)
    payout_transfer_id = Column(String(128), nullable=True)
    refund_transfer_id = Column(String(128), nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_holds_amount_positive"),
        CheckConstraint(
            "status IN ('held', 'releasing', 'released', 'disputed', 'refunded', 'partially_refunded')",
            name="ck_holds_status",
        ),
        # At most one open hold per job
        Index(
            "uq_holds_open_job",
            "job_id",
            unique=True,
            sqlite_where=status.in_(NON_TERMINAL_HOLD_STATUSES),
            postgresql_where=status.in_(NON_TERMINAL_HOLD_STATUSES),
        ),
        Index("ix_holds_status_release_at", "status", "release_at"),
        Index("ix_holds_contractor", "contractor_id"),
        Index("ix_holds_customer", "customer_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HOLD_STATUSES

    def __repr__(self):
        return f"<Hold(id={self.id}, job_id={self.job_id}, status={self.status}, amount={self.amount})>"


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Dispute attached 1:1 to a hold"""
    __tablename__ = "disputes"

    id = Column(String(64), primary_key=True, default=lambda: new_id("dsp"))
    case_number = Column(String(32), nullable=False, unique=True)
    hold_id = Column(String(64), ForeignKey("holds.id"), nullable=False, unique=True)
    customer_id = Column(String(64), nullable=False)
    contractor_id = Column(String(64), nullable=False)

    dispute_type = Column(String(20), nullable=False)
    category = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    desired_resolution = Column(Text, nullable=True)
    priority = Column(String(10), default="high", nullable=False)

    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False)
    resolution = Column(String(20), nullable=True)
    # Only meaningful for split resolutions
    refund_amount = Column(Numeric(18, 2), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)

    response_deadline = Column(UTCDateTime, nullable=False)
    resolution_deadline = Column(UTCDateTime, nullable=False)
    resolved_at = Column(UTCDateTime, nullable=True)
    settled_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    hold = relationship("Hold", foreign_keys=[hold_id])
    evidence = relationship(
        "DisputeEvidence", back_populates="dispute", lazy="selectin",
        order_by="DisputeEvidence.id",
    )
    timeline = relationship(
        "DisputeTimelineEntry", back_populates="dispute", lazy="selectin",
        order_by="DisputeTimelineEntry.id",
    )

    __table_args__ = (
        CheckConstraint("status IN ('open', 'resolved')", name="ck_disputes_status"),
        CheckConstraint(
            "resolution IS NULL OR resolution IN ('customer', 'contractor', 'split')",
            name="ck_disputes_resolution",
        ),
        Index("ix_disputes_contractor_resolved", "contractor_id", "resolved_at"),
        Index("ix_disputes_status", "status"),
    )

    def __repr__(self):
        return f"<Dispute(case_number={self.case_number}, hold_id={self.hold_id}, status={self.status})>"


class DisputeEvidence(Base):
    """Evidence attached to a dispute"""
    __tablename__ = "dispute_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(64), ForeignKey("disputes.id"), nullable=False)
    uploaded_by = Column(String(64), nullable=False)
    evidence_type = Column(String(20), nullable=False)
    url = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence")

    __table_args__ = (
        Index("ix_dispute_evidence_dispute", "dispute_id"),
    )

    def __repr__(self):
        return f"<DisputeEvidence(dispute_id={self.dispute_id}, type={self.evidence_type})>"


class DisputeTimelineEntry(Base):
    """Append-only audit trail of a dispute"""
    __tablename__ = "dispute_timeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(64), ForeignKey("disputes.id"), nullable=False)
    action = Column(String(32), nullable=False)
    description = Column(Text, nullable=False)
    performed_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="timeline")

    __table_args__ = (
        Index("ix_dispute_timeline_dispute", "dispute_id"),
    )

    def __repr__(self):
        return f"<DisputeTimelineEntry(dispute_id={self.dispute_id}, action={self.action})>"


# ============================================================================
# PAYMENT TRANSFERS
# ============================================================================

class PaymentTransfer(Base):
    """One logical money movement, deduplicated by idempotency key"""
    __tablename__ = "payment_transfers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hold_id = Column(String(64), ForeignKey("holds.id"), nullable=False)
    leg = Column(String(20), nullable=False)
    idempotency_key = Column(String(64), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    destination_account = Column(String(128), nullable=False)
    status = Column(String(20), default=TransferStatus.PENDING.value, nullable=False)
    transfer_id = Column(String(128), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_payment_transfers_key"),
        CheckConstraint("amount > 0", name="ck_payment_transfers_amount_positive"),
        Index("ix_payment_transfers_hold", "hold_id"),
    )

    def __repr__(self):
        return f"<PaymentTransfer(hold_id={self.hold_id}, leg={self.leg}, status={self.status})>"


# ============================================================================
# SIDE EFFECTS: REVIEWS AND STATS
# ============================================================================

class Review(Base):
    """Customer review of a contractor for one job"""
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hold_id = Column(String(64), ForeignKey("holds.id"), nullable=False, unique=True)
    job_id = Column(String(64), nullable=False)
    contractor_id = Column(String(64), nullable=False)
    customer_id = Column(String(64), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    is_auto_generated = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
        Index("ix_reviews_contractor", "contractor_id"),
    )

    def __repr__(self):
        return f"<Review(hold_id={self.hold_id}, rating={self.rating}, auto={self.is_auto_generated})>"


class ContractorStats(Base):
    """Running payout and dispute counters per contractor"""
    __tablename__ = "contractor_stats"

    contractor_id = Column(String(64), primary_key=True)
    completed_jobs = Column(Integer, default=0, nullable=False)
    total_paid_out = Column(Numeric(18, 2), default=0, nullable=False)
    disputes_filed = Column(Integer, default=0, nullable=False)
    disputes_lost = Column(Integer, default=0, nullable=False)
    last_payout_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<ContractorStats(contractor_id={self.contractor_id}, completed_jobs={self.completed_jobs})>"
