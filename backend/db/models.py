"""
ReviewFlow Database Models

Six tables for the review automation engine.

Tables:
  1. outlets                - Tenant places of business + automation eligibility
  2. reviews                - Ingested customer reviews and their reply text
  3. review_workflows       - One state-machine row per review (1:1)
  4. manual_review_queue    - Human-response work items with reminder bookkeeping
  5. review_workflow_audit  - Append-only log of applied workflow transitions
  6. review_batch_runs      - One row per batch cycle (ingestion watermark)
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


WORKFLOW_STATES_SQL = "'PENDING', 'AUTO_REPLIED', 'MANUAL_PENDING', 'ESCALATED', 'COMPLETED'"


# ─── 1. Outlets ─────────────────────────────────────────────────────────────


class Outlet(Base):
    __tablename__ = "outlets"

    outlet_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    location = Column(String(255), default="")
    category = Column(String(30), nullable=False, default="other")
    contact_name = Column(String(255))
    contact_whatsapp = Column(String(32))  # Notification channel address

    # Review platform credentials
    google_location_name = Column(String(255))  # accounts/{a}/locations/{l}
    google_refresh_token_encrypted = Column(Text)

    # Eligibility gate inputs (owned by the billing/onboarding surfaces)
    status = Column(String(20), nullable=False, default="active")
    automation_enabled = Column(Boolean, nullable=False, default=False)
    onboarding_status = Column(String(20), nullable=False, default="pending")
    subscription_status = Column(String(20), nullable=False, default="trial")

    # Per-outlet ingestion watermark, advanced only after a successful pass
    last_review_sync_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_outlets_status", "status"),
        CheckConstraint("category IN ('hotel', 'restaurant', 'gym', 'clinic', 'other')", name="ck_outlet_category"),
        CheckConstraint("status IN ('active', 'paused', 'disabled')", name="ck_outlet_status"),
        CheckConstraint("onboarding_status IN ('pending', 'completed')", name="ck_outlet_onboarding_status"),
        CheckConstraint(
            "subscription_status IN ('trial', 'active', 'past_due', 'canceled', 'inactive')",
            name="ck_outlet_subscription_status",
        ),
    )

    reviews = relationship("Review", back_populates="outlet", cascade="all, delete-orphan")


# ─── 2. Reviews ─────────────────────────────────────────────────────────────


class Review(Base):
    __tablename__ = "reviews"

    review_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    outlet_id = Column(GUID(), ForeignKey("outlets.outlet_id"), nullable=False)
    platform = Column(String(20), nullable=False, default="gmb")
    external_review_id = Column(String(255))  # Idempotency key, unique when present
    rating = Column(Integer, nullable=False)
    customer_name = Column(String(255), nullable=False, default="Anonymous")
    review_text = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="pending")
    ai_reply_text = Column(Text)
    manual_reply_text = Column(Text)
    source_created_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("external_review_id", name="uq_reviews_external_review_id"),
        Index("ix_reviews_outlet_status", "outlet_id", "status"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        CheckConstraint(
            "status IN ('pending', 'auto_replied', 'manual_pending', 'closed')",
            name="ck_review_status",
        ),
    )

    outlet = relationship("Outlet", back_populates="reviews")
    workflow = relationship("ReviewWorkflow", back_populates="review", uselist=False, cascade="all, delete-orphan")


# ─── 3. Review Workflows ───────────────────────────────────────────────────


class ReviewWorkflow(Base):
    __tablename__ = "review_workflows"

    review_id = Column(GUID(), ForeignKey("reviews.review_id"), primary_key=True)
    current_state = Column(String(20), nullable=False, default="PENDING")
    reminder_count = Column(Integer, nullable=False, default=0)
    last_action_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_reminder_at = Column(DateTime)
    next_reminder_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_review_workflows_state", "current_state"),
        CheckConstraint(f"current_state IN ({WORKFLOW_STATES_SQL})", name="ck_review_workflow_state"),
        CheckConstraint("reminder_count >= 0", name="ck_review_workflow_reminder_count"),
    )

    review = relationship("Review", back_populates="workflow")


# ─── 4. Manual Review Queue ────────────────────────────────────────────────


class ManualReviewQueueItem(Base):
    __tablename__ = "manual_review_queue"

    queue_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    review_id = Column(GUID(), ForeignKey("reviews.review_id"), nullable=False)
    outlet_id = Column(GUID(), ForeignKey("outlets.outlet_id"), nullable=False)
    assigned_handler_id = Column(String(255))
    status = Column(String(20), nullable=False, default="pending")
    reminder_count = Column(Integer, nullable=False, default=0)
    next_reminder_at = Column(DateTime)
    last_notification_ok = Column(Boolean)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("review_id", name="uq_manual_review_queue_review"),
        Index("ix_manual_review_queue_due", "status", "next_reminder_at"),
        Index("ix_manual_review_queue_outlet", "outlet_id"),
        CheckConstraint("status IN ('pending', 'responded', 'escalated')", name="ck_manual_queue_status"),
        CheckConstraint("reminder_count >= 0", name="ck_manual_queue_reminder_count"),
    )

    review = relationship("Review")


# ─── 5. Workflow Audit ─────────────────────────────────────────────────────


class ReviewWorkflowAudit(Base):
    __tablename__ = "review_workflow_audit"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    review_id = Column(GUID(), ForeignKey("reviews.review_id"), nullable=False)
    from_state = Column(String(20))
    to_state = Column(String(20), nullable=False)
    reason = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_review_workflow_audit_review", "review_id", "created_at"),)


# ─── 6. Batch Runs ─────────────────────────────────────────────────────────


class ReviewBatchRun(Base):
    __tablename__ = "review_batch_runs"

    run_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    trigger = Column(String(20), nullable=False, default="scheduled")
    status = Column(String(20), nullable=False, default="running")
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    watermark = Column(DateTime)  # "since" for the next ingestion pass
    outlets_processed = Column(Integer, nullable=False, default=0)
    outlets_failed = Column(Integer, nullable=False, default=0)
    reviews_created = Column(Integer, nullable=False, default=0)
    reminders_sent = Column(Integer, nullable=False, default=0)
    escalations = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)

    __table_args__ = (
        Index("ix_review_batch_runs_status_completed", "status", "completed_at"),
        CheckConstraint("status IN ('running', 'success', 'partial', 'failed')", name="ck_review_batch_run_status"),
        CheckConstraint("trigger IN ('scheduled', 'startup', 'manual')", name="ck_review_batch_run_trigger"),
    )
