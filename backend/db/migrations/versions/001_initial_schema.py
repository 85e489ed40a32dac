"""
Initial schema: outlets, reviews, workflow state, manual queue, audit, batch runs.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

WORKFLOW_STATES = "'PENDING', 'AUTO_REPLIED', 'MANUAL_PENDING', 'ESCALATED', 'COMPLETED'"


def upgrade() -> None:
    op.create_table(
        "outlets",
        sa.Column("outlet_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=True, server_default=""),
        sa.Column("category", sa.String(length=30), nullable=False, server_default="other"),
        sa.Column("contact_name", sa.String(length=255), nullable=True),
        sa.Column("contact_whatsapp", sa.String(length=32), nullable=True),
        sa.Column("google_location_name", sa.String(length=255), nullable=True),
        sa.Column("google_refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("automation_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("onboarding_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("subscription_status", sa.String(length=20), nullable=False, server_default="trial"),
        sa.Column("last_review_sync_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("category IN ('hotel', 'restaurant', 'gym', 'clinic', 'other')", name="ck_outlet_category"),
        sa.CheckConstraint("status IN ('active', 'paused', 'disabled')", name="ck_outlet_status"),
        sa.CheckConstraint("onboarding_status IN ('pending', 'completed')", name="ck_outlet_onboarding_status"),
        sa.CheckConstraint(
            "subscription_status IN ('trial', 'active', 'past_due', 'canceled', 'inactive')",
            name="ck_outlet_subscription_status",
        ),
    )
    op.create_index("ix_outlets_status", "outlets", ["status"])

    op.create_table(
        "reviews",
        sa.Column("review_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("outlet_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("outlets.outlet_id"), nullable=False),
        sa.Column("platform", sa.String(length=20), nullable=False, server_default="gmb"),
        sa.Column("external_review_id", sa.String(length=255), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False, server_default="Anonymous"),
        sa.Column("review_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("ai_reply_text", sa.Text(), nullable=True),
        sa.Column("manual_reply_text", sa.Text(), nullable=True),
        sa.Column("source_created_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("external_review_id", name="uq_reviews_external_review_id"),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        sa.CheckConstraint(
            "status IN ('pending', 'auto_replied', 'manual_pending', 'closed')",
            name="ck_review_status",
        ),
    )
    op.create_index("ix_reviews_outlet_status", "reviews", ["outlet_id", "status"])

    op.create_table(
        "review_workflows",
        sa.Column(
            "review_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reviews.review_id"),
            primary_key=True,
        ),
        sa.Column("current_state", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_action_at", sa.DateTime(), nullable=False),
        sa.Column("last_reminder_at", sa.DateTime(), nullable=True),
        sa.Column("next_reminder_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(f"current_state IN ({WORKFLOW_STATES})", name="ck_review_workflow_state"),
        sa.CheckConstraint("reminder_count >= 0", name="ck_review_workflow_reminder_count"),
    )
    op.create_index("ix_review_workflows_state", "review_workflows", ["current_state"])

    op.create_table(
        "manual_review_queue",
        sa.Column("queue_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("review_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("reviews.review_id"), nullable=False),
        sa.Column("outlet_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("outlets.outlet_id"), nullable=False),
        sa.Column("assigned_handler_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_reminder_at", sa.DateTime(), nullable=True),
        sa.Column("last_notification_ok", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("review_id", name="uq_manual_review_queue_review"),
        sa.CheckConstraint("status IN ('pending', 'responded', 'escalated')", name="ck_manual_queue_status"),
        sa.CheckConstraint("reminder_count >= 0", name="ck_manual_queue_reminder_count"),
    )
    op.create_index("ix_manual_review_queue_due", "manual_review_queue", ["status", "next_reminder_at"])
    op.create_index("ix_manual_review_queue_outlet", "manual_review_queue", ["outlet_id"])

    op.create_table(
        "review_workflow_audit",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("review_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("reviews.review_id"), nullable=False),
        sa.Column("from_state", sa.String(length=20), nullable=True),
        sa.Column("to_state", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_review_workflow_audit_review", "review_workflow_audit", ["review_id", "created_at"])

    op.create_table(
        "review_batch_runs",
        sa.Column("run_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("trigger", sa.String(length=20), nullable=False, server_default="scheduled"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("watermark", sa.DateTime(), nullable=True),
        sa.Column("outlets_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("outlets_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reviews_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reminders_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'partial', 'failed')",
            name="ck_review_batch_run_status",
        ),
        sa.CheckConstraint("trigger IN ('scheduled', 'startup', 'manual')", name="ck_review_batch_run_trigger"),
    )
    op.create_index(
        "ix_review_batch_runs_status_completed",
        "review_batch_runs",
        ["status", "completed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_review_batch_runs_status_completed", table_name="review_batch_runs")
    op.drop_table("review_batch_runs")
    op.drop_index("ix_review_workflow_audit_review", table_name="review_workflow_audit")
    op.drop_table("review_workflow_audit")
    op.drop_index("ix_manual_review_queue_outlet", table_name="manual_review_queue")
    op.drop_index("ix_manual_review_queue_due", table_name="manual_review_queue")
    op.drop_table("manual_review_queue")
    op.drop_index("ix_review_workflows_state", table_name="review_workflows")
    op.drop_table("review_workflows")
    op.drop_index("ix_reviews_outlet_status", table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("ix_outlets_status", table_name="outlets")
    op.drop_table("outlets")
