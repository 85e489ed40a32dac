"""
Human reply submission.

The entry point the operator surface calls when a person answers a review.
Marks the queue item responded and completes the workflow. Calling it on an
already closed review records a correction: the workflow is reopened into
MANUAL_PENDING and completed again, both steps audited.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Review
from integrations.base import ReviewSource, call_external
from workflow.reminders import mark_responded
from workflow.state_machine import WorkflowNotFoundError, WorkflowState, apply_transition, get_workflow

logger = structlog.get_logger()


class ReviewNotFoundError(LookupError):
    def __init__(self, review_id: uuid.UUID):
        self.review_id = review_id
        super().__init__(f"Review {review_id} not found")


async def submit_human_reply(
    db: AsyncSession,
    review_id: uuid.UUID,
    reply_text: str,
    *,
    source: ReviewSource | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Record a human reply and close the review.

    When `source` is given the reply is also published on the platform
    (best-effort; the workflow is closed either way).

    Raises:
        ValueError: empty reply text
        ReviewNotFoundError: unknown review
        WorkflowNotFoundError: review has no workflow row
    """
    reply_text = (reply_text or "").strip()
    if not reply_text:
        raise ValueError("Reply text must not be empty")

    now = now or datetime.utcnow()
    review = await db.get(Review, review_id)
    if review is None:
        raise ReviewNotFoundError(review_id)
    workflow = await get_workflow(db, review_id)
    if workflow is None:
        raise WorkflowNotFoundError(review_id)

    previous_state = WorkflowState(workflow.current_state)
    reopened = previous_state == WorkflowState.COMPLETED

    try:
        if reopened:
            await apply_transition(db, review_id, WorkflowState.MANUAL_PENDING, reason="reopened_for_correction", now=now)
        review.manual_reply_text = reply_text
        review.status = "closed"
        await mark_responded(db, review_id, now=now)
        await apply_transition(
            db,
            review_id,
            WorkflowState.COMPLETED,
            reason="reply_corrected" if reopened else "human_reply",
            now=now,
            next_reminder_at=None,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "manual_reply.recorded",
        review_id=str(review_id),
        previous_state=previous_state.value,
        reopened=reopened,
    )

    posted = False
    if source is not None and review.external_review_id:
        posted = await call_external(
            source.post_reply(review.external_review_id, reply_text),
            timeout=get_settings().external_call_timeout_seconds,
            default=False,
            event="manual_reply.post",
            review_id=str(review_id),
        )

    return {
        "review_id": str(review_id),
        "state": WorkflowState.COMPLETED.value,
        "previous_state": previous_state.value,
        "reopened": reopened,
        "posted": posted,
    }
