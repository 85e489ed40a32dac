"""
Tests for the operator reply action.
"""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from db.models import ManualReviewQueueItem, Review, ReviewWorkflowAudit
from workflow.handlers import handle_manual_review
from workflow.manual_reply import ReviewNotFoundError, submit_human_reply
from workflow.state_machine import WorkflowState, apply_transition, get_workflow

NOW = datetime(2026, 3, 2, 12, 0, 0)


async def _reasons(db, review_id) -> list[str]:
    result = await db.execute(
        select(ReviewWorkflowAudit.reason)
        .where(ReviewWorkflowAudit.review_id == review_id)
        .order_by(ReviewWorkflowAudit.created_at)
    )
    return list(result.scalars().all())


async def test_reply_closes_manual_review(test_db, outlet, make_review, fakes):
    review = await make_review(test_db, outlet, rating=1, external_id="g-11")
    await handle_manual_review(test_db, review, outlet, fakes.services, now=NOW)

    result = await submit_human_reply(
        test_db,
        review.review_id,
        "  So sorry, Meera. Please call us so we can make it right.  ",
        source=fakes.source,
        now=NOW + timedelta(hours=1),
    )

    assert result["state"] == "COMPLETED"
    assert result["previous_state"] == "MANUAL_PENDING"
    assert result["reopened"] is False
    assert result["posted"] is True
    assert fakes.source.posted == [("g-11", "So sorry, Meera. Please call us so we can make it right.")]

    refreshed = await test_db.get(Review, review.review_id, populate_existing=True)
    assert refreshed.status == "closed"
    assert refreshed.manual_reply_text == "So sorry, Meera. Please call us so we can make it right."

    item = (
        await test_db.execute(select(ManualReviewQueueItem).execution_options(populate_existing=True))
    ).scalar_one()
    assert item.status == "responded"
    assert item.next_reminder_at is None

    workflow = await get_workflow(test_db, review.review_id)
    assert workflow.current_state == "COMPLETED"
    assert workflow.next_reminder_at is None
    assert await _reasons(test_db, review.review_id) == ["ingested", "low_rating", "human_reply"]


async def test_reply_on_escalated_review_completes(test_db, outlet, make_review, fakes):
    review = await make_review(test_db, outlet, rating=2)
    await handle_manual_review(test_db, review, outlet, fakes.services, now=NOW)
    await apply_transition(
        test_db,
        review.review_id,
        WorkflowState.ESCALATED,
        reason="reminder_budget_exhausted",
        now=NOW + timedelta(hours=2),
    )
    await test_db.commit()

    result = await submit_human_reply(test_db, review.review_id, "Apologies.", now=NOW + timedelta(hours=3))

    assert result["previous_state"] == "ESCALATED"
    assert result["posted"] is False
    assert (await get_workflow(test_db, review.review_id)).current_state == "COMPLETED"


async def test_reply_on_completed_review_is_audited_correction(test_db, outlet, make_review, fakes):
    review = await make_review(test_db, outlet, rating=3)
    await handle_manual_review(test_db, review, outlet, fakes.services, now=NOW)
    await submit_human_reply(test_db, review.review_id, "First reply.", now=NOW + timedelta(hours=1))

    result = await submit_human_reply(test_db, review.review_id, "Corrected reply.", now=NOW + timedelta(hours=2))

    assert result["reopened"] is True
    assert result["previous_state"] == "COMPLETED"
    assert (await get_workflow(test_db, review.review_id)).current_state == "COMPLETED"
    assert (await test_db.get(Review, review.review_id, populate_existing=True)).manual_reply_text == "Corrected reply."
    assert await _reasons(test_db, review.review_id) == [
        "ingested",
        "low_rating",
        "human_reply",
        "reopened_for_correction",
        "reply_corrected",
    ]


async def test_blank_reply_rejected(test_db, outlet, make_review):
    review = await make_review(test_db, outlet)
    with pytest.raises(ValueError, match="empty"):
        await submit_human_reply(test_db, review.review_id, "   ")


async def test_unknown_review_rejected(test_db):
    with pytest.raises(ReviewNotFoundError):
        await submit_human_reply(test_db, uuid.uuid4(), "Thanks!")
