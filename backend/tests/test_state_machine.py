"""
Tests for the review workflow state machine: the transition table, the
audit trail, and compare-and-set protection against stale reads.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from db.models import ReviewWorkflowAudit
from workflow import state_machine
from workflow.state_machine import (
    ALLOWED_TRANSITIONS,
    ConcurrentTransitionError,
    IllegalTransitionError,
    WorkflowNotFoundError,
    WorkflowState,
    apply_transition,
    get_workflow,
    is_transition_allowed,
    record_reminder,
    validate_transition,
)


NOW = datetime(2026, 3, 2, 12, 0, 0)


async def _audit(db, review_id):
    result = await db.execute(
        select(ReviewWorkflowAudit)
        .where(ReviewWorkflowAudit.review_id == review_id)
        .order_by(ReviewWorkflowAudit.created_at)
    )
    return list(result.scalars().all())


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,requested",
        [
            (WorkflowState.PENDING, WorkflowState.AUTO_REPLIED),
            (WorkflowState.PENDING, WorkflowState.MANUAL_PENDING),
            (WorkflowState.PENDING, WorkflowState.COMPLETED),
            (WorkflowState.AUTO_REPLIED, WorkflowState.COMPLETED),
            (WorkflowState.MANUAL_PENDING, WorkflowState.COMPLETED),
            (WorkflowState.MANUAL_PENDING, WorkflowState.ESCALATED),
            (WorkflowState.ESCALATED, WorkflowState.COMPLETED),
            (WorkflowState.COMPLETED, WorkflowState.MANUAL_PENDING),
        ],
    )
    def test_allowed(self, current, requested):
        assert is_transition_allowed(current, requested)
        validate_transition(current, requested)

    @pytest.mark.parametrize(
        "current,requested",
        [
            (WorkflowState.AUTO_REPLIED, WorkflowState.MANUAL_PENDING),
            (WorkflowState.AUTO_REPLIED, WorkflowState.ESCALATED),
            (WorkflowState.ESCALATED, WorkflowState.MANUAL_PENDING),
            (WorkflowState.COMPLETED, WorkflowState.AUTO_REPLIED),
            (WorkflowState.COMPLETED, WorkflowState.PENDING),
            (WorkflowState.MANUAL_PENDING, WorkflowState.AUTO_REPLIED),
            (WorkflowState.PENDING, WorkflowState.ESCALATED),
            (WorkflowState.PENDING, WorkflowState.PENDING),
        ],
    )
    def test_illegal(self, current, requested):
        assert not is_transition_allowed(current, requested)
        with pytest.raises(IllegalTransitionError) as excinfo:
            validate_transition(current, requested)
        assert excinfo.value.current == current
        assert excinfo.value.requested == requested

    def test_every_state_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(WorkflowState)


class TestApplyTransition:
    async def test_transition_updates_state_and_audits(self, test_db, outlet, make_review):
        review = await make_review(test_db, outlet)
        later = NOW + timedelta(minutes=3)

        workflow = await apply_transition(
            test_db,
            review.review_id,
            WorkflowState.MANUAL_PENDING,
            reason="low_rating",
            now=later,
            next_reminder_at=later + timedelta(minutes=15),
        )
        await test_db.commit()

        assert workflow.current_state == "MANUAL_PENDING"
        assert workflow.last_action_at == later
        assert workflow.next_reminder_at == later + timedelta(minutes=15)

        audit = await _audit(test_db, review.review_id)
        assert [(row.from_state, row.to_state) for row in audit] == [
            (None, "PENDING"),
            ("PENDING", "MANUAL_PENDING"),
        ]
        assert audit[-1].reason == "low_rating"

    async def test_illegal_transition_writes_nothing(self, test_db, outlet, make_review):
        review = await make_review(test_db, outlet, rating=5)
        await apply_transition(test_db, review.review_id, WorkflowState.AUTO_REPLIED, reason="reply_generated")
        await test_db.commit()

        with pytest.raises(IllegalTransitionError):
            await apply_transition(test_db, review.review_id, WorkflowState.MANUAL_PENDING, reason="bad")
        await test_db.rollback()

        workflow = await get_workflow(test_db, review.review_id)
        assert workflow.current_state == "AUTO_REPLIED"
        assert len(await _audit(test_db, review.review_id)) == 2

    async def test_missing_workflow_raises(self, test_db):
        import uuid

        with pytest.raises(WorkflowNotFoundError):
            await apply_transition(test_db, uuid.uuid4(), WorkflowState.COMPLETED, reason="x")

    async def test_unknown_field_rejected(self, test_db, outlet, make_review):
        review = await make_review(test_db, outlet)
        with pytest.raises(ValueError, match="Unsupported"):
            await apply_transition(test_db, review.review_id, WorkflowState.COMPLETED, reason="x", status="closed")

    async def test_stale_read_loses_compare_and_set(self, test_db, session_factory, outlet, make_review, monkeypatch):
        review = await make_review(test_db, outlet, rating=5)

        # Another writer moves the review on after our read
        async with session_factory() as other:
            await apply_transition(
                other, review.review_id, WorkflowState.AUTO_REPLIED, reason="reply_generated", now=NOW + timedelta(minutes=1)
            )
            await other.commit()

        async def _stale_read(db, review_id, *, for_update=False):
            return SimpleNamespace(current_state=WorkflowState.PENDING.value)

        monkeypatch.setattr(state_machine, "get_workflow", _stale_read)

        with pytest.raises(ConcurrentTransitionError) as excinfo:
            await apply_transition(test_db, review.review_id, WorkflowState.MANUAL_PENDING, reason="low_rating")
        await test_db.rollback()
        assert excinfo.value.expected == WorkflowState.PENDING

        monkeypatch.undo()
        workflow = await get_workflow(test_db, review.review_id)
        assert workflow.current_state == "AUTO_REPLIED"
        assert [row.to_state for row in await _audit(test_db, review.review_id)] == ["PENDING", "AUTO_REPLIED"]


class TestRecordReminder:
    async def test_increments_only_while_manual_pending(self, test_db, outlet, make_review):
        review = await make_review(test_db, outlet)
        sent_at = NOW + timedelta(minutes=15)

        assert not await record_reminder(test_db, review.review_id, sent_at=sent_at, next_reminder_at=None)

        await apply_transition(test_db, review.review_id, WorkflowState.MANUAL_PENDING, reason="low_rating")
        assert await record_reminder(
            test_db,
            review.review_id,
            sent_at=sent_at,
            next_reminder_at=sent_at + timedelta(hours=2),
        )
        await test_db.commit()

        workflow = await get_workflow(test_db, review.review_id)
        assert workflow.reminder_count == 1
        assert workflow.last_reminder_at == sent_at
        assert workflow.next_reminder_at == sent_at + timedelta(hours=2)
