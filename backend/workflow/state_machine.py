"""
Review Workflow State Machine

One `review_workflows` row per review. Every state change goes through
`apply_transition`, which:

  1. reads the current state (row-locked where the database supports it)
  2. validates the edge against ALLOWED_TRANSITIONS
  3. writes with a compare-and-set UPDATE (WHERE current_state = <state read>)
  4. appends a review_workflow_audit row

A rejected transition writes nothing. Two writers racing on the same review
cannot both succeed from the same read: the loser gets
ConcurrentTransitionError.

The caller owns the unit of work (flush only, never commit).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ReviewWorkflow, ReviewWorkflowAudit

logger = structlog.get_logger()


class WorkflowState(str, Enum):
    PENDING = "PENDING"
    AUTO_REPLIED = "AUTO_REPLIED"
    MANUAL_PENDING = "MANUAL_PENDING"
    ESCALATED = "ESCALATED"
    COMPLETED = "COMPLETED"


ALLOWED_TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.PENDING: frozenset(
        {WorkflowState.AUTO_REPLIED, WorkflowState.MANUAL_PENDING, WorkflowState.COMPLETED}
    ),
    WorkflowState.AUTO_REPLIED: frozenset({WorkflowState.COMPLETED}),
    WorkflowState.MANUAL_PENDING: frozenset({WorkflowState.COMPLETED, WorkflowState.ESCALATED}),
    WorkflowState.ESCALATED: frozenset({WorkflowState.COMPLETED}),
    # Reopen: a late human reply or correction on a closed review
    WorkflowState.COMPLETED: frozenset({WorkflowState.MANUAL_PENDING}),
}

# Columns a transition may reset alongside the state change
TRANSITION_FIELDS = {"reminder_count", "last_reminder_at", "next_reminder_at"}


# ── Errors ─────────────────────────────────────────────────────────────────


class WorkflowTransitionError(Exception):
    """Base class for workflow state machine failures."""


class IllegalTransitionError(WorkflowTransitionError):
    def __init__(self, review_id: uuid.UUID | None, current: WorkflowState, requested: WorkflowState):
        self.review_id = review_id
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal workflow transition {current.value} -> {requested.value} (review {review_id})")


class ConcurrentTransitionError(WorkflowTransitionError):
    def __init__(self, review_id: uuid.UUID, expected: WorkflowState, requested: WorkflowState):
        self.review_id = review_id
        self.expected = expected
        self.requested = requested
        super().__init__(
            f"Workflow for review {review_id} left {expected.value} before the "
            f"transition to {requested.value} was written"
        )


class WorkflowNotFoundError(WorkflowTransitionError):
    def __init__(self, review_id: uuid.UUID):
        self.review_id = review_id
        super().__init__(f"No workflow row for review {review_id}")


# ── Pure validation ────────────────────────────────────────────────────────


def is_transition_allowed(current: WorkflowState, requested: WorkflowState) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def validate_transition(
    current: WorkflowState,
    requested: WorkflowState,
    review_id: uuid.UUID | None = None,
) -> None:
    if not is_transition_allowed(current, requested):
        raise IllegalTransitionError(review_id, current, requested)


# ── Persistence ────────────────────────────────────────────────────────────


async def create_workflow(db: AsyncSession, review_id: uuid.UUID, *, now: datetime | None = None) -> ReviewWorkflow:
    """Create the PENDING row for a freshly ingested review."""
    now = now or datetime.utcnow()
    workflow = ReviewWorkflow(
        review_id=review_id,
        current_state=WorkflowState.PENDING.value,
        reminder_count=0,
        last_action_at=now,
        created_at=now,
    )
    db.add(workflow)
    db.add(
        ReviewWorkflowAudit(
            review_id=review_id,
            from_state=None,
            to_state=WorkflowState.PENDING.value,
            reason="ingested",
            created_at=now,
        )
    )
    await db.flush()
    return workflow


async def get_workflow(db: AsyncSession, review_id: uuid.UUID, *, for_update: bool = False) -> ReviewWorkflow | None:
    query = (
        select(ReviewWorkflow)
        .where(ReviewWorkflow.review_id == review_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def apply_transition(
    db: AsyncSession,
    review_id: uuid.UUID,
    to_state: WorkflowState,
    *,
    reason: str,
    now: datetime | None = None,
    **fields: Any,
) -> ReviewWorkflow:
    """
    Move a review's workflow to `to_state`.

    Extra keyword arguments reset reminder bookkeeping in the same write
    (see TRANSITION_FIELDS). Stamps last_action_at with `now`.
    """
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported workflow fields: {sorted(unknown)}")

    now = now or datetime.utcnow()
    workflow = await get_workflow(db, review_id, for_update=True)
    if workflow is None:
        raise WorkflowNotFoundError(review_id)

    current = WorkflowState(workflow.current_state)
    try:
        validate_transition(current, to_state, review_id)
    except IllegalTransitionError:
        logger.error(
            "workflow.illegal_transition",
            review_id=str(review_id),
            current_state=current.value,
            requested_state=to_state.value,
            reason=reason,
        )
        raise

    result = await db.execute(
        update(ReviewWorkflow)
        .where(
            ReviewWorkflow.review_id == review_id,
            ReviewWorkflow.current_state == current.value,
        )
        .values(current_state=to_state.value, last_action_at=now, **fields)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "workflow.concurrent_transition",
            review_id=str(review_id),
            expected_state=current.value,
            requested_state=to_state.value,
        )
        raise ConcurrentTransitionError(review_id, current, to_state)

    db.add(
        ReviewWorkflowAudit(
            review_id=review_id,
            from_state=current.value,
            to_state=to_state.value,
            reason=reason,
            created_at=now,
        )
    )
    await db.flush()
    await db.refresh(workflow)

    logger.info(
        "workflow.transitioned",
        review_id=str(review_id),
        from_state=current.value,
        to_state=to_state.value,
        reason=reason,
    )
    return workflow


async def record_reminder(
    db: AsyncSession,
    review_id: uuid.UUID,
    *,
    sent_at: datetime,
    next_reminder_at: datetime | None,
) -> bool:
    """
    Mirror one reminder cycle into the workflow row.

    Only applies while the workflow is MANUAL_PENDING; returns False when the
    row has moved on (the caller treats that as drift).
    """
    result = await db.execute(
        update(ReviewWorkflow)
        .where(
            ReviewWorkflow.review_id == review_id,
            ReviewWorkflow.current_state == WorkflowState.MANUAL_PENDING.value,
        )
        .values(
            reminder_count=ReviewWorkflow.reminder_count + 1,
            last_reminder_at=sent_at,
            next_reminder_at=next_reminder_at,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
