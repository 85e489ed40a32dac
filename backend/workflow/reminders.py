"""
Manual Review Queue + Reminder Scheduler

Queue items are the human-response work list. Each batch cycle the scheduler:
  1. Selects pending items whose next_reminder_at has passed
  2. Cross-checks the paired workflow row (reconciles drift, never re-sends)
  3. Advances the reminder count and sends a reminder, or escalates once the
     budget is spent
  4. Mirrors the outcome into the workflow row

Reminder cadence (indexed by the count after the increment, clamped):
  15 min → 2 h → 6 h → 12 h → 24 h; escalation on the 5th cycle.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import ManualReviewQueueItem, Outlet, Review
from integrations.base import ExternalServices
from workflow.state_machine import WorkflowState, apply_transition, get_workflow, record_reminder

logger = structlog.get_logger()

REMINDER_CADENCE: tuple[timedelta, ...] = (
    timedelta(minutes=15),
    timedelta(hours=2),
    timedelta(hours=6),
    timedelta(hours=12),
    timedelta(hours=24),
)
MAX_REMINDERS = 5
FIRST_REMINDER_DELAY = REMINDER_CADENCE[0]
DEFAULT_BATCH_LIMIT = 100


@dataclass(frozen=True)
class ReminderDecision:
    reminder_count: int
    escalate: bool
    next_reminder_at: datetime | None


def reminder_interval(reminder_count: int) -> timedelta:
    index = min(max(reminder_count, 0), len(REMINDER_CADENCE) - 1)
    return REMINDER_CADENCE[index]


def next_reminder(reminder_count: int, now: datetime) -> ReminderDecision:
    """Decide what one due reminder cycle does to an item with `reminder_count`."""
    new_count = reminder_count + 1
    if new_count >= MAX_REMINDERS:
        return ReminderDecision(reminder_count=new_count, escalate=True, next_reminder_at=None)
    return ReminderDecision(
        reminder_count=new_count,
        escalate=False,
        next_reminder_at=now + reminder_interval(new_count),
    )


# ──────────────────────────────────────────────────────────────────────────
# Queue Store
# ──────────────────────────────────────────────────────────────────────────


async def get_queue_item(db: AsyncSession, review_id: uuid.UUID) -> ManualReviewQueueItem | None:
    result = await db.execute(
        select(ManualReviewQueueItem)
        .where(ManualReviewQueueItem.review_id == review_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def enqueue_review(
    db: AsyncSession,
    review: Review,
    *,
    now: datetime,
    assigned_handler_id: str | None = None,
) -> ManualReviewQueueItem:
    """
    Put a review on the manual queue with the first reminder 15 minutes out.

    An existing item for the review is re-armed rather than duplicated.
    """
    item = await get_queue_item(db, review.review_id)
    if item is None:
        item = ManualReviewQueueItem(
            review_id=review.review_id,
            outlet_id=review.outlet_id,
            created_at=now,
        )
        db.add(item)
    item.assigned_handler_id = assigned_handler_id or item.assigned_handler_id
    item.status = "pending"
    item.reminder_count = 0
    item.next_reminder_at = now + FIRST_REMINDER_DELAY
    item.updated_at = now
    await db.flush()
    return item


async def mark_responded(db: AsyncSession, review_id: uuid.UUID, *, now: datetime) -> ManualReviewQueueItem | None:
    item = await get_queue_item(db, review_id)
    if item is None:
        return None
    item.status = "responded"
    item.next_reminder_at = None
    item.updated_at = now
    await db.flush()
    return item


async def select_due_items(
    db: AsyncSession,
    *,
    now: datetime,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> list[ManualReviewQueueItem]:
    result = await db.execute(
        select(ManualReviewQueueItem)
        .where(
            ManualReviewQueueItem.status == "pending",
            ManualReviewQueueItem.next_reminder_at.isnot(None),
            ManualReviewQueueItem.next_reminder_at <= now,
        )
        .order_by(ManualReviewQueueItem.next_reminder_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def _advance_queue_item(
    db: AsyncSession,
    item: ManualReviewQueueItem,
    decision: ReminderDecision,
    *,
    now: datetime,
    notification_ok: bool | None,
) -> bool:
    """Compare-and-set on (status, reminder_count) so the count only moves forward once."""
    result = await db.execute(
        update(ManualReviewQueueItem)
        .where(
            ManualReviewQueueItem.queue_id == item.queue_id,
            ManualReviewQueueItem.status == "pending",
            ManualReviewQueueItem.reminder_count == decision.reminder_count - 1,
        )
        .values(
            reminder_count=decision.reminder_count,
            status="escalated" if decision.escalate else "pending",
            next_reminder_at=decision.next_reminder_at,
            last_notification_ok=notification_ok,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await db.refresh(item)
    return True


# ──────────────────────────────────────────────────────────────────────────
# Reminder Scheduler
# ──────────────────────────────────────────────────────────────────────────


async def _send(
    services: ExternalServices,
    to: str | None,
    template: str,
    parameters: list[str],
    **context: Any,
) -> bool:
    if not to:
        logger.warning("reminders.no_contact", template=template, **context)
        return False
    return await services.call(
        services.notifier.send_template(to, template, parameters),
        default=False,
        event="reminders.notify",
        template=template,
        **context,
    )


async def _reconcile(db: AsyncSession, item: ManualReviewQueueItem, state: WorkflowState, now: datetime) -> None:
    item.status = "responded" if state == WorkflowState.COMPLETED else "escalated"
    item.next_reminder_at = None
    item.updated_at = now
    await db.commit()
    logger.warning(
        "reminders.reconciled",
        review_id=str(item.review_id),
        workflow_state=state.value,
        queue_status=item.status,
    )


async def _defer(db: AsyncSession, item: ManualReviewQueueItem, now: datetime) -> None:
    # Count untouched; the item only leaves the due set until its workflow settles
    item.next_reminder_at = now + reminder_interval(item.reminder_count)
    item.updated_at = now
    await db.commit()


async def process_queue_item(
    db: AsyncSession,
    item: ManualReviewQueueItem,
    services: ExternalServices,
    *,
    now: datetime,
) -> str:
    """
    Run one reminder cycle for a due item and commit it.

    Returns the outcome: sent, send_failed, escalated, reconciled,
    skipped_drift or skipped_stale.
    """
    settings = get_settings()
    review_id = item.review_id
    log = logger.bind(review_id=str(review_id), queue_id=str(item.queue_id))

    workflow = await get_workflow(db, review_id)
    if workflow is None:
        log.error("reminders.workflow_missing")
        await _defer(db, item, now)
        return "skipped_drift"

    state = WorkflowState(workflow.current_state)
    if state in (WorkflowState.COMPLETED, WorkflowState.ESCALATED):
        await _reconcile(db, item, state, now)
        return "reconciled"
    if state != WorkflowState.MANUAL_PENDING:
        log.warning("reminders.workflow_not_manual", workflow_state=state.value)
        await _defer(db, item, now)
        return "skipped_drift"

    review = await db.get(Review, review_id)
    outlet = await db.get(Outlet, item.outlet_id)
    decision = next_reminder(item.reminder_count, now)
    contact = outlet.contact_whatsapp if outlet else None

    if decision.escalate:
        if not await _advance_queue_item(db, item, decision, now=now, notification_ok=None):
            await db.rollback()
            log.warning("reminders.stale_item")
            return "skipped_stale"
        await apply_transition(
            db,
            review_id,
            WorkflowState.ESCALATED,
            reason="reminder_budget_exhausted",
            now=now,
            reminder_count=decision.reminder_count,
            last_reminder_at=now,
            next_reminder_at=None,
        )
        await db.commit()
        log.warning("reminders.escalated", reminder_count=decision.reminder_count)

        hours_pending = int((now - item.created_at).total_seconds() // 3600) if item.created_at else 0
        await _send(
            services,
            contact,
            settings.whatsapp_template_escalation,
            [
                outlet.name if outlet else "",
                review.customer_name if review else "",
                str(review.rating) if review else "",
                str(hours_pending),
            ],
            review_id=str(review_id),
        )
        return "escalated"

    sent = await _send(
        services,
        contact,
        settings.whatsapp_template_reminder,
        [
            str(decision.reminder_count),
            outlet.name if outlet else "",
            review.customer_name if review else "",
            str(review.rating) if review else "",
        ],
        review_id=str(review_id),
    )

    if not await _advance_queue_item(db, item, decision, now=now, notification_ok=sent):
        await db.rollback()
        log.warning("reminders.stale_item")
        return "skipped_stale"
    if not await record_reminder(db, review_id, sent_at=now, next_reminder_at=decision.next_reminder_at):
        log.warning("reminders.workflow_moved", reminder_count=decision.reminder_count)
    await db.commit()

    log.info(
        "reminders.advanced",
        reminder_count=decision.reminder_count,
        next_reminder_at=decision.next_reminder_at.isoformat(),
        sent=sent,
    )
    return "sent" if sent else "send_failed"


async def process_due_reminders(
    db: AsyncSession,
    services: ExternalServices,
    *,
    now: datetime | None = None,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> dict[str, int]:
    """Process every due queue item; one failing item never stops the rest."""
    now = now or datetime.utcnow()
    queue_ids = [item.queue_id for item in await select_due_items(db, now=now, limit=limit)]

    summary = {
        "due": len(queue_ids),
        "sent": 0,
        "send_failed": 0,
        "escalated": 0,
        "reconciled": 0,
        "skipped": 0,
        "errors": 0,
    }
    for queue_id in queue_ids:
        try:
            # Re-read: a rollback on an earlier item expires everything loaded
            item = await db.get(ManualReviewQueueItem, queue_id, populate_existing=True)
            if item is None:
                continue
            outcome = await process_queue_item(db, item, services, now=now)
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            logger.error("reminders.item_failed", queue_id=str(queue_id), error=str(exc), exc_info=True)
            summary["errors"] += 1
            continue
        if outcome in ("skipped_drift", "skipped_stale"):
            summary["skipped"] += 1
        else:
            summary[outcome] += 1

    if queue_ids:
        logger.info("reminders.completed", **summary)
    return summary
