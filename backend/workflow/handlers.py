"""
Review Branch Handlers

Auto-reply branch (4-5 stars):
    generate → persist + AUTO_REPLIED → post → closed + COMPLETED
  Generation failure leaves the review PENDING; post failure leaves it
  AUTO_REPLIED with the generated text saved. Both are retried by a later
  batch (see workflow.ingestion.resume_stalled_reviews).

Manual branch (1-3 stars):
    queue item (first reminder in 15 min) + MANUAL_PENDING → optional
    suggested reply → initial alert to the outlet contact

Each step commits its own unit so a crash between steps leaves a state a
later batch can pick up from.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Outlet, Review
from integrations.base import ExternalServices, ReplyRequest, ReviewSource
from workflow.classifier import ReplyBranch, classify_rating
from workflow.reminders import enqueue_review
from workflow.state_machine import WorkflowState, apply_transition

logger = structlog.get_logger()

ALERT_TEXT_PREVIEW_CHARS = 200


def build_reply_request(review: Review, outlet: Outlet) -> ReplyRequest:
    return ReplyRequest(
        rating=review.rating,
        customer_name=review.customer_name or "Anonymous",
        review_text=review.review_text or "",
        outlet_name=outlet.name,
        outlet_location=outlet.location or "",
        outlet_category=outlet.category or "other",
    )


async def _generate(services: ExternalServices, review: Review, outlet: Outlet, *, event: str) -> str | None:
    text = await services.call(
        services.generator.generate_reply(build_reply_request(review, outlet)),
        default=None,
        event=event,
        review_id=str(review.review_id),
    )
    if text is None or not text.strip():
        return None
    return text.strip()


async def _notify(services: ExternalServices, outlet: Outlet, template: str, parameters: list[str], **context) -> bool:
    if not template:
        return False
    if not outlet.contact_whatsapp:
        logger.warning("notify.no_contact", outlet_id=str(outlet.outlet_id), template=template, **context)
        return False
    return await services.call(
        services.notifier.send_template(outlet.contact_whatsapp, template, parameters),
        default=False,
        event="notify.send",
        outlet_id=str(outlet.outlet_id),
        template=template,
        **context,
    )


# ─── Auto-reply branch ─────────────────────────────────────────────────────


async def post_auto_reply(
    db: AsyncSession,
    review: Review,
    outlet: Outlet,
    services: ExternalServices,
    source: ReviewSource | None,
    *,
    now: datetime | None = None,
) -> str:
    """Publish the saved AI reply and close the review. Returns completed or post_failed."""
    now = now or datetime.utcnow()
    log = logger.bind(review_id=str(review.review_id), outlet_id=str(outlet.outlet_id))

    if source is None or not review.external_review_id or not review.ai_reply_text:
        log.warning("auto_reply.post_skipped", has_source=source is not None)
        return "post_failed"

    posted = await services.call(
        source.post_reply(review.external_review_id, review.ai_reply_text),
        default=False,
        event="auto_reply.post",
        review_id=str(review.review_id),
    )
    if not posted:
        log.warning("auto_reply.post_failed")
        return "post_failed"

    review.status = "closed"
    await apply_transition(db, review.review_id, WorkflowState.COMPLETED, reason="reply_posted", now=now)
    await db.commit()
    log.info("auto_reply.completed", rating=review.rating)

    await _notify(
        services,
        outlet,
        get_settings().whatsapp_template_auto_replied,
        [outlet.name, review.customer_name, str(review.rating)],
        review_id=str(review.review_id),
    )
    return "completed"


async def handle_auto_reply(
    db: AsyncSession,
    review: Review,
    outlet: Outlet,
    services: ExternalServices,
    source: ReviewSource | None,
    *,
    now: datetime | None = None,
) -> str:
    """
    Run the auto-reply branch for a PENDING review.

    Returns generation_failed, post_failed or completed.
    """
    now = now or datetime.utcnow()

    text = await _generate(services, review, outlet, event="auto_reply.generate")
    if text is None:
        logger.warning("auto_reply.generation_failed", review_id=str(review.review_id))
        return "generation_failed"

    review.ai_reply_text = text
    review.status = "auto_replied"
    await apply_transition(db, review.review_id, WorkflowState.AUTO_REPLIED, reason="reply_generated", now=now)
    await db.commit()

    return await post_auto_reply(db, review, outlet, services, source, now=now)


# ─── Manual branch ─────────────────────────────────────────────────────────


async def handle_manual_review(
    db: AsyncSession,
    review: Review,
    outlet: Outlet,
    services: ExternalServices,
    *,
    now: datetime | None = None,
) -> str:
    """Queue a PENDING low-rating review for a human and alert the outlet."""
    settings = get_settings()
    now = now or datetime.utcnow()

    item = await enqueue_review(db, review, now=now)
    review.status = "manual_pending"
    await apply_transition(
        db,
        review.review_id,
        WorkflowState.MANUAL_PENDING,
        reason="low_rating",
        now=now,
        reminder_count=0,
        last_reminder_at=None,
        next_reminder_at=item.next_reminder_at,
    )
    await db.commit()
    logger.info(
        "manual_queue.enqueued",
        review_id=str(review.review_id),
        outlet_id=str(outlet.outlet_id),
        rating=review.rating,
        next_reminder_at=item.next_reminder_at.isoformat(),
    )

    if settings.suggest_manual_replies:
        suggestion = await _generate(services, review, outlet, event="manual_queue.suggest")
        if suggestion:
            review.ai_reply_text = suggestion
            await db.commit()

    item.last_notification_ok = await _notify(
        services,
        outlet,
        settings.whatsapp_template_low_rating,
        [
            outlet.name,
            str(review.rating),
            review.customer_name,
            (review.review_text or "")[:ALERT_TEXT_PREVIEW_CHARS],
        ],
        review_id=str(review.review_id),
    )
    await db.commit()
    return "queued"


async def route_review(
    db: AsyncSession,
    review: Review,
    outlet: Outlet,
    services: ExternalServices,
    source: ReviewSource | None,
    *,
    now: datetime | None = None,
) -> str:
    branch = classify_rating(review.rating)
    if branch == ReplyBranch.AUTO:
        return await handle_auto_reply(db, review, outlet, services, source, now=now)
    return await handle_manual_review(db, review, outlet, services, now=now)
