"""
Review Ingestion

One outlet pass:
  1. Fetch reviews from the platform since the outlet's watermark
  2. Close tracked reviews the owner already answered on the platform
  3. Resume reviews a previous batch left mid-flight
  4. For each new review: insert Review + PENDING workflow in one commit
     (idempotent on external_review_id), then route it by rating

Reviews that already carry an owner reply on the platform never enter the
workflow. When such a review is already tracked and still open, the platform
reply closes it.
"""

from __future__ import annotations

import uuid
from collections.abc import Collection
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Outlet, Review, ReviewWorkflow
from integrations.base import ExternalServices, ReviewSource, SourceReview
from workflow.classifier import MAX_RATING, MIN_RATING
from workflow.handlers import post_auto_reply, route_review
from workflow.reminders import mark_responded
from workflow.state_machine import WorkflowState, apply_transition, create_workflow, get_workflow

logger = structlog.get_logger()

RESUME_LIMIT = 50


def _valid_rating(rating: Any) -> bool:
    return isinstance(rating, int) and not isinstance(rating, bool) and MIN_RATING <= rating <= MAX_RATING


def _insert_for(db: AsyncSession):
    dialect = db.bind.dialect.name if db.bind is not None else ""
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    return None


async def insert_review(
    db: AsyncSession,
    outlet: Outlet,
    source_review: SourceReview,
    *,
    now: datetime,
) -> Review | None:
    """
    Insert a review and its PENDING workflow row. Flush only.

    Returns None when a review with the same external id already exists.
    """
    values = {
        "review_id": uuid.uuid4(),
        "outlet_id": outlet.outlet_id,
        "platform": "gmb",
        "external_review_id": source_review.external_id,
        "rating": source_review.rating,
        "customer_name": source_review.display_name or "Anonymous",
        "review_text": source_review.comment or "",
        "status": "pending",
        "source_created_at": source_review.created_at,
        "created_at": now,
        "updated_at": now,
    }

    dialect_insert = _insert_for(db)
    if dialect_insert is not None:
        result = await db.execute(
            dialect_insert(Review)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["external_review_id"])
            .returning(Review.review_id)
        )
        review_id = result.scalar_one_or_none()
        if review_id is None:
            return None
    else:
        try:
            async with db.begin_nested():
                await db.execute(insert(Review).values(**values))
        except IntegrityError:
            return None
        review_id = values["review_id"]

    review = await db.get(Review, review_id)
    await create_workflow(db, review_id, now=now)
    return review


async def get_review_by_external_id(db: AsyncSession, external_review_id: str) -> Review | None:
    result = await db.execute(select(Review).where(Review.external_review_id == external_review_id))
    return result.scalar_one_or_none()


async def reconcile_external_reply(
    db: AsyncSession,
    source_review: SourceReview,
    *,
    now: datetime,
) -> bool:
    """Close a tracked review that someone answered directly on the platform."""
    review = await get_review_by_external_id(db, source_review.external_id)
    if review is None:
        return False
    workflow = await get_workflow(db, review.review_id)
    if workflow is None:
        return False

    state = WorkflowState(workflow.current_state)
    if state == WorkflowState.COMPLETED:
        return False

    review.manual_reply_text = source_review.reply_text or review.manual_reply_text
    review.status = "closed"
    await mark_responded(db, review.review_id, now=now)
    await apply_transition(
        db,
        review.review_id,
        WorkflowState.COMPLETED,
        reason="replied_on_platform",
        now=now,
        next_reminder_at=None,
    )
    await db.commit()
    logger.info("ingest.reconciled_platform_reply", review_id=str(review.review_id), from_state=state.value)
    return True


async def resume_stalled_reviews(
    db: AsyncSession,
    outlet: Outlet,
    services: ExternalServices,
    source: ReviewSource | None,
    *,
    now: datetime,
    limit: int = RESUME_LIMIT,
    skip_external_ids: Collection[str] = (),
) -> int:
    """
    Pick up reviews an earlier batch left mid-flight for this outlet.

    PENDING reviews are routed again; AUTO_REPLIED reviews retry the post.
    Reviews in `skip_external_ids` (already answered on the platform) are
    left alone.
    """
    query = (
        select(Review.review_id, ReviewWorkflow.current_state)
        .join(ReviewWorkflow, ReviewWorkflow.review_id == Review.review_id)
        .where(
            Review.outlet_id == outlet.outlet_id,
            ReviewWorkflow.current_state.in_(
                [WorkflowState.PENDING.value, WorkflowState.AUTO_REPLIED.value]
            ),
        )
    )
    if skip_external_ids:
        query = query.where(Review.external_review_id.not_in(list(skip_external_ids)))
    result = await db.execute(query.order_by(Review.created_at).limit(limit))
    stalled = list(result.all())

    resumed = 0
    for review_id, state in stalled:
        try:
            review = await db.get(Review, review_id, populate_existing=True)
            if state == WorkflowState.PENDING.value:
                outcome = await route_review(db, review, outlet, services, source, now=now)
            else:
                outcome = await post_auto_reply(db, review, outlet, services, source, now=now)
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            await db.refresh(outlet)
            logger.error("ingest.resume_failed", review_id=str(review_id), error=str(exc), exc_info=True)
            continue
        if outcome in ("completed", "queued"):
            resumed += 1

    if stalled:
        logger.info("ingest.resumed", outlet_id=str(outlet.outlet_id), stalled=len(stalled), resumed=resumed)
    return resumed


async def ingest_outlet_reviews(
    db: AsyncSession,
    outlet: Outlet,
    services: ExternalServices,
    *,
    since: datetime | None,
    now: datetime | None = None,
) -> dict:
    """
    Run one ingestion pass for an outlet.

    The fetch comes first: platform replies close tracked reviews before any
    stalled review is routed again, so an owner's reply is never answered
    twice. Then stalled reviews resume, then new reviews are inserted and
    routed.

    Returns a summary dict; status is success, skipped (no credentials) or
    failed (the platform fetch failed). Only a successful pass should move
    the outlet's watermark.
    """
    now = now or datetime.utcnow()
    outlet_id = outlet.outlet_id
    log = logger.bind(outlet_id=str(outlet_id))

    source = services.source_for(outlet)
    if source is None:
        log.warning("ingest.missing_credentials")
        return {"outlet_id": str(outlet_id), "status": "skipped", "reason": "missing_credentials"}

    fetched = await services.call(
        source.list_reviews(since),
        default=None,
        event="ingest.fetch",
        outlet_id=str(outlet_id),
    )
    if fetched is None:
        return {"outlet_id": str(outlet_id), "status": "failed", "reason": "fetch_failed"}

    summary: dict[str, Any] = {
        "outlet_id": str(outlet_id),
        "status": "success",
        "fetched": len(fetched),
        "created": 0,
        "duplicates": 0,
        "already_replied": 0,
        "reconciled": 0,
        "invalid": 0,
        "failed": 0,
        "resumed": 0,
        "outcomes": {},
    }

    replied = [r for r in fetched if r.external_id and r.has_reply]
    for source_review in replied:
        try:
            if await reconcile_external_reply(db, source_review, now=now):
                summary["reconciled"] += 1
            else:
                log.info("ingest.already_replied", external_review_id=source_review.external_id)
                summary["already_replied"] += 1
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            await db.refresh(outlet)
            log.error(
                "ingest.review_failed",
                external_review_id=source_review.external_id,
                error=str(exc),
                exc_info=True,
            )
            summary["failed"] += 1

    summary["resumed"] = await resume_stalled_reviews(
        db,
        outlet,
        services,
        source,
        now=now,
        skip_external_ids={r.external_id for r in replied},
    )

    for source_review in fetched:
        if source_review.has_reply and source_review.external_id:
            continue
        try:
            if not source_review.external_id:
                summary["invalid"] += 1
                continue

            if not _valid_rating(source_review.rating):
                log.warning(
                    "ingest.invalid_rating",
                    external_review_id=source_review.external_id,
                    rating=source_review.rating,
                )
                summary["invalid"] += 1
                continue

            review = await insert_review(db, outlet, source_review, now=now)
            if review is None:
                log.info("ingest.duplicate_skipped", external_review_id=source_review.external_id)
                summary["duplicates"] += 1
                continue
            await db.commit()
            summary["created"] += 1
            log.info(
                "ingest.review_created",
                review_id=str(review.review_id),
                external_review_id=source_review.external_id,
                rating=source_review.rating,
            )

            outcome = await route_review(db, review, outlet, services, source, now=now)
            summary["outcomes"][outcome] = summary["outcomes"].get(outcome, 0) + 1
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            await db.refresh(outlet)
            log.error(
                "ingest.review_failed",
                external_review_id=source_review.external_id,
                error=str(exc),
                exc_info=True,
            )
            summary["failed"] += 1

    log.info(
        "ingest.completed",
        fetched=summary["fetched"],
        created=summary["created"],
        duplicates=summary["duplicates"],
        already_replied=summary["already_replied"],
        reconciled=summary["reconciled"],
        resumed=summary["resumed"],
        failed=summary["failed"],
    )
    return summary
