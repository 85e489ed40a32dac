"""
Review Batch Cycle

One cycle:
  1. Open a review_batch_runs row
  2. Select eligible outlets (re-evaluated every cycle)
  3. Ingest each outlet in its own session; a failure in one outlet is
     logged and never stops the others
  4. Advance the watermark of every outlet whose pass succeeded
  5. Process due manual-queue reminders
  6. Close the run row with counts, status and watermark

Watermark resolution per outlet, first match wins:
  explicit `since` → outlet.last_review_sync_at → last successful run
  watermark → now - review_backfill_hours
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from db.models import Outlet, ReviewBatchRun
from integrations.base import ExternalServices
from workflow.eligibility import is_outlet_eligible, select_eligible_outlets
from workflow.ingestion import ingest_outlet_reviews
from workflow.reminders import process_due_reminders

logger = structlog.get_logger()


async def last_successful_watermark(db: AsyncSession) -> datetime | None:
    result = await db.execute(select(func.max(ReviewBatchRun.watermark)).where(ReviewBatchRun.status == "success"))
    return result.scalar_one_or_none()


def resolve_since(
    *,
    override: datetime | None,
    outlet_watermark: datetime | None,
    run_watermark: datetime | None,
    now: datetime,
    backfill_hours: int,
) -> datetime:
    if override is not None:
        return override
    if outlet_watermark is not None:
        return outlet_watermark
    if run_watermark is not None:
        return run_watermark
    return now - timedelta(hours=backfill_hours)


async def _process_outlet(
    session_factory: async_sessionmaker,
    outlet_id: uuid.UUID,
    services: ExternalServices,
    *,
    since: datetime | None,
    run_watermark: datetime | None,
    started_at: datetime,
) -> dict[str, Any]:
    settings = get_settings()
    async with session_factory() as db:
        outlet = await db.get(Outlet, outlet_id)
        if outlet is None or not is_outlet_eligible(outlet):
            return {"outlet_id": str(outlet_id), "status": "skipped", "reason": "ineligible"}

        outlet_since = resolve_since(
            override=since,
            outlet_watermark=outlet.last_review_sync_at,
            run_watermark=run_watermark,
            now=started_at,
            backfill_hours=settings.review_backfill_hours,
        )
        logger.info("batch.outlet_started", outlet_id=str(outlet_id), since=outlet_since.isoformat())

        try:
            summary = await ingest_outlet_reviews(db, outlet, services, since=outlet_since, now=started_at)
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            logger.error("batch.outlet_failed", outlet_id=str(outlet_id), error=str(exc), exc_info=True)
            return {"outlet_id": str(outlet_id), "status": "failed", "reason": str(exc)}

        if summary["status"] == "success":
            await db.refresh(outlet)
            if outlet.last_review_sync_at is None or outlet.last_review_sync_at < started_at:
                outlet.last_review_sync_at = started_at
            await db.commit()
        return summary


async def run_batch_cycle(
    session_factory: async_sessionmaker,
    services: ExternalServices,
    *,
    since: datetime | None = None,
    outlet_ids: list[uuid.UUID] | None = None,
    trigger: str = "scheduled",
    now: datetime | None = None,
    concurrency: int | None = None,
) -> dict[str, Any]:
    """
    Run one full ingestion + reminder cycle.

    `since` overrides every outlet's watermark (manual re-sync). `now` pins
    the clock for the whole cycle; by default ingestion uses the start time
    and reminders use the time they run.
    """
    settings = get_settings()
    started_at = now or datetime.utcnow()
    concurrency = max(1, concurrency or settings.review_batch_outlet_concurrency)

    async with session_factory() as db:
        run = ReviewBatchRun(trigger=trigger, status="running", started_at=started_at)
        db.add(run)
        await db.commit()
        run_id = run.run_id

        run_watermark = await last_successful_watermark(db)
        outlets = await select_eligible_outlets(db, outlet_ids)
        eligible_ids = [outlet.outlet_id for outlet in outlets]

    logger.info(
        "batch.started",
        run_id=str(run_id),
        trigger=trigger,
        outlets=len(eligible_ids),
        since_override=since.isoformat() if since else None,
    )

    semaphore = asyncio.Semaphore(concurrency)

    async def _guarded(outlet_id: uuid.UUID) -> dict[str, Any]:
        async with semaphore:
            try:
                return await _process_outlet(
                    session_factory,
                    outlet_id,
                    services,
                    since=since,
                    run_watermark=run_watermark,
                    started_at=started_at,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("batch.outlet_failed", outlet_id=str(outlet_id), error=str(exc), exc_info=True)
                return {"outlet_id": str(outlet_id), "status": "failed", "reason": str(exc)}

    outlet_results = await asyncio.gather(*(_guarded(outlet_id) for outlet_id in eligible_ids))

    reminder_summary: dict[str, int] = {}
    reminder_error: str | None = None
    async with session_factory() as db:
        try:
            reminder_summary = await process_due_reminders(db, services, now=now or datetime.utcnow())
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            reminder_error = str(exc)
            logger.error("batch.reminders_failed", run_id=str(run_id), error=reminder_error, exc_info=True)

    processed = sum(1 for result in outlet_results if result["status"] == "success")
    failed = sum(1 for result in outlet_results if result["status"] == "failed")
    skipped = sum(1 for result in outlet_results if result["status"] == "skipped")
    created = sum(result.get("created", 0) for result in outlet_results)

    if failed == 0 and reminder_error is None:
        status = "success"
    elif eligible_ids and failed == len(eligible_ids):
        status = "failed"
    else:
        status = "partial"

    completed_at = datetime.utcnow() if now is None else now
    async with session_factory() as db:
        run = await db.get(ReviewBatchRun, run_id)
        run.status = status
        run.completed_at = completed_at
        # Only a clean run may serve as the fallback watermark
        run.watermark = started_at if status == "success" else None
        run.outlets_processed = processed
        run.outlets_failed = failed
        run.reviews_created = created
        run.reminders_sent = reminder_summary.get("sent", 0)
        run.escalations = reminder_summary.get("escalated", 0)
        if failed or reminder_error:
            failures = [f"{r['outlet_id']}: {r.get('reason', 'unknown')}" for r in outlet_results if r["status"] == "failed"]
            if reminder_error:
                failures.append(f"reminders: {reminder_error}")
            run.error_message = "; ".join(failures)[:2000]
        await db.commit()

    summary = {
        "run_id": str(run_id),
        "status": status,
        "trigger": trigger,
        "outlets_eligible": len(eligible_ids),
        "outlets_processed": processed,
        "outlets_failed": failed,
        "outlets_skipped": skipped,
        "reviews_created": created,
        "reminders": reminder_summary,
        "started_at": started_at.isoformat(),
        "completed_at": completed_at.isoformat(),
    }
    logger.info(
        "batch.completed",
        run_id=summary["run_id"],
        status=status,
        outlets_processed=processed,
        outlets_failed=failed,
        reviews_created=created,
    )
    return summary
