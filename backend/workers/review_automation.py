"""
Review automation worker.

Beat fires `run_review_batch` every 15 minutes on the automation queue;
a worker_ready hook fires one extra batch when a worker boots.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog
from celery.signals import worker_ready
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

TASK_NAME = "workers.review_automation.run_review_batch"


def build_external_services(settings):
    from integrations import ExternalServices, OpenAIReplyGenerator, WhatsAppNotifier, build_review_source

    return ExternalServices(
        source_factory=build_review_source,
        generator=OpenAIReplyGenerator(),
        notifier=WhatsAppNotifier(),
        timeout_seconds=settings.external_call_timeout_seconds,
    )


@celery_app.task(
    name=TASK_NAME,
    bind=True,
    max_retries=0,
    acks_late=True,
)
def run_review_batch(
    self,
    trigger: str = "scheduled",
    since: str | None = None,
    outlet_ids: list[str] | None = None,
):
    """
    Run one review batch cycle: ingest eligible outlets, then process reminders.

    Args:
        trigger: scheduled, startup or manual
        since: ISO timestamp overriding every outlet's watermark
        outlet_ids: limit the cycle to these outlets
    """
    import uuid

    from core.config import get_settings
    from workflow.batch import run_batch_cycle

    settings = get_settings()
    run_id = self.request.id or "manual"
    if not settings.automation_enabled:
        logger.info("automation.skipped", reason="automation_disabled", run_id=run_id)
        return {"status": "skipped", "reason": "automation_disabled"}

    since_dt = datetime.fromisoformat(since) if since else None
    selected = [uuid.UUID(outlet_id) for outlet_id in outlet_ids] if outlet_ids else None

    async def _run():
        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            return await run_batch_cycle(
                session_factory,
                build_external_services(settings),
                since=since_dt,
                outlet_ids=selected,
                trigger=trigger,
            )
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001
        logger.error("automation.batch_failed", run_id=run_id, trigger=trigger, error=str(exc), exc_info=True)
        raise

    summary["task_run_id"] = run_id
    return summary


@worker_ready.connect
def enqueue_startup_batch(sender=None, **kwargs):
    from core.config import get_settings

    settings = get_settings()
    if not (settings.automation_enabled and settings.run_batch_on_startup):
        return None
    celery_app.send_task(TASK_NAME, kwargs={"trigger": "startup"}, queue="automation")
    logger.info("automation.startup_batch_enqueued")
    return TASK_NAME
