"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "reviewflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.review_automation"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.review_automation.*": {"queue": "automation"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Ingestion + auto-reply + manual queue reminders
        "review-batch-15m": {
            "task": "workers.review_automation.run_review_batch",
            "schedule": crontab(minute=f"*/{settings.review_batch_interval_minutes}"),
            "kwargs": {"trigger": "scheduled"},
            "options": {"queue": "automation"},
        },
    },
)
