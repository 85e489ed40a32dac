import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from integrations.base import ExternalServices, SourceReview
from workers.review_automation import TASK_NAME, enqueue_startup_batch, run_review_batch


def _settings(**overrides):
    values = {
        "automation_enabled": True,
        "run_batch_on_startup": True,
        "database_url": "sqlite+aiosqlite:///:memory:",
        "external_call_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_task_skips_when_automation_disabled(monkeypatch):
    monkeypatch.setattr("core.config.get_settings", lambda: _settings(automation_enabled=False))

    result = run_review_batch.run(trigger="scheduled")

    assert result == {"status": "skipped", "reason": "automation_disabled"}


def test_task_runs_batch_against_configured_database(tmp_path, monkeypatch, fakes):
    from db.models import Outlet, Review

    db_path = tmp_path / "automation.db"
    db_url = f"sqlite+aiosqlite:///{db_path}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            db.add(
                Outlet(
                    outlet_id="00000000-0000-0000-0000-000000000201",
                    name="Seaside Hotel",
                    category="hotel",
                    contact_whatsapp="+15550100",
                    google_location_name="accounts/9/locations/9",
                    google_refresh_token_encrypted="token",
                    status="active",
                    automation_enabled=True,
                    onboarding_status="completed",
                    subscription_status="trial",
                )
            )
            await db.commit()

    asyncio.run(_seed())

    fakes.source.reviews = [
        SourceReview(
            external_id="g-task-1",
            rating=5,
            display_name="Omar",
            comment="Spotless rooms.",
            created_at=datetime.utcnow() - timedelta(hours=1),
        )
    ]
    monkeypatch.setattr("core.config.get_settings", lambda: _settings(database_url=db_url))
    monkeypatch.setattr("workers.review_automation.build_external_services", lambda settings: fakes.services)

    result = run_review_batch.run(trigger="manual", since=(datetime.utcnow() - timedelta(days=2)).isoformat())

    assert result["status"] == "success"
    assert result["trigger"] == "manual"
    assert result["outlets_processed"] == 1
    assert result["reviews_created"] == 1
    assert result["task_run_id"] == "manual"
    assert fakes.source.posted == [("g-task-1", fakes.generator.reply)]

    async def _reviews():
        async with session_factory() as db:
            rows = (await db.execute(select(Review))).scalars().all()
        await engine.dispose()
        return rows

    reviews = asyncio.run(_reviews())
    assert [review.status for review in reviews] == ["closed"]


def test_worker_ready_enqueues_startup_batch(monkeypatch):
    monkeypatch.setattr("core.config.get_settings", lambda: _settings())
    sent: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict, **options):
        sent.append((task_name, kwargs))

    monkeypatch.setattr("workers.review_automation.celery_app.send_task", _capture_send_task)

    assert enqueue_startup_batch(sender=None) == TASK_NAME
    assert sent == [(TASK_NAME, {"trigger": "startup"})]


def test_worker_ready_respects_startup_flag(monkeypatch):
    monkeypatch.setattr("core.config.get_settings", lambda: _settings(run_batch_on_startup=False))
    sent = []
    monkeypatch.setattr(
        "workers.review_automation.celery_app.send_task",
        lambda task_name, kwargs, **options: sent.append(task_name),
    )

    assert enqueue_startup_batch(sender=None) is None
    assert sent == []


def test_build_external_services_uses_configured_timeout():
    from workers.review_automation import build_external_services

    services = build_external_services(_settings(external_call_timeout_seconds=12.5))

    assert isinstance(services, ExternalServices)
    assert services.timeout_seconds == 12.5
