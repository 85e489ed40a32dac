"""
Test Configuration: fixtures for async DB, seeded outlets/reviews, and
in-process fakes for the three external collaborators.

Each test gets its own SQLite file under tmp_path so code that opens
several sessions (the batch cycle does) sees one consistent database.
"""

import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from integrations.base import ExternalServices, Notifier, ReplyGenerator, ReviewFetchError, ReviewSource, SourceReview

TEST_NOW = datetime(2026, 3, 2, 12, 0, 0)


# ── Fakes ──────────────────────────────────────────────────────────────────


class FakeReviewSource(ReviewSource):
    def __init__(self, reviews: list[SourceReview] | None = None, *, post_ok: bool = True, fail_fetch: bool = False):
        self.reviews = list(reviews or [])
        self.post_ok = post_ok
        self.fail_fetch = fail_fetch
        self.fetch_calls: list[datetime | None] = []
        self.posted: list[tuple[str, str]] = []

    async def list_reviews(self, since=None):
        self.fetch_calls.append(since)
        if self.fail_fetch:
            raise ReviewFetchError("platform unavailable")
        return list(self.reviews)

    async def post_reply(self, external_review_id, reply_text):
        self.posted.append((external_review_id, reply_text))
        return self.post_ok


class FakeReplyGenerator(ReplyGenerator):
    def __init__(self, reply: str | None = "Thank you for taking the time to share this."):
        self.reply = reply
        self.requests = []

    async def generate_reply(self, request):
        self.requests.append(request)
        return self.reply


class FakeNotifier(Notifier):
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple[str, str, list[str]]] = []

    async def send_template(self, to, template_name, parameters):
        self.sent.append((to, template_name, list(parameters)))
        return self.ok

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]


# ── Database ───────────────────────────────────────────────────────────────


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reviewflow.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_outlet():
    """Factory: persist an outlet that passes the eligibility gate unless overridden."""
    from db.models import Outlet

    async def _make(db, **overrides) -> Outlet:
        values = {
            "name": "Harbor Cafe",
            "location": "Kochi",
            "category": "restaurant",
            "contact_name": "Anil",
            "contact_whatsapp": "+91 98765 43210",
            "google_location_name": "accounts/1/locations/1",
            "google_refresh_token_encrypted": "encrypted-token",
            "status": "active",
            "automation_enabled": True,
            "onboarding_status": "completed",
            "subscription_status": "active",
            "created_at": TEST_NOW,
        }
        values.update(overrides)
        outlet = Outlet(**values)
        db.add(outlet)
        await db.commit()
        return outlet

    return _make


@pytest.fixture
async def outlet(test_db, make_outlet):
    return await make_outlet(test_db)


@pytest.fixture
def make_review():
    """Factory: persist a review with its PENDING workflow row."""
    from db.models import Review
    from workflow.state_machine import create_workflow

    async def _make(db, outlet, *, rating: int = 2, external_id: str | None = None, **overrides) -> Review:
        values = {
            "outlet_id": outlet.outlet_id,
            "external_review_id": external_id or f"ext-{uuid.uuid4().hex[:12]}",
            "rating": rating,
            "customer_name": "Meera",
            "review_text": "Waited forty minutes for a cold coffee.",
            "status": "pending",
            "created_at": TEST_NOW,
        }
        values.update(overrides)
        review = Review(**values)
        db.add(review)
        await db.flush()
        await create_workflow(db, review.review_id, now=TEST_NOW)
        await db.commit()
        return review

    return _make


# ── External services ──────────────────────────────────────────────────────


@pytest.fixture
def make_source():
    """Factory for extra per-outlet fake review sources."""
    return FakeReviewSource


@pytest.fixture
def fakes():
    """
    Fake collaborators plus the ExternalServices bundle wired to them.

    `fakes.sources` maps outlet_id -> FakeReviewSource (or None for an outlet
    without credentials); outlets not in the map get `fakes.source`.
    """
    bundle = SimpleNamespace(
        source=FakeReviewSource(),
        sources={},
        generator=FakeReplyGenerator(),
        notifier=FakeNotifier(),
    )

    def _source_for(outlet):
        if outlet.outlet_id in bundle.sources:
            return bundle.sources[outlet.outlet_id]
        return bundle.source

    bundle.services = ExternalServices(
        source_factory=_source_for,
        generator=bundle.generator,
        notifier=bundle.notifier,
        timeout_seconds=5.0,
    )
    return bundle
