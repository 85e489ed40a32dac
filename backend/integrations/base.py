"""
External Collaborator Contracts: Abstract Base Classes

The workflow engine talks to three outside systems, each through a narrow
contract so the rest of the engine is provider-agnostic:

  - ReviewSource    list reviews since a timestamp, post a reply
  - ReplyGenerator  turn a review into reply text
  - Notifier        send a templated notification to an address

Concrete clients: integrations.gmb, integrations.openai, integrations.whatsapp.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


# ── Data containers ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SourceReview:
    """A review as returned by the review platform."""

    external_id: str
    rating: int
    display_name: str = "Anonymous"
    comment: str = ""
    has_reply: bool = False
    reply_text: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ReplyRequest:
    """Everything the reply generator is given about a review."""

    rating: int
    customer_name: str
    review_text: str
    outlet_name: str
    outlet_location: str = ""
    outlet_category: str = "other"


class ReviewFetchError(RuntimeError):
    """The platform scan did not cover the requested window."""


# ── Abstract collaborators ────────────────────────────────────────────────


class ReviewSource(ABC):
    """Review platform client, bound to one outlet's location and credentials."""

    @abstractmethod
    async def list_reviews(self, since: datetime | None = None) -> list[SourceReview]:
        """
        Return reviews created or updated after `since` (all when None).

        Raises ReviewFetchError when the window could not be read in full.
        """
        ...

    @abstractmethod
    async def post_reply(self, external_review_id: str, reply_text: str) -> bool:
        """Publish a reply. True on success."""
        ...


class ReplyGenerator(ABC):
    @abstractmethod
    async def generate_reply(self, request: ReplyRequest) -> str | None:
        """Return reply text, or None when generation failed."""
        ...


class Notifier(ABC):
    @abstractmethod
    async def send_template(self, to: str, template_name: str, parameters: list[str]) -> bool:
        """Send a templated notification. True on success."""
        ...


# ── Service bundle ────────────────────────────────────────────────────────


@dataclass
class ExternalServices:
    """
    The collaborators one batch cycle works with.

    `source_factory` builds a ReviewSource for an outlet, or returns None when
    the outlet has no usable platform credentials.
    """

    source_factory: Callable[[Any], ReviewSource | None]
    generator: ReplyGenerator
    notifier: Notifier
    timeout_seconds: float = 30.0

    def source_for(self, outlet) -> ReviewSource | None:
        return self.source_factory(outlet)

    async def call(self, awaitable: Awaitable[T], *, default: T, event: str, **context) -> T:
        return await call_external(awaitable, timeout=self.timeout_seconds, default=default, event=event, **context)


async def call_external(awaitable: Awaitable[T], *, timeout: float, default: T, event: str, **context) -> T:
    """
    Await an external call with a time bound.

    Timeouts and exceptions are logged under `event` and turned into `default`
    so one slow or broken collaborator cannot stall or abort a batch.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{event}.timeout", timeout_seconds=timeout, **context)
    except Exception as exc:  # noqa: BLE001
        logger.error(f"{event}.failed", error=str(exc), **context)
    return default
