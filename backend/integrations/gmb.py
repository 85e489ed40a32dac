"""
Google Business Profile Review Client

Fetches reviews for one outlet location and posts replies.
Uses the outlet's OAuth refresh token stored encrypted on the outlets table.
"""

from datetime import datetime, timezone

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.security import decrypt
from integrations.base import ReviewFetchError, ReviewSource, SourceReview

logger = structlog.get_logger()

STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}

_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
    reraise=True,
)


def rating_to_number(star_rating: str | None) -> int:
    """Convert the platform's star-rating enum to 1-5 (0 when unknown)."""
    return STAR_RATINGS.get((star_rating or "").upper(), 0)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into naive UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def map_review(raw: dict) -> SourceReview:
    """Map a platform review payload to a SourceReview."""
    reviewer = raw.get("reviewer") or {}
    reply = raw.get("reviewReply") or {}
    external_id = raw.get("reviewId") or (raw.get("name") or "").split("/")[-1]
    return SourceReview(
        external_id=external_id,
        rating=rating_to_number(raw.get("starRating")),
        display_name=reviewer.get("displayName") or "Anonymous",
        comment=raw.get("comment") or "",
        has_reply=bool(reply.get("comment")),
        reply_text=reply.get("comment"),
        created_at=parse_timestamp(raw.get("createTime")),
        updated_at=parse_timestamp(raw.get("updateTime")),
    )


def _touched_at(review: SourceReview) -> datetime | None:
    return review.updated_at or review.created_at


def _reaches_back(page: list[SourceReview], since: datetime | None) -> bool:
    """True once a newest-first page holds a review at or before `since`."""
    if since is None:
        return False
    stamps = [_touched_at(r) for r in page]
    return any(stamp is not None and stamp <= since for stamp in stamps)


class GoogleBusinessClient(ReviewSource):
    """Review platform client bound to one outlet location."""

    def __init__(self, location_name: str, refresh_token_encrypted: str):
        self.settings = get_settings()
        self.location_name = location_name
        self.refresh_token = decrypt(refresh_token_encrypted)
        self.logger = logger.bind(location_name=location_name)

    @_transient
    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            self.settings.google_token_url,
            data={
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        response.raise_for_status()
        return response.json()["access_token"]

    @_transient
    async def _get_page(self, client: httpx.AsyncClient, token: str, page_token: str | None) -> dict:
        params = {"pageSize": self.settings.gmb_page_size, "orderBy": "updateTime desc"}
        if page_token:
            params["pageToken"] = page_token
        response = await client.get(
            f"{self.settings.gmb_api_base_url}/{self.location_name}/reviews",
            headers={"Authorization": f"Bearer {token}"},
            params=params,
        )
        response.raise_for_status()
        return response.json()

    async def list_reviews(self, since: datetime | None = None) -> list[SourceReview]:
        """
        Fetch reviews page by page, newest update first.

        Paging stops once a page reaches back past `since`. A page error, or
        hitting `gmb_max_pages` before the window is covered, raises
        ReviewFetchError so the caller keeps its watermark and re-scans.
        """
        reviews: list[SourceReview] = []
        async with httpx.AsyncClient(timeout=self.settings.external_call_timeout_seconds) as client:
            token = await self._access_token(client)
            page_token: str | None = None
            pages = 0
            while True:
                try:
                    payload = await self._get_page(client, token, page_token)
                except httpx.HTTPError as exc:
                    self.logger.error("gmb.list_reviews.page_failed", page=pages + 1, error=str(exc))
                    raise ReviewFetchError(f"page {pages + 1} failed: {exc}") from exc
                page = [map_review(raw) for raw in payload.get("reviews", [])]
                reviews.extend(page)
                pages += 1
                page_token = payload.get("nextPageToken")
                if not page_token or _reaches_back(page, since):
                    break
                if pages >= self.settings.gmb_max_pages:
                    self.logger.error("gmb.list_reviews.page_limit", pages=pages)
                    raise ReviewFetchError(f"window not covered after {pages} pages")

        fetched = len(reviews)
        if since is not None:
            reviews = [r for r in reviews if (_touched_at(r) or since) > since]

        self.logger.info("gmb.list_reviews.completed", pages=pages, fetched=fetched, kept=len(reviews))
        return reviews

    async def post_reply(self, external_review_id: str, reply_text: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.settings.external_call_timeout_seconds) as client:
                token = await self._access_token(client)
                response = await client.put(
                    f"{self.settings.gmb_api_base_url}/{self.location_name}/reviews/{external_review_id}/reply",
                    headers={"Authorization": f"Bearer {token}"},
                    json={"comment": reply_text},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self.logger.error("gmb.post_reply.failed", external_review_id=external_review_id, error=str(exc))
            return False

        self.logger.info("gmb.post_reply.completed", external_review_id=external_review_id)
        return True


def build_review_source(outlet) -> GoogleBusinessClient | None:
    """Source factory for the batch loop: None when the outlet lacks credentials."""
    if not outlet.google_location_name or not outlet.google_refresh_token_encrypted:
        return None
    return GoogleBusinessClient(outlet.google_location_name, outlet.google_refresh_token_encrypted)
