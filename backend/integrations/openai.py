"""
OpenAI Reply Generator

Generates short, professional public replies to reviews through the
OpenAI Responses API.
"""

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from integrations.base import ReplyGenerator, ReplyRequest

logger = structlog.get_logger()

SYSTEM_PROMPT = """
You write professional replies to Google reviews for a business.
STRICT RULES:
- Must be under {word_limit} words.
- Must include the customer's name.
- Tone: professional, warm, human.
- For 4-5 stars: thank them and invite them back.
- For 1-3 stars: apologize, acknowledge the concern, offer help, suggest contacting the store.
- No emojis.
- Do not mention AI or language models.
- Do not include phone numbers.
""".strip()


def enforce_word_limit(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return " ".join(words)
    return " ".join(words[:limit]).rstrip(",;:") + "..."


def canned_thank_you(customer_name: str, rating: int) -> str:
    """Reply for a 4-5 star review that has no text."""
    return (
        f"Thank you so much, {customer_name}, for the {rating}-star review! "
        "We truly appreciate your support and look forward to serving you again."
    )


def build_user_prompt(request: ReplyRequest, customer_name: str, body: str) -> str:
    return "\n".join(
        [
            f"Rating: {request.rating}",
            f"Customer: {customer_name}",
            f"Review Message: {body or '(no message)'}",
            f"Business Name: {request.outlet_name}",
            f"Store Location: {request.outlet_location}",
            f"Business Category: {request.outlet_category}",
            "",
            "Write a single reply only.",
        ]
    )


def extract_output_text(payload: dict) -> str:
    """Pull the reply text out of a Responses API payload."""
    if payload.get("output_text"):
        return str(payload["output_text"]).strip()
    chunks = []
    for item in payload.get("output", []):
        for content in item.get("content", []) or []:
            if content.get("type") == "output_text":
                chunks.append(content.get("text", ""))
    return "".join(chunks).strip()


class OpenAIReplyGenerator(ReplyGenerator):
    def __init__(self):
        self.settings = get_settings()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _create_response(self, system: str, user: str) -> dict:
        async with httpx.AsyncClient(timeout=self.settings.external_call_timeout_seconds) as client:
            response = await client.post(
                self.settings.openai_api_url,
                headers={
                    "Authorization": f"Bearer {self.settings.openai_api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.settings.openai_model,
                    "input": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    "max_output_tokens": self.settings.openai_max_output_tokens,
                },
            )
            response.raise_for_status()
            return response.json()

    async def generate_reply(self, request: ReplyRequest) -> str | None:
        limit = self.settings.reply_word_limit
        body = (request.review_text or "").strip()
        customer = (request.customer_name or "").strip() or "Customer"

        if request.rating >= 4 and not body:
            return enforce_word_limit(canned_thank_you(customer, request.rating), limit)

        if not self.settings.openai_api_key:
            logger.warning("openai.not_configured")
            return None

        try:
            payload = await self._create_response(
                SYSTEM_PROMPT.format(word_limit=limit),
                build_user_prompt(request, customer, body),
            )
        except httpx.HTTPError as exc:
            logger.error("openai.generate_reply.failed", rating=request.rating, error=str(exc))
            return None

        raw = extract_output_text(payload)
        if not raw:
            logger.warning("openai.generate_reply.empty", rating=request.rating)
            return None

        reply = enforce_word_limit(raw, limit)
        logger.info(
            "openai.generate_reply.completed",
            rating=request.rating,
            outlet_name=request.outlet_name,
            words=len(reply.split()),
        )
        return reply
