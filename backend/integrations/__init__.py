"""
External collaborator package.

Narrow clients the review workflow engine depends on:
  - Google Business Profile   (review source: list reviews, post reply)
  - OpenAI Responses API      (reply text generation)
  - WhatsApp Cloud API        (templated notifications)

Usage:
    from integrations import ExternalServices, build_review_source
    from integrations import OpenAIReplyGenerator, WhatsAppNotifier

    services = ExternalServices(
        source_factory=build_review_source,
        generator=OpenAIReplyGenerator(),
        notifier=WhatsAppNotifier(),
    )
"""

from integrations.base import (
    ExternalServices,
    Notifier,
    ReplyGenerator,
    ReplyRequest,
    ReviewSource,
    SourceReview,
    call_external,
)
from integrations.gmb import GoogleBusinessClient, build_review_source
from integrations.openai import OpenAIReplyGenerator
from integrations.whatsapp import WhatsAppNotifier

__all__ = [
    "ExternalServices",
    "Notifier",
    "ReplyGenerator",
    "ReplyRequest",
    "ReviewSource",
    "SourceReview",
    "call_external",
    "GoogleBusinessClient",
    "build_review_source",
    "OpenAIReplyGenerator",
    "WhatsAppNotifier",
]
