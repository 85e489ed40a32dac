"""
WhatsApp Notification Delivery

Sends pre-approved message templates through the WhatsApp Cloud API.
Templates must exist in WhatsApp Business Manager with matching body
parameter counts.
"""

import re

import httpx
import structlog

from core.config import get_settings
from integrations.base import Notifier

logger = structlog.get_logger()


def normalize_number(number: str) -> str:
    """Strip everything but digits ("+91 98765-43210" -> "919876543210")."""
    return re.sub(r"\D", "", number or "")


def build_template_payload(to: str, template_name: str, parameters: list[str], language: str) -> dict:
    template: dict = {"name": template_name, "language": {"code": language}}
    if parameters:
        template["components"] = [
            {
                "type": "body",
                "parameters": [{"type": "text", "text": str(value)} for value in parameters],
            }
        ]
    return {
        "messaging_product": "whatsapp",
        "to": normalize_number(to),
        "type": "template",
        "template": template,
    }


class WhatsAppNotifier(Notifier):
    def __init__(self):
        self.settings = get_settings()

    async def send_template(self, to: str, template_name: str, parameters: list[str]) -> bool:
        if not self.settings.whatsapp_access_token or not self.settings.whatsapp_phone_number_id:
            logger.warning("whatsapp.not_configured", template=template_name)
            return False
        if not normalize_number(to):
            logger.warning("whatsapp.invalid_destination", template=template_name)
            return False

        payload = build_template_payload(to, template_name, parameters, self.settings.whatsapp_template_language)
        try:
            async with httpx.AsyncClient(timeout=self.settings.external_call_timeout_seconds) as client:
                response = await client.post(
                    f"{self.settings.whatsapp_api_base_url}/{self.settings.whatsapp_phone_number_id}/messages",
                    headers={
                        "Authorization": f"Bearer {self.settings.whatsapp_access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("whatsapp.send_template.failed", template=template_name, error=str(exc))
            return False

        messages = response.json().get("messages") or [{}]
        logger.info("whatsapp.send_template.completed", template=template_name, message_id=messages[0].get("id"))
        return True
