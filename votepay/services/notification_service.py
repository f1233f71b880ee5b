"""
Outbound payment notifications by email and WhatsApp.

Sends are fire-and-forget: they run as background tasks after the webhook has
been acknowledged, failures are logged and counted, and nothing is retried
beyond the provider's own HTTP response.
"""

import os
import html
import re
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from votepay.core.config import NotificationConfig
from votepay.core.monitoring import error_monitor
from votepay.tracker import TransactionRecord

logger = logging.getLogger(__name__)

WHATSAPP_GRAPH_URL = "https://graph.facebook.com"
SEND_TIMEOUT_SECONDS = 10.0


@dataclass
class EmailTemplate:
    subject: str
    html: str
    text: str


def to_e164(phone: str, country_code: str = "233") -> str:
    """Convert a local `0XXXXXXXXX` number to `+233XXXXXXXXX`."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith(country_code):
        return f"+{digits}"
    if digits.startswith("0"):
        digits = digits[1:]
    return f"+{country_code}{digits}"


def render_payment_receipt(record: TransactionRecord, election_name: Optional[str] = None) -> EmailTemplate:
    amount = f"GHS {record.amount_local:.2f}" if record.amount_local is not None else "your payment"
    greeting = f"Hello {record.customer_name}," if record.customer_name else "Hello,"
    safe_greeting = html.escape(greeting)
    safe_election = html.escape(election_name) if election_name else None
    subject = f"Payment received - {election_name}" if election_name else "Payment received"
    reference = record.provider_transaction_id or record.transaction_id

    text = (
        f"{greeting}\n\n"
        f"We have received {amount}"
        f"{f' for {election_name}' if election_name else ''}.\n\n"
        f"Transaction reference: {reference}\n\n"
        "Thank you for using Prelyct Votes."
    )
    body_html = (
        f"<p>{safe_greeting}</p>"
        f"<p>We have received <strong>{amount}</strong>"
        f"{f' for <strong>{safe_election}</strong>' if safe_election else ''}.</p>"
        f"<p>Transaction reference: <code>{html.escape(reference)}</code></p>"
        "<p>Thank you for using Prelyct Votes.</p>"
    )
    return EmailTemplate(subject=subject, html=body_html, text=text)


class NotificationService:
    """Email and WhatsApp senders"""

    def __init__(self, config: NotificationConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    @classmethod
    def from_env(cls) -> "NotificationService":
        return cls(NotificationConfig(
            email_api_url=os.getenv("EMAIL_API_URL"),
            email_api_key=os.getenv("EMAIL_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", "notifications@prelyct.com"),
            whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN"),
            whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", "v18.0"),
        ))

    @property
    def email_enabled(self) -> bool:
        return bool(self.config.email_api_url and self.config.email_api_key)

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.config.whatsapp_phone_number_id and self.config.whatsapp_access_token)

    async def send_email(self, to: str, template: EmailTemplate) -> bool:
        if not self.email_enabled:
            logger.debug("Email channel not configured; skipping")
            return False

        payload = {
            "from": self.config.email_from,
            "to": to,
            "subject": template.subject,
            "html": template.html,
            "text": template.text,
        }
        return await self._post(
            self.config.email_api_url,
            payload,
            self.config.email_api_key,
            channel="email",
        )

    async def send_whatsapp_text(self, phone: str, body: str) -> bool:
        if not self.whatsapp_enabled:
            logger.debug("WhatsApp channel not configured; skipping")
            return False

        url = (
            f"{WHATSAPP_GRAPH_URL}/{self.config.whatsapp_api_version}"
            f"/{self.config.whatsapp_phone_number_id}/messages"
        )
        payload = {
            "messaging_product": "whatsapp",
            "to": to_e164(phone),
            "type": "text",
            "text": {"body": body},
        }
        return await self._post(url, payload, self.config.whatsapp_access_token, channel="whatsapp")

    async def notify_payment_completed(self, record: TransactionRecord, election_name: Optional[str] = None) -> None:
        """Send the payment receipt on every configured channel the record has an address for."""
        template = render_payment_receipt(record, election_name)

        if record.customer_email:
            await self.send_email(record.customer_email, template)
        if record.phone_number:
            await self.send_whatsapp_text(record.phone_number, template.text)

    async def _post(self, url: str, payload: dict, token: str, channel: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=SEND_TIMEOUT_SECONDS, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            error_monitor.log_error(e, {"context": f"notification_{channel}"})
            return False

        if response.is_error:
            logger.warning(f"{channel} provider rejected notification: {response.status_code}")
            return False

        logger.info(f"{channel} notification sent")
        return True


_service: Optional[NotificationService] = None


def init_notification_service(config: NotificationConfig) -> NotificationService:
    global _service
    _service = NotificationService(config)
    return _service


def get_notification_service() -> NotificationService:
    global _service
    if _service is None:
        _service = NotificationService.from_env()
    return _service
