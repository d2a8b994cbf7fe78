from __future__ import annotations
import logging
from typing import Optional

import httpx

from .config import Settings
from .errors import ConfigError, DeliveryFailed
from .model.donation import DonationRecord
from .receipts import Branding, receipt_url, render_html

log = logging.getLogger(__name__)

RECEIPT_SUBJECT = "Donation Receipt - Life Gate Ministries"


class BrevoMailer:
    """Transactional email over the Brevo SMTP API."""

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self.http = http
        self.settings = settings

    async def send(self, to_email: str, to_name: Optional[str],
                   subject: str, html: str) -> str:
        try:
            api_key = self.settings.require("brevo_api_key")
            sender_email = self.settings.require("brevo_sender_email")
        except ConfigError as e:
            raise DeliveryFailed(str(e)) from e
        if not to_email:
            raise DeliveryFailed("Missing toEmail")

        payload = {
            "sender": {
                "email": sender_email,
                "name": self.settings.brevo_sender_name,
            },
            "to": [{"email": to_email, "name": to_name or to_email}],
            "subject": subject or RECEIPT_SUBJECT,
            "htmlContent": html or "<p>Thank you for your donation.</p>",
        }
        try:
            r = await self.http.post(
                self.settings.brevo_api_url,
                json=payload,
                headers={"accept": "application/json", "api-key": api_key},
            )
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"Brevo unreachable: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if r.is_error:
            raise DeliveryFailed(
                data.get("message") or f"Brevo email failed ({r.status_code})"
            )
        return str(data.get("messageId", ""))


class ReceiptDispatcher:
    """Best-effort receipt email; never raises into the webhook."""

    def __init__(self, mailer, settings: Settings) -> None:
        self.mailer = mailer
        self.settings = settings
        self.branding = Branding(settings.ministry_name,
                                 settings.campaign_title)

    def download_url(self, record: DonationRecord) -> str:
        if not record.receipt_token:
            raise DeliveryFailed(f"no receipt token for {record.reference}")
        try:
            base_url = self.settings.require("public_base_url")
        except ConfigError as e:
            raise DeliveryFailed(str(e)) from e
        return receipt_url(base_url, record.reference, record.receipt_token)

    async def send_receipt(self, record: DonationRecord) -> Optional[str]:
        if not record.donor_email:
            return None
        try:
            html = render_html(record, self.branding,
                               self.download_url(record))
            message_id = await self.mailer.send(
                record.donor_email, record.donor_name, RECEIPT_SUBJECT, html
            )
        except DeliveryFailed as e:
            log.error("receipt email failed for %s: %s", record.reference, e)
            return None
        log.info("receipt email sent for %s (%s)", record.reference,
                 message_id)
        return message_id
