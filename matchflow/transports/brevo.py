"""Brevo (Sendinblue) transactional email API."""
from __future__ import annotations

import requests

from matchflow.errors import DeliveryRejected, TransportError
from matchflow.log import get_logger
from matchflow.templates import RenderedMessage
from matchflow.transports.base import DeliveryReceipt, DeliveryTransport

log = get_logger(__name__)


class BrevoTransport(DeliveryTransport):
    name = "brevo"
    URL = "https://api.brevo.com/v3/smtp/email"

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        *,
        sender_name: str = "Job Portal",
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, to_addr: str, message: RenderedMessage, *, job_id: str) -> DeliveryReceipt:
        body = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to_addr}],
            "subject": message.subject,
            "htmlContent": message.html,
            "textContent": message.text,
            "headers": {"X-Mailin-custom": job_id},
        }
        try:
            r = self.session.post(
                self.URL,
                json=body,
                headers={"api-key": self.api_key, "accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"Brevo request failed: {exc}") from exc

        if r.status_code == 429 or r.status_code >= 500:
            raise TransportError(f"Brevo HTTP {r.status_code}: {r.text[:200]}", status_code=r.status_code)
        if r.status_code >= 400:
            raise DeliveryRejected(f"Brevo HTTP {r.status_code}: {r.text[:200]}", status_code=r.status_code)

        try:
            message_id = r.json().get("messageId")
        except ValueError:
            message_id = None
        log.info("Brevo accepted job %s for %s (%s)", job_id, to_addr, message_id)
        return DeliveryReceipt(transport=self.name, external_id=message_id)
