"""Transport that only logs messages. Default for development."""
from __future__ import annotations

from matchflow.log import get_logger
from matchflow.templates import RenderedMessage
from matchflow.transports.base import DeliveryReceipt, DeliveryTransport

log = get_logger(__name__)


class LogTransport(DeliveryTransport):
    name = "log"

    def __init__(self) -> None:
        self.sent: list[tuple[str, RenderedMessage]] = []

    def send(self, to_addr: str, message: RenderedMessage, *, job_id: str) -> DeliveryReceipt:
        self.sent.append((to_addr, message))
        log.info("[dry-run] %s → %s: %s", job_id, to_addr, message.subject)
        return DeliveryReceipt(transport=self.name, external_id=f"log-{job_id}")
