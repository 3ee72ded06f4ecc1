from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from matchflow.templates import RenderedMessage


@dataclass(frozen=True)
class DeliveryReceipt:
    transport: str
    external_id: str | None = None


class DeliveryTransport(ABC):
    name: str = "base"

    @abstractmethod
    def send(self, to_addr: str, message: RenderedMessage, *, job_id: str) -> DeliveryReceipt:
        """Deliver one message.

        Raises TransportError for failures worth retrying and DeliveryRejected
        when the provider refuses the message outright.
        """

    def healthy(self) -> bool:
        return True
