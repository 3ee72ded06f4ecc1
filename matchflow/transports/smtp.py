"""SMTP delivery (STARTTLS + login)."""
from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from matchflow.errors import DeliveryRejected, TransportError
from matchflow.log import get_logger
from matchflow.templates import RenderedMessage
from matchflow.transports.base import DeliveryReceipt, DeliveryTransport

log = get_logger(__name__)


class SmtpTransport(DeliveryTransport):
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        from_addr: str,
        *,
        sender_name: str = "",
        timeout: float = 15.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or user
        self.sender_name = sender_name
        self.timeout = timeout

    @classmethod
    def from_env(cls, env_getter, *, sender_name: str = "", timeout: float = 15.0) -> "SmtpTransport":
        try:
            port = int(env_getter("SMTP_PORT") or 587)
        except ValueError:
            port = 587
        user = env_getter("SMTP_USER")
        return cls(
            env_getter("SMTP_HOST"),
            port,
            user,
            env_getter("SMTP_PASSWORD"),
            env_getter("FROM_EMAIL") or user,
            sender_name=sender_name,
            timeout=timeout,
        )

    def _build(self, to_addr: str, message: RenderedMessage, job_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.sender_name} <{self.from_addr}>" if self.sender_name else self.from_addr
        msg["To"] = to_addr
        msg["Message-ID"] = make_msgid(idstring=job_id)
        msg.attach(MIMEText(message.text, "plain", "utf-8"))
        msg.attach(MIMEText(message.html, "html", "utf-8"))
        return msg

    def send(self, to_addr: str, message: RenderedMessage, *, job_id: str) -> DeliveryReceipt:
        msg = self._build(to_addr, message, job_id)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.from_addr, [to_addr], msg.as_string())
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPAuthenticationError) as exc:
            raise DeliveryRejected(f"SMTP refused {to_addr}: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"SMTP send failed: {exc}") from exc
        log.info("Email sent to %s (job %s)", to_addr, job_id)
        return DeliveryReceipt(transport=self.name, external_id=msg["Message-ID"])
