from .base import DeliveryReceipt, DeliveryTransport
from .brevo import BrevoTransport
from .log import LogTransport
from .smtp import SmtpTransport

from matchflow.errors import ConfigError
from matchflow.log import get_logger

log = get_logger(__name__)

__all__ = [
    "DeliveryReceipt", "DeliveryTransport", "BrevoTransport", "LogTransport",
    "SmtpTransport", "get_transport",
]


def get_transport(settings: dict, env_getter) -> DeliveryTransport:
    cfg = settings["transport"]
    kind = str(cfg.get("kind", "log")).lower()
    sender_name = cfg.get("sender_name", "")
    timeout = float(cfg.get("timeout_seconds", 15.0))

    if kind == "brevo":
        api_key = env_getter("BREVO_API_KEY")
        sender = env_getter("BREVO_SENDER_EMAIL") or env_getter("FROM_EMAIL")
        if not api_key or not sender:
            raise ConfigError("Brevo transport needs BREVO_API_KEY and BREVO_SENDER_EMAIL in .env")
        log.info("Registered transport: Brevo")
        return BrevoTransport(api_key, sender, sender_name=sender_name, timeout=timeout)

    if kind == "smtp":
        transport = SmtpTransport.from_env(env_getter, sender_name=sender_name, timeout=timeout)
        if not all([transport.host, transport.user, transport.password]):
            raise ConfigError("SMTP transport needs SMTP_HOST, SMTP_USER, SMTP_PASSWORD in .env")
        log.info("Registered transport: SMTP (%s:%d)", transport.host, transport.port)
        return transport

    if kind != "log":
        raise ConfigError(f"unknown transport kind {kind!r}")
    log.info("Registered transport: log only (no email is sent)")
    return LogTransport()
