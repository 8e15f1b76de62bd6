"""SMTP delivery for notification emails."""

import logging
import smtplib
from collections.abc import Iterable
from email.message import EmailMessage
from email.utils import make_msgid

from kincare.config import settings

logger = logging.getLogger("kincare.email")


def smtp_configured() -> bool:
    return bool(settings.smtp_enabled and settings.smtp_host and settings.smtp_from)


def build_message(recipients: list[str], subject: str, body: str) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = settings.smtp_from
    message["To"] = ", ".join(recipients)
    message["Message-ID"] = make_msgid(domain=settings.smtp_from.rpartition("@")[2] or None)
    message.set_content(body)
    return message


def send_email(to_addresses: Iterable[str], subject: str, body: str) -> bool:
    """Send a plain-text email. Returns False whenever nothing was sent."""
    recipients = sorted(
        {address.strip().lower() for address in to_addresses if address and address.strip()}
    )
    if not recipients:
        logger.warning("No recipients for '%s'; not sent", subject)
        return False
    if not settings.smtp_enabled:
        logger.info("SMTP disabled; '%s' not sent", subject)
        return False
    if not smtp_configured():
        logger.warning("SMTP enabled without SMTP_HOST/SMTP_FROM; '%s' not sent", subject)
        return False

    message = build_message(recipients, subject, body)
    try:
        with smtplib.SMTP(
            settings.smtp_host,
            settings.smtp_port,
            timeout=settings.smtp_timeout_seconds,
        ) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(message)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send '%s' to %d recipient(s)", subject, len(recipients))
        return False
    logger.info("Sent '%s' to %d recipient(s)", subject, len(recipients))
    return True
