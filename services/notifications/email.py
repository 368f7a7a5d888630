from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Iterable, Optional, Sequence

from ._retry import execute_with_retries
from .types import NotificationError, NotificationResult

logger = logging.getLogger(__name__)

SendFunc = Callable[[EmailMessage], Any]


@dataclass(frozen=True)
class SmtpTarget:
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    timeout: float = 10.0


def build_message(from_address: str, to_addresses: Sequence[str], subject: str, body: str) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = from_address
    message["To"] = ", ".join(to_addresses)
    message.set_content(body)
    return message


async def send_email_message(
    *,
    smtp_server: str,
    smtp_port: int,
    from_address: str,
    to_addresses: Iterable[str],
    subject: str,
    body: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    use_tls: bool = True,
    max_retries: int = 2,
    backoff_seconds: float = 0.5,
    timeout: float = 10.0,
    send_func: Optional[SendFunc] = None,
) -> NotificationResult:
    """Send a plain-text email, retrying failed SMTP sessions.

    ``send_func`` receives the built message instead of an SMTP connection
    being opened.
    """

    recipients = [address for address in to_addresses if address]
    if not recipients:
        error = NotificationError(channel="email", reason="no recipients", retryable=False)
        return NotificationResult(channel="email", success=False, attempts=0, error=error)

    message = build_message(from_address, recipients, subject, body)
    target = SmtpTarget(smtp_server, smtp_port, username, password, use_tls, timeout)

    async def _dispatch() -> None:
        if send_func is None:
            await asyncio.to_thread(_deliver, target, message)
            return None
        result = send_func(message)
        if asyncio.iscoroutine(result):
            await result
        return None

    return await execute_with_retries("email", _dispatch, max_retries=max_retries, backoff_seconds=backoff_seconds)


def _deliver(target: SmtpTarget, message: EmailMessage) -> None:
    with smtplib.SMTP(target.host, target.port, timeout=target.timeout) as smtp:
        if target.use_tls:
            smtp.starttls()
        if target.username and target.password:
            smtp.login(target.username, target.password)
        smtp.send_message(message)
    logger.debug("Email delivered to %s", message["To"])
