"""Mail transport: one encrypted SMTP connection per message."""

from __future__ import annotations

import asyncio
import ssl
from email.message import EmailMessage
from email.utils import formataddr, parseaddr
from typing import List, Optional, Sequence, Tuple

import aiosmtplib

from .credentials import CredentialsStore
from .errors import TransportError, ValidationError
from .logger import get_logger

DEFAULT_TIMEOUT = 60.0


def parse_mailbox(value: str) -> Tuple[str, str]:
    """Split ``"Name" <user@domain>`` or ``user@domain`` into ``(name, address)``.

    Raises :class:`ValidationError` when no usable address is found.
    """
    name, address = parseaddr(value or "")
    local, sep, domain = address.rpartition("@")
    if not sep or not local or not domain or any(ch.isspace() for ch in address):
        raise ValidationError(f"bad address '{value}'")
    return name, address


def build_message(
    from_addr: str,
    to: Sequence[str],
    subject: str,
    body: str,
    html: Optional[str] = None,
) -> Tuple[EmailMessage, str, List[str]]:
    """Build the MIME message, envelope sender and recipient list.

    Plain text only when ``html`` is ``None``; otherwise a
    ``multipart/alternative`` with the plain and HTML bodies.
    """
    sender = parse_mailbox(from_addr)
    if not to:
        raise ValidationError("to list is empty")
    recipients = [parse_mailbox(addr) for addr in to]

    msg = EmailMessage()
    try:
        msg["From"] = formataddr(sender)
        msg["To"] = ", ".join(formataddr(rcpt) for rcpt in recipients)
        msg["Subject"] = subject or ""
    except ValueError as exc:
        raise ValidationError(f"bad header: {exc}") from exc
    msg.set_content(body or "")
    if html is not None:
        msg.add_alternative(html, subtype="html")
    return msg, sender[1], [rcpt[1] for rcpt in recipients]


def relaxed_tls_context() -> ssl.SSLContext:
    """TLS context accepting the relay certificate without verification."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class MailTransport:
    """Send messages through the configured outbound relay."""

    def __init__(
        self,
        host: str,
        port: int,
        credentials: CredentialsStore,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.credentials = credentials
        self.timeout = float(timeout)
        self.logger = logger or get_logger("TenantMailRelay.transport")

    async def send(
        self,
        from_addr: str,
        to: Sequence[str],
        subject: str,
        body: str,
        html: Optional[str] = None,
    ) -> None:
        """Deliver one message or raise :class:`TransportError`.

        Credentials are read at call time so updates apply to the next send.
        """
        msg, sender, recipients = build_message(from_addr, to, subject, body, html)
        creds = await self.credentials.get()

        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=False,
            start_tls=True,
            tls_context=relaxed_tls_context(),
            timeout=self.timeout,
        )
        try:
            await smtp.connect()
            try:
                if creds.configured:
                    await smtp.login(creds.user, creds.password)
                await smtp.send_message(msg, sender=sender, recipients=recipients)
            finally:
                await self._close(smtp)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"smtp send: {exc}") from exc
        self.logger.debug("Relayed message from %s to %d recipient(s)", sender, len(recipients))

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            smtp.close()
