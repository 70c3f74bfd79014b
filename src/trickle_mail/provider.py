# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email provider boundary: message building, sending and error classification.

The delivery worker sends one message per call through an ``EmailProvider``.
Two providers ship with the service:

- ``SMTPProvider`` sends through an SMTP relay (for example the provider's
  SMTP interface) using aiosmtplib. Each send opens its own connection, as
  triggers fire as independent invocations.
- ``DryRunProvider`` logs messages without sending them (development and
  test mode).

Provider failures are normalized to ``ProviderError`` and classified by
``is_retryable_error`` against a fixed allow-list: status codes 429, 503 and
504, throttling/unavailability/timeout signatures and network timeouts are
retryable; everything else is not. Message text is only inspected for
errors that carry no code at all.
"""

from __future__ import annotations

import asyncio
import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

import aiosmtplib

from .errors import ProviderError
from .logger import get_logger

RETRYABLE_STATUS_CODES = frozenset({429, 503, 504})
RETRYABLE_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "RequestTimeout",
        "LimitExceeded",
    }
)
SMTP_TRANSIENT_REPLIES = {
    421: ("ServiceUnavailable", 503),
    451: ("Throttling", 429),
    454: ("ServiceUnavailable", 503),
}
RETRYABLE_PATTERNS = (
    "throttl",
    "rate exceeded",
    "too many requests",
    "maximum sending rate exceeded",
    "service unavailable",
    "temporarily unavailable",
    "timeout",
    "timed out",
)

EMAIL_RE = re.compile(r"^[^@\s<>;,]+@[^@\s<>;,]+\.[^@\s<>;,]+$")

logger = get_logger("Provider")


def is_valid_address(address: str) -> bool:
    """Return True if ``address`` is a plausible single email address."""
    return bool(address) and len(address) <= 320 and EMAIL_RE.match(address) is not None


def is_retryable_error(exc: BaseException) -> bool:
    """Classify a send error as retryable (True) or not (False)."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, ProviderError):
        if exc.status_code in RETRYABLE_STATUS_CODES:
            return True
        if exc.provider_code in RETRYABLE_CODES:
            return True
        if exc.provider_code or exc.status_code or exc.smtp_code:
            return False
    message = str(exc).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


def error_kind(exc: BaseException) -> str:
    """Short label of an error for ``lastError.kind`` and metrics."""
    if isinstance(exc, ProviderError) and exc.provider_code:
        return exc.provider_code
    return type(exc).__name__


@dataclass
class Attachment:
    filename: str
    content: bytes


@dataclass
class SendQuota:
    """Sending limits known to a provider.

    ``sent_last_24_hours`` is None when the provider does not track it.
    """

    max_send_rate: float
    max_24_hour_send: int | None = None
    sent_last_24_hours: int | None = None


@dataclass
class OutgoingEmail:
    """A single-recipient message ready to be sent."""

    sender: str
    recipient: str
    subject: str
    content: str
    headers: dict[str, str] = field(default_factory=dict)
    attachments: list[Attachment] = field(default_factory=list)


def build_message(email: OutgoingEmail) -> EmailMessage:
    """Build the MIME message for one recipient.

    Content starting with ``<`` is sent as HTML, anything else as plain text.
    """
    msg = EmailMessage()
    msg["From"] = email.sender
    msg["To"] = email.recipient
    msg["Subject"] = email.subject
    msg["Message-ID"] = make_msgid(domain=email.sender.rsplit("@", 1)[-1])
    for name, value in email.headers.items():
        if name.lower() in {"from", "to", "subject", "message-id"}:
            continue
        msg[name] = value
    if email.content.lstrip().startswith("<"):
        msg.set_content(email.content, subtype="html")
    else:
        msg.set_content(email.content)
    for attachment in email.attachments:
        mime, _ = mimetypes.guess_type(attachment.filename)
        maintype, subtype = (mime or "application/octet-stream").split("/", 1)
        msg.add_attachment(attachment.content, maintype=maintype, subtype=subtype, filename=attachment.filename)
    return msg


class EmailProvider(Protocol):
    max_send_rate: float

    async def send(self, email: OutgoingEmail) -> str: ...

    async def verified_identities(self) -> list[str] | None: ...

    async def quota(self) -> SendQuota | None: ...


def _smtp_reply_error(message: str, code: int | None, permanent_kind: str) -> ProviderError:
    if code in SMTP_TRANSIENT_REPLIES:
        kind, status = SMTP_TRANSIENT_REPLIES[code]
        return ProviderError(message, kind, status, smtp_code=code)
    if isinstance(code, int) and 400 <= code < 500:
        return ProviderError(message, "TransientFailure", smtp_code=code)
    return ProviderError(message, permanent_kind, smtp_code=code)


def _to_provider_error(exc: aiosmtplib.SMTPException) -> ProviderError:
    """Map aiosmtplib exceptions onto provider error codes.

    The SMTP reply code is kept on ``smtp_code``. Only the transient replies
    of ``SMTP_TRANSIENT_REPLIES`` get a retryable code; other 4xx replies are
    reported as ``TransientFailure`` and are not retried in process.
    """
    if isinstance(exc, aiosmtplib.SMTPTimeoutError):
        return ProviderError(str(exc), "RequestTimeout", 504)
    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected)):
        return ProviderError(str(exc), "ServiceUnavailable", 503)
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return ProviderError(str(exc), "AuthenticationFailed", smtp_code=exc.code)
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [refused.code for refused in exc.recipients]
        return _smtp_reply_error(str(exc), codes[0] if codes else None, "InvalidRecipient")
    return _smtp_reply_error(str(exc), getattr(exc, "code", None), "MessageRejected")


class SMTPProvider:
    """Sends messages through an SMTP relay.

    TLS behavior based on port and use_tls flag:
    - Port 465 with use_tls=True: Direct TLS (implicit TLS)
    - Other ports with use_tls=True: STARTTLS
    - use_tls=False: Plain SMTP

    Attributes:
        max_send_rate: Messages per second the relay accepts.
        verified_senders: Sender addresses or domains the relay may send as;
            None leaves sender identities unchecked.
        max_24_hour_send: Messages the relay accepts per 24 hours, or None
            when the relay sets no daily limit.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        max_send_rate: float = 1.0,
        verified_senders: list[str] | None = None,
        max_24_hour_send: int | None = None,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.max_send_rate = max_send_rate
        self.verified_senders = verified_senders
        self.max_24_hour_send = max_24_hour_send

    def _client(self) -> aiosmtplib.SMTP:
        if self.use_tls and self.port == 465:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=10.0)
        if self.use_tls:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=True, timeout=10.0)
        return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=False, timeout=10.0)

    async def send(self, email: OutgoingEmail) -> str:
        """Send one message and return its Message-ID.

        Raises:
            ProviderError: On any SMTP failure, with a provider code.
            asyncio.TimeoutError: If the whole exchange exceeds ``timeout``.
        """
        msg = build_message(email)
        smtp = self._client()

        async def _do_send():
            await smtp.connect()
            try:
                if self.user and self.password:
                    await smtp.login(self.user, self.password)
                await smtp.send_message(msg, sender=email.sender, recipients=[email.recipient])
            finally:
                if smtp.is_connected:
                    try:
                        await smtp.quit()
                    except aiosmtplib.SMTPException:
                        smtp.close()

        try:
            await asyncio.wait_for(_do_send(), timeout=self.timeout)
        except aiosmtplib.SMTPException as exc:
            raise _to_provider_error(exc) from exc
        return str(msg["Message-ID"])

    async def verified_identities(self) -> list[str] | None:
        return self.verified_senders

    async def quota(self) -> SendQuota:
        return SendQuota(self.max_send_rate, self.max_24_hour_send)


class DryRunProvider:
    """Logs messages instead of sending them."""

    def __init__(
        self,
        max_send_rate: float = 1.0,
        verified_senders: list[str] | None = None,
        max_24_hour_send: int | None = None,
    ):
        self.max_send_rate = max_send_rate
        self.verified_senders = verified_senders
        self.max_24_hour_send = max_24_hour_send

    async def send(self, email: OutgoingEmail) -> str:
        message_id = f"<{uuid.uuid4()}@dry-run>"
        logger.info(
            "Dry run: message to %s from %s (%s, %d attachments)",
            email.recipient,
            email.sender,
            email.subject,
            len(email.attachments),
        )
        return message_id

    async def verified_identities(self) -> list[str] | None:
        return self.verified_senders

    async def quota(self) -> SendQuota:
        return SendQuota(self.max_send_rate, self.max_24_hour_send)


def sender_is_verified(sender: str, identities: list[str] | None) -> bool:
    """Check a sender against verified identities (addresses or domains)."""
    if identities is None:
        return True
    sender = sender.lower()
    domain = sender.rsplit("@", 1)[-1]
    for identity in identities:
        identity = identity.lower()
        if identity == sender or identity == domain:
            return True
    return False
