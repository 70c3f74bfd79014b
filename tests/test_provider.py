import asyncio

import aiosmtplib
import pytest

from trickle_mail import provider as provider_module
from trickle_mail.errors import ProviderError
from trickle_mail.provider import (
    Attachment,
    DryRunProvider,
    OutgoingEmail,
    SendQuota,
    SMTPProvider,
    build_message,
    error_kind,
    is_retryable_error,
    is_valid_address,
    sender_is_verified,
)


@pytest.mark.parametrize(
    "exc",
    [
        ProviderError("slow down", "Throttling", 400),
        ProviderError("x", None, 429),
        ProviderError("x", None, 503),
        ProviderError("x", None, 504),
        ProviderError("x", "TooManyRequestsException"),
        ProviderError("Maximum sending rate exceeded"),
        RuntimeError("connection timed out"),
        asyncio.TimeoutError(),
        ConnectionResetError("reset"),
    ],
)
def test_retryable_errors(exc):
    assert is_retryable_error(exc) is True


@pytest.mark.parametrize(
    "exc",
    [
        ProviderError("Email address is not verified", "MessageRejected", 400),
        ProviderError("bad recipient", "InvalidRecipient", 550),
        ValueError("bad input"),
        RuntimeError("boom"),
    ],
)
def test_non_retryable_errors(exc):
    assert is_retryable_error(exc) is False


def test_error_kind():
    assert error_kind(ProviderError("x", "MessageRejected")) == "MessageRejected"
    assert error_kind(ValueError("x")) == "ValueError"


@pytest.mark.parametrize(
    "address,valid",
    [
        ("user@example.com", True),
        ("first.last+tag@sub.example.org", True),
        ("no-at-sign", False),
        ("two@@example.com", False),
        ("space in@example.com", False),
        ("user@localhost", False),
        ("", False),
    ],
)
def test_is_valid_address(address, valid):
    assert is_valid_address(address) is valid


def test_sender_verification_by_address_or_domain():
    assert sender_is_verified("news@example.com", None) is True
    assert sender_is_verified("news@example.com", ["example.com"]) is True
    assert sender_is_verified("News@Example.com", ["news@example.com"]) is True
    assert sender_is_verified("news@other.com", ["example.com", "a@other.com"]) is False
    assert sender_is_verified("news@example.com", []) is False


def test_build_message_html_headers_and_attachments():
    email = OutgoingEmail(
        sender="news@example.com",
        recipient="a@example.com",
        subject="Hello",
        content="<p>Hi</p>",
        headers={"X-Job-ID": "job-1", "List-ID": "news", "From": "ignored@example.com"},
        attachments=[Attachment("report.pdf", b"%PDF")],
    )
    msg = build_message(email)
    assert msg["From"] == "news@example.com"
    assert msg["To"] == "a@example.com"
    assert msg["X-Job-ID"] == "job-1"
    assert msg["List-ID"] == "news"
    assert msg["Message-ID"].endswith("@example.com>")
    parts = list(msg.iter_parts())
    assert parts[0].get_content_subtype() == "html"
    assert parts[1].get_filename() == "report.pdf"
    assert parts[1].get_content_type() == "application/pdf"


def test_build_message_plain_text():
    msg = build_message(OutgoingEmail("s@example.com", "r@example.com", "Hi", "Plain body"))
    assert msg.get_content_type() == "text/plain"


@pytest.mark.parametrize(
    "exc,code,status,smtp_code",
    [
        (aiosmtplib.SMTPTimeoutError("timeout"), "RequestTimeout", 504, None),
        (aiosmtplib.SMTPServerDisconnected("gone"), "ServiceUnavailable", 503, None),
        (aiosmtplib.SMTPResponseException(421, "closing"), "ServiceUnavailable", 503, 421),
        (aiosmtplib.SMTPResponseException(451, "try later"), "Throttling", 429, 451),
        (aiosmtplib.SMTPResponseException(454, "tls unavailable"), "ServiceUnavailable", 503, 454),
        (aiosmtplib.SMTPResponseException(450, "mailbox busy"), "TransientFailure", None, 450),
        (aiosmtplib.SMTPResponseException(554, "rejected"), "MessageRejected", None, 554),
        (aiosmtplib.SMTPResponseException(503, "bad sequence"), "MessageRejected", None, 503),
        (aiosmtplib.SMTPAuthenticationError(535, "bad credentials"), "AuthenticationFailed", None, 535),
    ],
)
def test_smtp_errors_map_to_provider_codes(exc, code, status, smtp_code):
    error = provider_module._to_provider_error(exc)
    assert error.provider_code == code
    assert error.status_code == status
    assert error.smtp_code == smtp_code


def test_smtp_reply_codes_decide_retries():
    def mapped(code, message="x"):
        return provider_module._to_provider_error(aiosmtplib.SMTPResponseException(code, message))

    assert [is_retryable_error(mapped(code)) for code in (421, 451, 454)] == [True, True, True]
    assert is_retryable_error(mapped(450)) is False
    assert is_retryable_error(mapped(503)) is False
    assert is_retryable_error(mapped(554, "timeout waiting for data")) is False


@pytest.mark.parametrize(
    "code,kind,retryable",
    [
        (550, "InvalidRecipient", False),
        (452, "TransientFailure", False),
        (451, "Throttling", True),
    ],
)
def test_refused_recipient_keeps_reply_code(code, kind, retryable):
    refused = aiosmtplib.SMTPRecipientsRefused(
        [aiosmtplib.SMTPRecipientRefused(code, "refused", "a@example.com")]
    )
    error = provider_module._to_provider_error(refused)
    assert (error.provider_code, error.smtp_code) == (kind, code)
    assert is_retryable_error(error) is retryable


def test_message_text_only_classifies_uncoded_errors():
    assert is_retryable_error(ProviderError("Connection timeout in upstream", "MessageRejected", 400)) is False
    assert is_retryable_error(ProviderError("Throttled by relay", smtp_code=550)) is False
    assert is_retryable_error(ProviderError("Throttled by relay")) is True


def test_smtp_client_tls_modes(monkeypatch):
    monkeypatch.setattr(provider_module.aiosmtplib, "SMTP", FakeSMTP)
    implicit = SMTPProvider("smtp.local", port=465, use_tls=True)._client()
    starttls = SMTPProvider("smtp.local", port=587, use_tls=True)._client()
    plain = SMTPProvider("smtp.local", port=25, use_tls=False)._client()
    assert (implicit.kwargs["use_tls"], implicit.kwargs["start_tls"]) == (True, False)
    assert (starttls.kwargs["use_tls"], starttls.kwargs["start_tls"]) == (False, True)
    assert (plain.kwargs["use_tls"], plain.kwargs["start_tls"]) == (False, False)


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sent = []
        self.logged_in = None
        self.is_connected = False
        FakeSMTP.instances.append(self)

    async def connect(self):
        self.is_connected = True

    async def login(self, user, password):
        self.logged_in = (user, password)

    async def send_message(self, msg, sender=None, recipients=None):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.sent.append((msg, sender, recipients))

    async def quit(self):
        self.is_connected = False

    def close(self):
        self.is_connected = False


@pytest.mark.asyncio
async def test_smtp_provider_sends_and_returns_message_id(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(provider_module.aiosmtplib, "SMTP", FakeSMTP)
    smtp_provider = SMTPProvider("smtp.local", user="u", password="p")
    message_id = await smtp_provider.send(OutgoingEmail("s@example.com", "r@example.com", "Hi", "Body"))
    smtp = FakeSMTP.instances[0]
    assert smtp.logged_in == ("u", "p")
    msg, sender, recipients = smtp.sent[0]
    assert message_id == msg["Message-ID"]
    assert recipients == ["r@example.com"]
    assert smtp.is_connected is False


@pytest.mark.asyncio
async def test_smtp_provider_raises_provider_error(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = aiosmtplib.SMTPResponseException(451, "slow down")
    monkeypatch.setattr(provider_module.aiosmtplib, "SMTP", FakeSMTP)
    try:
        with pytest.raises(ProviderError) as exc_info:
            await SMTPProvider("smtp.local").send(OutgoingEmail("s@example.com", "r@example.com", "Hi", "Body"))
    finally:
        FakeSMTP.fail_with = None
    assert is_retryable_error(exc_info.value)


@pytest.mark.asyncio
async def test_dry_run_provider():
    dry = DryRunProvider(max_send_rate=5, verified_senders=["example.com"])
    message_id = await dry.send(OutgoingEmail("s@example.com", "r@example.com", "Hi", "Body"))
    assert message_id.endswith("@dry-run>")
    assert await dry.verified_identities() == ["example.com"]


@pytest.mark.asyncio
async def test_providers_report_configured_quota():
    assert await DryRunProvider(max_send_rate=5).quota() == SendQuota(5)
    smtp_provider = SMTPProvider("smtp.local", max_send_rate=14, max_24_hour_send=50000)
    assert await smtp_provider.quota() == SendQuota(max_send_rate=14, max_24_hour_send=50000)
