from __future__ import annotations

import email
import errno
import imaplib
import socket
from email.message import EmailMessage

import pytest

from helpdesk.services import mailbox
from helpdesk.services.mailbox import MailboxSettings

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _parse(message: EmailMessage) -> email.message.Message:
    return email.message_from_bytes(message.as_bytes())


def test_parse_envelope_decodes_headers():
    message = EmailMessage()
    message["From"] = "José Pereira <Jose.Pereira@Example.com>"
    message["To"] = "support@example.com, billing@example.com"
    message["Subject"] = "Dúvida sobre fatura"
    message["Message-ID"] = "<abc123@example.com>"
    message["Date"] = "Mon, 13 Oct 2025 07:30:00 -0300"
    message.set_content("Body")

    envelope = mailbox.parse_envelope(_parse(message))

    assert envelope.subject == "Dúvida sobre fatura"
    assert envelope.from_name == "José Pereira"
    assert envelope.from_address == "jose.pereira@example.com"
    assert envelope.to == ["support@example.com", "billing@example.com"]
    assert envelope.message_id == "<abc123@example.com>"
    assert envelope.date.hour == 10
    assert envelope.date.utcoffset().total_seconds() == 0


def test_parse_envelope_tolerates_missing_headers():
    envelope = mailbox.parse_envelope(email.message_from_bytes(b"\r\nJust a body\r\n"))

    assert envelope.subject == ""
    assert envelope.from_address == ""
    assert envelope.message_id is None
    assert envelope.date is None


def test_extract_body_prefers_plain_text():
    message = EmailMessage()
    message.set_content("Plain version")
    message.add_alternative("<p>HTML version</p>", subtype="html")

    assert mailbox.extract_body(_parse(message)) == "Plain version"


def test_extract_body_falls_back_to_stripped_html():
    message = EmailMessage()
    message.set_content(
        "<style>p { color: red; }</style><p>Hello<br>Tom &amp; Jerry</p><script>alert(1)</script>",
        subtype="html",
    )

    assert mailbox.extract_body(_parse(message)) == "Hello\nTom & Jerry"


def test_extract_body_ignores_attachments():
    message = EmailMessage()
    message.set_content("See attached")
    message.add_attachment(b"not text", maintype="text", subtype="plain", filename="notes.txt")

    assert mailbox.extract_body(_parse(message)) == "See attached"


def test_clean_content_strips_quoted_headers_and_blank_runs():
    text = "Hi team\r\nFrom: someone@example.com\r\nSubject: old thread\r\n\r\n\r\n\r\nThanks"

    assert mailbox.clean_content(text) == "Hi team\n\nThanks"


def test_clean_content_truncates_long_bodies():
    cleaned = mailbox.clean_content("a" * 300, limit=100)

    assert cleaned == "a" * 100 + mailbox.TRUNCATION_NOTICE


@pytest.mark.parametrize(
    ("exc", "during_login", "code"),
    [
        (imaplib.IMAP4.abort("socket closed"), False, "IMAP_CONNECTION_LOST"),
        (imaplib.IMAP4.error("AUTHENTICATIONFAILED"), True, "AUTH_FAILED"),
        (imaplib.IMAP4.error("BAD command"), False, "IMAP_ERROR"),
        (TimeoutError("timed out"), False, "IMAP_TIMEOUT"),
        (ConnectionResetError(errno.ECONNRESET, "reset"), False, "ECONNRESET"),
        (socket.gaierror(socket.EAI_NONAME, "unknown host"), False, "ENOTFOUND"),
    ],
)
def test_failures_are_classified(exc, during_login, code):
    error = mailbox._classify(exc, during_login=during_login)

    assert error.code == code


async def test_verify_connection_reports_login_failure(monkeypatch):
    class RejectingIMAP:
        def __init__(self, host, port, timeout=None):
            self.logged_out = False

        def login(self, user, password):
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")

        def logout(self):
            return "BYE", [b""]

    monkeypatch.setattr(mailbox.imaplib, "IMAP4_SSL", RejectingIMAP)
    settings = MailboxSettings(host="imap.example.com", port=993, username="u", password="p")

    assert await mailbox.verify_connection(settings) is False


async def test_verify_connection_requires_host():
    settings = MailboxSettings(host="", port=993, username="u", password="p")

    assert await mailbox.verify_connection(settings) is False
