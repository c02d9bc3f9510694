from __future__ import annotations

import smtplib

import pytest

from helpdesk.services import email as email_service
from helpdesk.services.email import EmailDispatchError, MailSender, SenderSettings

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class DummySMTP:
    instances: list["DummySMTP"] = []
    starttls_supported = False
    login_error: Exception | None = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.credentials = None
        self.sent = []
        DummySMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def ehlo(self):
        return 250, b"ok"

    def has_extn(self, name):
        return self.starttls_supported and name == "starttls"

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, username, password):
        if DummySMTP.login_error is not None:
            raise DummySMTP.login_error
        self.credentials = (username, password)

    def noop(self):
        return 250, b"ok"

    def send_message(self, message):
        self.sent.append(message)


@pytest.fixture
def smtp(monkeypatch):
    DummySMTP.instances = []
    DummySMTP.starttls_supported = False
    DummySMTP.login_error = None
    monkeypatch.setattr(email_service.smtplib, "SMTP", DummySMTP)
    monkeypatch.setattr(email_service.smtplib, "SMTP_SSL", DummySMTP)
    return DummySMTP


def _sender(**overrides) -> MailSender:
    values = {
        "host": "smtp.example.com",
        "port": 587,
        "username": "support@example.com",
        "password": "secret",
        "from_name": "Support",
    }
    values.update(overrides)
    return MailSender(SenderSettings(**values))


TICKET = {
    "id": 1,
    "ticket_number": "SUP-000042",
    "subject": "Printer <offline>",
    "priority": "URGENT",
    "requester_name": "Rita",
    "requester_email": "rita@example.com",
}


def test_build_acknowledgement():
    subject, text, html = email_service.build_acknowledgement(
        TICKET, {"name": "Support", "group_name": "Service desk"}
    )

    assert subject == "[Ticket #SUP-000042] Confirmation of receipt - Printer <offline>"
    assert "Priority: Urgent" in text
    assert "Department: Support" in text
    assert "Team: Service desk" in text
    assert text.startswith("Hello Rita,")
    assert "Printer &lt;offline&gt;" in html
    assert "<offline>" not in html


def test_build_acknowledgement_without_team():
    _, text, html = email_service.build_acknowledgement(TICKET, {"name": "Support"})

    assert "Team:" not in text
    assert "Team" not in html


async def test_send_threads_reply_headers(smtp):
    result = await _sender().send(
        to="rita@example.com",
        subject="Hello",
        text="Plain",
        html_body="<p>Rich</p>",
        in_reply_to="<m1@example.com>",
        references="<m1@example.com>",
    )

    [client] = smtp.instances
    [message] = client.sent
    assert client.credentials == ("support@example.com", "secret")
    assert message["From"] == "Support <support@example.com>"
    assert message["In-Reply-To"] == "<m1@example.com>"
    assert message["References"] == "<m1@example.com>"
    assert message["Message-ID"] == result["message_id"]
    assert result["message_id"].endswith("@example.com>")
    assert message.get_content_type() == "multipart/alternative"


async def test_send_upgrades_to_tls_when_offered(smtp):
    smtp.starttls_supported = True

    await _sender().send(to="rita@example.com", subject="Hello", text="Plain")

    assert smtp.instances[0].started_tls is True


async def test_send_requires_host_and_recipient(smtp):
    with pytest.raises(EmailDispatchError) as missing_host:
        await _sender(host="").send(to="rita@example.com", subject="Hello", text="Plain")
    with pytest.raises(EmailDispatchError) as missing_recipient:
        await _sender().send(to=" ", subject="Hello", text="Plain")

    assert missing_host.value.code == "CONFIG_INCOMPLETE"
    assert missing_recipient.value.code == "CONFIG_INCOMPLETE"
    assert smtp.instances == []


async def test_send_classifies_authentication_failure(smtp):
    smtp.login_error = smtplib.SMTPAuthenticationError(535, b"bad credentials")

    with pytest.raises(EmailDispatchError) as excinfo:
        await _sender().send(to="rita@example.com", subject="Hello", text="Plain")

    assert excinfo.value.code == "AUTH_FAILED"


async def test_acknowledgement_failures_are_not_raised(smtp):
    smtp.login_error = smtplib.SMTPServerDisconnected("gone")

    sent = await email_service.send_acknowledgement(
        _sender(), TICKET, {"id": 1, "name": "Support"}, in_reply_to="<m1@example.com>"
    )

    assert sent is False


async def test_acknowledgement_needs_a_recipient(smtp):
    ticket = dict(TICKET, requester_email=None)

    sent = await email_service.send_acknowledgement(_sender(), ticket, {"name": "Support"})

    assert sent is False
    assert smtp.instances == []


async def test_verify_reports_failures(smtp):
    assert await _sender().verify() is True

    smtp.login_error = smtplib.SMTPAuthenticationError(535, b"bad credentials")

    assert await _sender().verify() is False
