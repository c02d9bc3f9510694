from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Mapping

from loguru import logger

from helpdesk.schemas.tickets import PRIORITY_LABELS
from helpdesk.services.retry import transport_error_code


class EmailDispatchError(Exception):
    """Raised when an email fails to send via SMTP."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class SenderSettings:
    host: str
    port: int
    username: str
    password: str
    secure: bool = False
    from_name: str | None = None
    timeout: float = 30.0


def _classify(exc: BaseException) -> EmailDispatchError:
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return EmailDispatchError(f"SMTP authentication failed: {exc}", code="AUTH_FAILED")
    if isinstance(exc, smtplib.SMTPServerDisconnected):
        return EmailDispatchError(f"SMTP connection lost: {exc}", code="ECONNRESET")
    if isinstance(exc, smtplib.SMTPException):
        return EmailDispatchError(str(exc), code="SMTP_ERROR")
    if isinstance(exc, OSError):
        return EmailDispatchError(str(exc), code=transport_error_code(exc))
    return EmailDispatchError(str(exc))


class MailSender:
    """Outbound mail for one department; a fresh SMTP session per call."""

    def __init__(self, settings: SenderSettings) -> None:
        self.settings = settings

    def _open(self) -> smtplib.SMTP:
        settings = self.settings
        context = ssl.create_default_context()
        if settings.secure:
            client: smtplib.SMTP = smtplib.SMTP_SSL(
                settings.host, settings.port, timeout=settings.timeout, context=context
            )
        else:
            client = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
            client.ehlo()
            if client.has_extn("starttls"):
                client.starttls(context=context)
                client.ehlo()
        if settings.username:
            client.login(settings.username, settings.password or "")
        return client

    def _verify(self) -> None:
        with self._open() as client:
            client.noop()

    async def verify(self) -> bool:
        if not self.settings.host:
            return False
        try:
            await asyncio.to_thread(self._verify)
        except (smtplib.SMTPException, OSError) as exc:
            error = _classify(exc)
            logger.warning(
                "SMTP connection test failed",
                host=self.settings.host,
                code=error.code,
                error=str(error),
            )
            return False
        return True

    async def send(
        self,
        *,
        to: str,
        subject: str,
        text: str | None = None,
        html_body: str | None = None,
        in_reply_to: str | None = None,
        references: str | None = None,
    ) -> dict[str, Any]:
        """Send one message and return ``{"message_id": ...}``."""
        if not self.settings.host:
            raise EmailDispatchError("SMTP host not configured", code="CONFIG_INCOMPLETE")
        if not to or not to.strip():
            raise EmailDispatchError("No recipient provided", code="CONFIG_INCOMPLETE")

        message = EmailMessage()
        from_address = self.settings.username or "no-reply@localhost"
        message["From"] = (
            formataddr((self.settings.from_name, from_address))
            if self.settings.from_name
            else from_address
        )
        message["To"] = to.strip()
        message["Subject"] = subject
        domain = from_address.split("@", 1)[1] if "@" in from_address else None
        message_id = make_msgid(domain=domain)
        message["Message-ID"] = message_id
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
        if references:
            message["References"] = references

        if text:
            message.set_content(text)
            if html_body:
                message.add_alternative(html_body, subtype="html")
        else:
            message.set_content(html_body or "", subtype="html")

        def _dispatch() -> None:
            try:
                with self._open() as client:
                    client.send_message(message)
            except (smtplib.SMTPException, OSError) as exc:
                raise _classify(exc) from exc

        await asyncio.to_thread(_dispatch)
        logger.info(
            "Email dispatched via SMTP",
            subject=subject,
            recipient=message["To"],
            sender=message["From"],
        )
        return {"message_id": message_id}


def build_acknowledgement(
    ticket: Mapping[str, Any],
    department: Mapping[str, Any],
) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for the receipt sent to a requester."""
    ticket_number = str(ticket.get("ticket_number") or ticket.get("number") or "")
    subject = str(ticket.get("subject") or "")
    priority = str(ticket.get("priority") or "")
    priority_label = PRIORITY_LABELS.get(priority, priority)
    department_name = str(department.get("name") or "")
    group_name = str(department.get("group_name") or "")
    requester = str(ticket.get("requester_name") or "")

    ack_subject = f"[Ticket #{ticket_number}] Confirmation of receipt - {subject}"
    text_lines = [
        f"Hello {requester}," if requester else "Hello,",
        "",
        "We have received your message and opened a ticket for it.",
        "",
        f"Ticket: #{ticket_number}",
        f"Subject: {subject}",
        f"Priority: {priority_label}",
        f"Department: {department_name}",
    ]
    if group_name:
        text_lines.append(f"Team: {group_name}")
    text_lines.extend(
        [
            "",
            "Please keep the ticket number in the subject line when replying.",
        ]
    )

    rows = [
        ("Ticket", f"#{ticket_number}"),
        ("Subject", subject),
        ("Priority", priority_label),
        ("Department", department_name),
    ]
    if group_name:
        rows.append(("Team", group_name))
    table_rows = "".join(
        f"<tr><th align=\"left\">{html.escape(label)}</th><td>{html.escape(value)}</td></tr>"
        for label, value in rows
    )
    greeting = f"Hello {html.escape(requester)}," if requester else "Hello,"
    html_body = (
        f"<p>{greeting}</p>"
        "<p>We have received your message and opened a ticket for it.</p>"
        f"<table>{table_rows}</table>"
        "<p>Please keep the ticket number in the subject line when replying.</p>"
    )
    return ack_subject, "\n".join(text_lines), html_body


async def send_acknowledgement(
    sender: MailSender,
    ticket: Mapping[str, Any],
    department: Mapping[str, Any],
    *,
    in_reply_to: str | None = None,
) -> bool:
    """Best effort: failures are logged and reported as ``False``."""
    recipient = ticket.get("requester_email")
    if not recipient:
        return False
    subject, text, html_body = build_acknowledgement(ticket, department)
    try:
        await sender.send(
            to=str(recipient),
            subject=subject,
            text=text,
            html_body=html_body,
            in_reply_to=in_reply_to,
            references=in_reply_to,
        )
    except Exception as exc:
        logger.error(
            "Failed to send ticket acknowledgement",
            ticket_id=ticket.get("id"),
            department_id=department.get("id"),
            error=str(exc),
        )
        return False
    return True
