from __future__ import annotations

import asyncio
import email
import html
import imaplib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Callable, TypeVar

import bleach

from helpdesk.core.logging import log_debug, log_info
from helpdesk.services.retry import transport_error_code

T = TypeVar("T")

_MAX_FETCH_BYTES = 5 * 1024 * 1024
_HEADER_NOISE = re.compile(
    r"^(from|to|cc|bcc|subject|date|sent|reply-to|message-id)\s*:.*$",
    re.IGNORECASE | re.MULTILINE,
)
_BLANK_RUNS = re.compile(r"\n\s*\n\s*\n+")
TRUNCATION_NOTICE = "\n\n[Content truncated...]"


class MailboxError(Exception):
    """Raised when an IMAP operation fails; ``code`` feeds retry classification."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class MailboxSettings:
    host: str
    port: int
    username: str
    password: str
    secure: bool = True
    folder: str = "INBOX"
    timeout: float = 30.0


@dataclass(frozen=True)
class Envelope:
    subject: str
    from_address: str
    from_name: str
    to: list[str]
    date: datetime | None
    message_id: str | None


@dataclass(frozen=True)
class FetchedMail:
    uid: str
    envelope: Envelope
    raw_source: bytes


def _decode_header_value(raw: Any) -> str:
    if not raw:
        return ""
    try:
        return str(make_header(decode_header(str(raw)))).strip()
    except Exception:  # pragma: no cover - malformed encodings
        return str(raw).strip()


def _parse_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_envelope(message: email.message.Message) -> Envelope:
    senders = getaddresses([_decode_header_value(message.get("From"))])
    from_name, from_address = senders[0] if senders else ("", "")
    recipients = [
        address for _, address in getaddresses([_decode_header_value(message.get("To"))]) if address
    ]
    message_id = (message.get("Message-ID") or "").strip() or None
    return Envelope(
        subject=_decode_header_value(message.get("Subject")),
        from_address=from_address.strip().lower(),
        from_name=from_name.strip(),
        to=recipients,
        date=_parse_date(message.get("Date")),
        message_id=message_id,
    )


def _decode_part(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, (bytes, bytearray)):
        return ""
    payload = bytes(payload[:_MAX_FETCH_BYTES])
    try:
        return payload.decode(part.get_content_charset() or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def html_to_text(markup: str) -> str:
    without_blocks = re.sub(r"(?is)<(script|style)[^>]*>.*?</\1>", "", markup)
    with_breaks = re.sub(r"(?i)<\s*(br|/p|/div|/li|/tr|/h\d)\s*/?>", "\n", without_blocks)
    return html.unescape(bleach.clean(with_breaks, tags=[], strip=True))


def extract_body(message: email.message.Message) -> str:
    """Return the readable body, preferring ``text/plain`` over stripped HTML."""
    plain_parts: list[str] = []
    html_parts: list[str] = []
    for part in message.walk() if message.is_multipart() else [message]:
        if part.is_multipart():
            continue
        if (part.get_content_disposition() or "") == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_parts.append(_decode_part(part))
        elif content_type == "text/html":
            html_parts.append(_decode_part(part))
    if any(text.strip() for text in plain_parts):
        return "\n".join(plain_parts).strip()
    if html_parts:
        return html_to_text("\n".join(html_parts)).strip()
    return ""


def clean_content(text: str, *, limit: int = 5000) -> str:
    """Strip quoted header lines, collapse blank runs and cap the length."""
    cleaned = text.replace("\r\n", "\n")
    cleaned = _HEADER_NOISE.sub("", cleaned)
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned).strip()
    if len(cleaned) > limit:
        cleaned = cleaned[:limit].rstrip() + TRUNCATION_NOTICE
    return cleaned


def _classify(exc: BaseException, *, during_login: bool = False) -> MailboxError:
    if isinstance(exc, MailboxError):
        return exc
    if isinstance(exc, imaplib.IMAP4.abort):
        return MailboxError(f"IMAP connection lost: {exc}", code="IMAP_CONNECTION_LOST")
    if isinstance(exc, imaplib.IMAP4.error):
        code = "AUTH_FAILED" if during_login else "IMAP_ERROR"
        return MailboxError(f"IMAP command failed: {exc}", code=code)
    if isinstance(exc, TimeoutError):
        return MailboxError(f"IMAP operation timed out: {exc}", code="IMAP_TIMEOUT")
    if isinstance(exc, OSError):
        return MailboxError(f"IMAP transport error: {exc}", code=transport_error_code(exc))
    return MailboxError(str(exc))


class MailboxClient:
    """A single IMAP session.

    The session is opened for one fetch/mark cycle and closed afterwards.
    ``imaplib`` is blocking, so every command runs in a worker thread.
    """

    def __init__(self, settings: MailboxSettings) -> None:
        self.settings = settings
        self._connection: imaplib.IMAP4 | None = None

    async def _call(self, func: Callable[..., T], *args: Any, during_login: bool = False) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as exc:
            raise _classify(exc, during_login=during_login) from exc

    def _open(self) -> imaplib.IMAP4:
        settings = self.settings
        if settings.secure:
            return imaplib.IMAP4_SSL(settings.host, settings.port, timeout=settings.timeout)
        connection = imaplib.IMAP4(settings.host, settings.port, timeout=settings.timeout)
        if "STARTTLS" in getattr(connection, "capabilities", ()):
            connection.starttls()
        return connection

    async def connect(self) -> None:
        if not self.settings.host or not self.settings.username:
            raise MailboxError("IMAP configuration incomplete", code="CONFIG_INCOMPLETE")
        connection = await self._call(self._open)
        self._connection = connection
        await self._call(
            connection.login, self.settings.username, self.settings.password, during_login=True
        )
        log_debug("IMAP session opened", host=self.settings.host, user=self.settings.username)

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def _require_connection(self) -> imaplib.IMAP4:
        if self._connection is None:
            raise MailboxError("IMAP session is not connected", code="IMAP_CONNECTION_LOST")
        return self._connection

    async def select_mailbox(self, name: str | None = None) -> None:
        connection = self._require_connection()
        folder = name or self.settings.folder or "INBOX"
        status, _ = await self._call(connection.select, folder)
        if status != "OK":
            raise MailboxError(f"Unable to select mailbox {folder}", code="IMAP_ERROR")

    async def fetch_unseen(self) -> list[FetchedMail]:
        connection = self._require_connection()
        status, data = await self._call(connection.uid, "search", None, "UNSEEN")
        if status != "OK" or not data or not data[0]:
            return []
        fetched: list[FetchedMail] = []
        for raw_uid in data[0].split():
            uid = raw_uid.decode("utf-8", errors="ignore") if isinstance(raw_uid, bytes) else str(raw_uid)
            if not uid:
                continue
            # BODY.PEEK leaves \Seen unset until the ticket has been stored.
            fetch_status, fetch_data = await self._call(
                connection.uid, "fetch", uid, "(BODY.PEEK[] FLAGS)"
            )
            if fetch_status != "OK" or not fetch_data:
                log_info("Skipping message that could not be fetched", uid=uid)
                continue
            message_bytes: bytes | None = None
            for item in fetch_data:
                if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], (bytes, bytearray)):
                    message_bytes = bytes(item[1])
                    break
            if message_bytes is None:
                log_info("Skipping message without a body", uid=uid)
                continue
            envelope = parse_envelope(email.message_from_bytes(message_bytes))
            fetched.append(FetchedMail(uid=uid, envelope=envelope, raw_source=message_bytes))
        return fetched

    async def mark_seen(self, uid: str) -> None:
        connection = self._require_connection()
        status, _ = await self._call(connection.uid, "store", uid, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise MailboxError(f"Unable to flag message {uid} as seen", code="IMAP_ERROR")

    async def disconnect(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is None:
            return
        try:
            await asyncio.to_thread(connection.logout)
        except (imaplib.IMAP4.error, OSError) as exc:
            log_debug("IMAP logout failed", host=self.settings.host, error=str(exc))

    async def __aenter__(self) -> "MailboxClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()


async def verify_connection(settings: MailboxSettings) -> bool:
    client = MailboxClient(settings)
    try:
        await client.connect()
        await client.select_mailbox()
    except MailboxError as exc:
        log_info("IMAP connection test failed", host=settings.host, code=exc.code, error=str(exc))
        return False
    finally:
        await client.disconnect()
    return True
