"""Turn unread department mail into helpdesk tickets.

Departments are processed one after another. For each one a single IMAP
session is opened, every unseen message is converted into at most one ticket
and flagged as seen, and the session is closed again. All mailbox calls run
through the shared :data:`~helpdesk.services.retry.retry_manager` under the
key ``imap:<department_id>``.
"""
from __future__ import annotations

import email
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from helpdesk.core.config import get_settings
from helpdesk.core.database import db
from helpdesk.core.logging import log_error, log_info, log_warning
from helpdesk.repositories import departments as departments_repo
from helpdesk.repositories import tickets as tickets_repo
from helpdesk.schemas.tickets import MessageContentType, TicketPriority
from helpdesk.security.encryption import decrypt_secret
from helpdesk.services import customers as customers_service
from helpdesk.services import tickets as tickets_service
from helpdesk.services.email import MailSender, SenderSettings, send_acknowledgement
from helpdesk.services.mailbox import (
    FetchedMail,
    MailboxClient,
    MailboxError,
    MailboxSettings,
    clean_content,
    extract_body,
    verify_connection,
)
from helpdesk.services.retry import (
    RetryBlockedError,
    RetryExhaustedError,
    is_retryable_error,
    retry_manager,
)
from helpdesk.services.ticket_audit import get_audit_context

_URGENT_KEYWORDS = ("urgente", "crítico")
_HIGH_KEYWORDS = ("importante", "problema")
_DEFAULT_SUBJECT = "No subject"


class SyncErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    CIRCUIT_OPEN = "circuit_open"
    PROCESSING = "processing"


@dataclass
class WorkerStatus:
    running: bool = False
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_run_processed: int = 0
    last_run_tickets_created: int = 0
    last_run_errors: int = 0


_worker_status = WorkerStatus()


def classify_priority(subject: str | None, body: str | None) -> TicketPriority:
    """Keyword scan over subject and body; urgent keywords win over high ones."""
    haystack = f"{subject or ''} {body or ''}".lower()
    if any(keyword in haystack for keyword in _URGENT_KEYWORDS):
        return TicketPriority.URGENT
    if any(keyword in haystack for keyword in _HIGH_KEYWORDS):
        return TicketPriority.HIGH
    return TicketPriority.MEDIUM


def retry_key(department_id: int) -> str:
    return f"imap:{department_id}"


def _has_imap_credentials(department: Mapping[str, Any]) -> bool:
    return bool(
        department.get("imap_host")
        and department.get("imap_user")
        and department.get("imap_password_encrypted")
    )


def _has_smtp_credentials(department: Mapping[str, Any]) -> bool:
    return bool(
        department.get("smtp_host")
        and department.get("smtp_user")
        and department.get("smtp_password_encrypted")
    )


def mailbox_settings_for(department: Mapping[str, Any]) -> MailboxSettings:
    return MailboxSettings(
        host=str(department.get("imap_host") or ""),
        port=int(department.get("imap_port") or 993),
        username=str(department.get("imap_user") or ""),
        password=decrypt_secret(str(department.get("imap_password_encrypted") or "")),
        secure=bool(department.get("imap_secure", True)),
        folder=str(department.get("imap_folder") or "INBOX"),
        timeout=get_settings().imap_timeout_seconds,
    )


def sender_settings_for(department: Mapping[str, Any]) -> SenderSettings:
    return SenderSettings(
        host=str(department.get("smtp_host") or ""),
        port=int(department.get("smtp_port") or 587),
        username=str(department.get("smtp_user") or ""),
        password=decrypt_secret(str(department.get("smtp_password_encrypted") or "")),
        secure=bool(department.get("smtp_secure", False)),
        from_name=department.get("name"),
        timeout=get_settings().smtp_timeout_seconds,
    )


class _MailboxCycle:
    """One fetch/mark cycle against a department mailbox."""

    def __init__(self, settings: MailboxSettings) -> None:
        self.settings = settings
        self.client: MailboxClient | None = None

    async def _ensure_open(self) -> MailboxClient:
        if self.client is None or not self.client.connected:
            client = MailboxClient(self.settings)
            try:
                await client.connect()
                await client.select_mailbox()
            except Exception:
                await client.disconnect()
                raise
            self.client = client
        return self.client

    async def _drop_on_failure(self, exc: Exception) -> None:
        # The next attempt must not reuse a socket the server already dropped.
        if is_retryable_error(exc):
            await self.close()

    async def fetch_unseen(self) -> list[FetchedMail]:
        client = await self._ensure_open()
        try:
            return await client.fetch_unseen()
        except Exception as exc:
            await self._drop_on_failure(exc)
            raise

    async def mark_seen(self, uid: str) -> None:
        client = await self._ensure_open()
        try:
            await client.mark_seen(uid)
        except Exception as exc:
            await self._drop_on_failure(exc)
            raise

    async def close(self) -> None:
        client = self.client
        self.client = None
        if client is not None:
            await client.disconnect()


def _result(
    department_id: int,
    status: str,
    *,
    processed: int = 0,
    tickets_created: list[dict[str, Any]] | None = None,
    errors: list[dict[str, Any]] | None = None,
    reason: str | None = None,
    error: str | None = None,
    error_kind: SyncErrorKind | None = None,
) -> dict[str, Any]:
    return {
        "department_id": department_id,
        "status": status,
        "processed": processed,
        "tickets_created": tickets_created or [],
        "errors": errors or [],
        "reason": reason,
        "error": error,
        "error_kind": error_kind.value if error_kind else None,
    }


async def _process_mail(
    department: Mapping[str, Any],
    mail: FetchedMail,
) -> dict[str, Any] | None:
    """Create the ticket for one message; returns ``None`` when it already exists."""
    department_id = int(department["id"])
    envelope = mail.envelope
    message_id = envelope.message_id or f"uid:{mail.uid}"

    if await tickets_repo.get_ticket_by_source(department_id, message_id):
        log_info(
            "Skipping message that already has a ticket",
            department_id=department_id,
            message_id=message_id,
        )
        return None

    parsed = email.message_from_bytes(mail.raw_source)
    body = clean_content(extract_body(parsed), limit=get_settings().max_message_body_chars)
    subject = envelope.subject or _DEFAULT_SUBJECT
    from_address = envelope.from_address or None
    from_name = envelope.from_name or (from_address.split("@", 1)[0] if from_address else "")
    priority = classify_priority(subject, body)

    customer, _, _ = await customers_service.resolve_customer(
        from_address, None, from_name, create_if_missing=True
    )

    try:
        ticket = await tickets_service.create_ticket(
            department=department,
            subject=subject,
            description=body,
            priority=priority,
            requester_name=from_name or None,
            requester_email=from_address,
            customer_id=int(customer["id"]) if customer else None,
            email_message_id=message_id,
            email_uid=mail.uid,
            first_message={
                "content": body or subject,
                "content_type": MessageContentType.TEXT.value,
                "sender_name": from_name or None,
                "sender_email": from_address,
            },
            received_at=envelope.date,
            context=get_audit_context(),
        )
    except tickets_service.TicketError as exc:
        if exc.kind is tickets_service.TicketErrorKind.DUPLICATE:
            log_info(
                "Concurrent sync already created this ticket",
                department_id=department_id,
                message_id=message_id,
            )
            return None
        raise
    return ticket


def department_lock_name(department_id: int) -> str:
    return f"helpdesk_email_sync:{department_id}"


async def sync_department(department_id: int) -> dict[str, Any]:
    """Run one sync pass for a department and report what happened.

    The returned ``status`` is one of ``succeeded``, ``completed_with_errors``,
    ``skipped`` or ``error``. Errors never propagate to the caller.

    Worker ticks and on-demand runs share a named lock per department, so a
    pass that finds the lock held is reported as ``skipped``.
    """
    async with db.acquire_lock(department_lock_name(department_id), timeout=1) as lock_acquired:
        if not lock_acquired:
            log_info("Department sync already running, skipping", department_id=department_id)
            return _result(department_id, "skipped", reason="Sync already running")
        return await _sync_department(department_id)


async def _sync_department(department_id: int) -> dict[str, Any]:
    department = await departments_repo.get_department(department_id)
    if not department:
        return _result(
            department_id,
            "error",
            error="Department not found",
            error_kind=SyncErrorKind.CONFIGURATION,
        )
    if not department.get("active"):
        return _result(department_id, "skipped", reason="Department inactive")
    if not department.get("sync_enabled"):
        return _result(department_id, "skipped", reason="Email sync disabled")
    if not _has_imap_credentials(department):
        log_warning("Department is missing IMAP credentials", department_id=department_id)
        return _result(
            department_id,
            "skipped",
            reason="IMAP credentials missing",
            error_kind=SyncErrorKind.CONFIGURATION,
        )

    key = retry_key(department_id)
    state = retry_manager.get_state(key)
    if state is not None and state.blocked:
        log_info("Skipping department with an open circuit", department_id=department_id)
        return _result(
            department_id,
            "skipped",
            reason="Mailbox circuit open after repeated failures",
            error_kind=SyncErrorKind.CIRCUIT_OPEN,
        )

    try:
        settings = mailbox_settings_for(department)
    except Exception as exc:
        log_error("Unable to decrypt IMAP credentials", department_id=department_id, error=str(exc))
        return _result(
            department_id,
            "error",
            error="Unable to decrypt credentials",
            error_kind=SyncErrorKind.CONFIGURATION,
        )

    sender: MailSender | None = None
    if department.get("auto_reply_enabled", True) and _has_smtp_credentials(department):
        try:
            sender = MailSender(sender_settings_for(department))
        except Exception as exc:
            log_error(
                "Unable to decrypt SMTP credentials; acknowledgements disabled",
                department_id=department_id,
                error=str(exc),
            )

    cycle = _MailboxCycle(settings)
    processed = 0
    created: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    try:
        try:
            mails = await retry_manager.execute_with_retry(key, cycle.fetch_unseen)
        except RetryBlockedError as exc:
            return _result(
                department_id,
                "skipped",
                reason=str(exc),
                error_kind=SyncErrorKind.CIRCUIT_OPEN,
            )
        except RetryExhaustedError as exc:
            log_error("Mailbox unreachable", department_id=department_id, error=str(exc))
            return _result(
                department_id,
                "error",
                error=str(exc),
                error_kind=SyncErrorKind.TRANSPORT,
            )
        except MailboxError as exc:
            log_error(
                "Mailbox rejected the sync",
                department_id=department_id,
                code=exc.code,
                error=str(exc),
            )
            return _result(
                department_id,
                "error",
                error=str(exc),
                error_kind=SyncErrorKind.CONFIGURATION,
            )

        for mail in mails:
            try:
                ticket = await _process_mail(department, mail)
            except Exception as exc:
                log_error(
                    "Failed to create ticket from email",
                    department_id=department_id,
                    uid=mail.uid,
                    error=str(exc),
                )
                errors.append(
                    {
                        "uid": mail.uid,
                        "message_id": mail.envelope.message_id,
                        "error": str(exc),
                        "error_kind": SyncErrorKind.PROCESSING.value,
                    }
                )
                continue

            processed += 1
            if ticket is not None:
                created.append(
                    {
                        "id": ticket["id"],
                        "ticket_number": ticket.get("ticket_number"),
                        "subject": ticket.get("subject"),
                        "priority": ticket.get("priority"),
                    }
                )
            try:
                await retry_manager.execute_with_retry(
                    key, lambda uid=mail.uid: cycle.mark_seen(uid)
                )
            except Exception as exc:
                log_error(
                    "Unable to mark message as read",
                    department_id=department_id,
                    uid=mail.uid,
                    error=str(exc),
                )
                errors.append(
                    {
                        "uid": mail.uid,
                        "message_id": mail.envelope.message_id,
                        "error": str(exc),
                        "error_kind": SyncErrorKind.TRANSPORT.value,
                    }
                )
            if ticket is not None and sender is not None:
                await send_acknowledgement(
                    sender, ticket, department, in_reply_to=mail.envelope.message_id
                )
    finally:
        await cycle.close()

    await departments_repo.update_last_sync(department_id, datetime.now(timezone.utc))
    log_info(
        "Email sync completed",
        department_id=department_id,
        processed=processed,
        created=len(created),
        errors=len(errors),
    )
    return _result(
        department_id,
        "completed_with_errors" if errors else "succeeded",
        processed=processed,
        tickets_created=created,
        errors=errors,
    )


def _summarise(results: list[dict[str, Any]]) -> dict[str, Any]:
    processed = sum(result["processed"] for result in results)
    tickets_created = [ticket for result in results for ticket in result["tickets_created"]]
    errors: list[dict[str, Any]] = []
    for result in results:
        if result["status"] == "error":
            errors.append(
                {
                    "department_id": result["department_id"],
                    "error": result["error"],
                    "error_kind": result["error_kind"],
                }
            )
        for item in result["errors"]:
            errors.append({"department_id": result["department_id"], **item})
    return {
        "processed": processed,
        "tickets_created": tickets_created,
        "errors": errors,
        "departments": results,
    }


async def _sync_many(departments: list[dict[str, Any]]) -> dict[str, Any]:
    results: list[dict[str, Any]] = []
    for department in departments:
        department_id = int(department["id"])
        try:
            results.append(await sync_department(department_id))
        except Exception as exc:
            log_error(
                "Failed to synchronise department during bulk run",
                department_id=department_id,
                error=str(exc),
            )
            results.append(
                _result(
                    department_id,
                    "error",
                    error=str(exc),
                    error_kind=SyncErrorKind.PROCESSING,
                )
            )
    return _summarise(results)


async def sync_all_departments() -> dict[str, Any]:
    """Sync every department serially; one failure never stops the rest."""
    departments = await departments_repo.list_departments()
    return await _sync_many(departments)


def next_sync_at(department: Mapping[str, Any]) -> datetime | None:
    last_sync = department.get("last_sync")
    if not last_sync:
        return None
    interval = int(department.get("sync_interval") or get_settings().default_sync_interval)
    return last_sync + timedelta(seconds=interval)


def is_due(department: Mapping[str, Any], now: datetime | None = None) -> bool:
    if not department.get("active") or not department.get("sync_enabled"):
        return False
    due_at = next_sync_at(department)
    if due_at is None:
        return True
    return (now or datetime.now(timezone.utc)) >= due_at


async def sync_due_departments() -> dict[str, Any]:
    """Worker tick: sync the departments whose interval has elapsed."""
    now = datetime.now(timezone.utc)
    _worker_status.running = True
    _worker_status.last_run_started_at = now
    try:
        departments = [
            department
            for department in await departments_repo.list_departments()
            if is_due(department, now)
        ]
        summary = await _sync_many(departments)
    finally:
        _worker_status.running = False
        _worker_status.last_run_finished_at = datetime.now(timezone.utc)
    _worker_status.last_run_processed = summary["processed"]
    _worker_status.last_run_tickets_created = len(summary["tickets_created"])
    _worker_status.last_run_errors = len(summary["errors"])
    return summary


def get_worker_status() -> dict[str, Any]:
    return {
        "running": _worker_status.running,
        "last_run_started_at": _worker_status.last_run_started_at,
        "last_run_finished_at": _worker_status.last_run_finished_at,
        "last_run_processed": _worker_status.last_run_processed,
        "last_run_tickets_created": _worker_status.last_run_tickets_created,
        "last_run_errors": _worker_status.last_run_errors,
        "tick_seconds": get_settings().worker_tick_seconds,
        "retry_stats": retry_manager.get_retry_stats(),
    }


async def get_department_sync_status(department_id: int) -> dict[str, Any] | None:
    department = await departments_repo.get_department(department_id)
    if not department:
        return None
    state = retry_manager.get_state(retry_key(department_id))
    return {
        "department_id": department_id,
        "active": department.get("active"),
        "sync_enabled": department.get("sync_enabled"),
        "sync_interval": department.get("sync_interval"),
        "last_sync": department.get("last_sync"),
        "next_sync": next_sync_at(department),
        "ticket_count": await tickets_repo.count_tickets(department_id=department_id),
        "circuit_open": bool(state and state.blocked),
    }


async def test_imap_connection(department: Mapping[str, Any]) -> bool:
    if not _has_imap_credentials(department):
        return False
    connected = await verify_connection(mailbox_settings_for(department))
    if connected:
        # A successful manual probe closes the circuit.
        retry_manager.reset_retry_state(retry_key(int(department["id"])))
    return connected


async def test_smtp_connection(department: Mapping[str, Any]) -> bool:
    if not _has_smtp_credentials(department):
        return False
    return await MailSender(sender_settings_for(department)).verify()
