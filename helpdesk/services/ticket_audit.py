"""Append-only audit trail for helpdesk tickets.

Writers never raise: a failed insert is logged and dropped so that the ticket
mutation which triggered it is unaffected. Callers that should not wait for the
write at all hand the coroutine to :func:`dispatch`.
"""
from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Mapping

from helpdesk.core.config import get_settings
from helpdesk.core.logging import log_audit_event, log_error
from helpdesk.repositories import ticket_logs as ticket_logs_repo
from helpdesk.schemas.logs import TicketLogType
from helpdesk.schemas.tickets import CLOSED_STATUSES, PRIORITY_LABELS, STATUS_LABELS

_UNASSIGNED = "Unassigned"
_PREVIEW_LENGTH = 100
MAX_PAGE_SIZE = 100

_WATCHED_FIELDS: tuple[tuple[str, str, TicketLogType], ...] = (
    ("status", "Status", TicketLogType.STATUS_CHANGED),
    ("priority", "Priority", TicketLogType.PRIORITY_CHANGED),
    ("owner", "Owner", TicketLogType.OWNER_CHANGED),
    ("subject", "Subject", TicketLogType.SUBJECT_CHANGED),
    ("description", "Description", TicketLogType.DESCRIPTION_CHANGED),
)

_pending: set[asyncio.Task[Any]] = set()


@dataclass(frozen=True)
class AuditContext:
    author_name: str
    author_email: str
    author_id: int | None = None


@dataclass(frozen=True)
class FieldChange:
    field: str
    label: str
    log_type: TicketLogType
    old_value: str
    new_value: str


def get_audit_context(
    name: str | None = None,
    email: str | None = None,
    author_id: int | None = None,
) -> AuditContext:
    settings = get_settings()
    return AuditContext(
        author_name=(name or "").strip() or settings.audit_system_name,
        author_email=(email or "").strip() or settings.audit_system_email,
        author_id=author_id,
    )


def format_value_for_display(field: str, value: Any) -> str:
    if value is None or value == "":
        return "Not set"
    text = value.value if hasattr(value, "value") else str(value)
    if field == "status":
        return STATUS_LABELS.get(text, text)
    if field == "priority":
        return PRIORITY_LABELS.get(text, text)
    return text


def _field_value(data: Mapping[str, Any], field: str) -> str:
    if field == "owner":
        return str(data.get("responsible_name") or _UNASSIGNED)
    value = data.get(field)
    if value is None:
        return ""
    return value.value if hasattr(value, "value") else str(value)


def detect_changes(old: Mapping[str, Any], new: Mapping[str, Any]) -> list[FieldChange]:
    """Diff the watched fields.

    The owner changes when its id changes, and is logged by display name.
    """
    changes: list[FieldChange] = []
    for field, label, log_type in _WATCHED_FIELDS:
        if field == "owner":
            if "responsible_name" not in new and "responsible_id" not in new:
                continue
            merged = {**old, **new}
            before = _field_value(old, field)
            after = _field_value(merged, field)
            if before != after or old.get("responsible_id") != merged.get("responsible_id"):
                changes.append(FieldChange(field, label, log_type, before, after))
            continue
        if field not in new:
            continue
        before = _field_value(old, field)
        after = _field_value(new, field)
        if before != after:
            changes.append(FieldChange(field, label, log_type, before, after))
    return changes


def lifecycle_event(old_status: Any, new_status: Any) -> TicketLogType | None:
    """Return CLOSURE or REOPENING when a status change crosses the closed boundary."""
    before = old_status.value if hasattr(old_status, "value") else old_status
    after = new_status.value if hasattr(new_status, "value") else new_status
    was_closed = before in CLOSED_STATUSES
    is_closed = after in CLOSED_STATUSES
    if is_closed and not was_closed:
        return TicketLogType.CLOSURE
    if was_closed and not is_closed:
        return TicketLogType.REOPENING
    return None


async def _write(
    ticket_id: int,
    log_type: TicketLogType,
    description: str,
    context: AuditContext | None,
    *,
    previous_value: Any = None,
    new_value: Any = None,
) -> bool:
    author = context or get_audit_context()
    try:
        await ticket_logs_repo.create_log(
            ticket_id=ticket_id,
            log_type=log_type.value,
            description=description,
            previous_value=previous_value,
            new_value=new_value,
            author_name=author.author_name,
            author_email=author.author_email,
            author_id=author.author_id,
        )
    except Exception as exc:
        log_error(
            "Failed to write ticket audit entry",
            ticket_id=ticket_id,
            log_type=log_type.value,
            error=str(exc),
        )
        return False
    log_audit_event(
        "TICKET AUDIT",
        log_type.value.lower(),
        ticket_id=ticket_id,
        author_email=author.author_email,
    )
    return True


async def log_ticket_creation(
    ticket_id: int,
    data: Mapping[str, Any],
    context: AuditContext | None = None,
) -> None:
    snapshot = {
        "subject": data.get("subject"),
        "priority": _field_value(data, "priority"),
        "status": _field_value(data, "status"),
        "requester": {
            "name": data.get("requester_name"),
            "email": data.get("requester_email"),
        },
    }
    await _write(
        ticket_id,
        TicketLogType.CREATION,
        f'Ticket created with subject "{data.get("subject") or ""}"',
        context,
        new_value=json.dumps(snapshot, ensure_ascii=False),
    )


async def log_ticket_update(
    ticket_id: int,
    old_data: Mapping[str, Any],
    new_data: Mapping[str, Any],
    context: AuditContext | None = None,
) -> int:
    """Write one entry per changed watched field and return how many were stored."""
    written = 0
    for change in detect_changes(old_data, new_data):
        before = format_value_for_display(change.field, change.old_value or None)
        after = format_value_for_display(change.field, change.new_value or None)
        stored = await _write(
            ticket_id,
            change.log_type,
            f'{change.label} changed from "{before}" to "{after}"',
            context,
            previous_value=change.old_value,
            new_value=change.new_value,
        )
        if stored:
            written += 1
    return written


async def log_message_added(
    ticket_id: int,
    message: Mapping[str, Any],
    context: AuditContext | None = None,
) -> None:
    internal = str(message.get("visibility") or "").upper() == "INTERNAL"
    content = str(message.get("content") or "")
    preview = content[:_PREVIEW_LENGTH] + ("..." if len(content) > _PREVIEW_LENGTH else "")
    sender = message.get("sender_name") or (context.author_name if context else None)
    description = f"Message added by {sender or 'unknown sender'}"
    if internal:
        description += " (internal)"
    await _write(
        ticket_id,
        TicketLogType.MESSAGE_ADDED,
        description,
        context,
        new_value=json.dumps(
            {
                "sender": sender,
                "email": message.get("sender_email"),
                "internal": internal,
                "preview": preview,
            },
            ensure_ascii=False,
        ),
    )


async def log_ticket_closure(ticket_id: int, context: AuditContext | None = None) -> None:
    await _write(
        ticket_id,
        TicketLogType.CLOSURE,
        "Ticket closed",
        context,
        new_value=datetime.now(timezone.utc).isoformat(),
    )


async def log_ticket_reopening(ticket_id: int, context: AuditContext | None = None) -> None:
    await _write(ticket_id, TicketLogType.REOPENING, "Ticket reopened", context)


async def log_manual_entry(
    ticket_id: int,
    log_type: TicketLogType,
    description: str,
    context: AuditContext,
    *,
    previous_value: str | None = None,
    new_value: str | None = None,
) -> bool:
    return await _write(
        ticket_id,
        log_type,
        description,
        context,
        previous_value=previous_value,
        new_value=new_value,
    )


async def record_manual_log(
    ticket_id: int,
    log_type: TicketLogType,
    description: str,
    context: AuditContext,
    *,
    previous_value: str | None = None,
    new_value: str | None = None,
) -> dict[str, Any]:
    """Store an entry submitted by a user.

    Unlike the lifecycle writers this one raises on failure, because the entry
    itself is what the caller asked for.
    """
    log_id = await ticket_logs_repo.create_log(
        ticket_id=ticket_id,
        log_type=log_type.value,
        description=description,
        previous_value=previous_value,
        new_value=new_value,
        author_name=context.author_name,
        author_email=context.author_email,
        author_id=context.author_id,
    )
    log_audit_event(
        "TICKET AUDIT",
        "manual_entry",
        ticket_id=ticket_id,
        author_email=context.author_email,
        log_type=log_type.value,
    )
    record = await ticket_logs_repo.get_log(int(log_id))
    if not record:
        raise LookupError("Log entry could not be reloaded")
    return record


async def list_ticket_logs(
    ticket_id: int,
    *,
    page: int = 1,
    limit: int = 50,
    log_type: TicketLogType | None = None,
) -> dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    type_value = log_type.value if log_type else None
    total = await ticket_logs_repo.count_logs(ticket_id, log_type=type_value)
    logs = await ticket_logs_repo.list_logs(
        ticket_id,
        log_type=type_value,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "logs": logs,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def _handle_completion(task: asyncio.Task[Any]) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log_error("Background audit write failed", error=str(exc))


def dispatch(write: Awaitable[Any]) -> asyncio.Task[Any]:
    """Run an audit write detached from the caller's error path."""
    task = asyncio.ensure_future(write)
    _pending.add(task)
    task.add_done_callback(_handle_completion)
    return task


async def wait_for_pending() -> None:
    """Wait for detached audit writes, used at shutdown."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
