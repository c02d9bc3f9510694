from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from helpdesk.core.database import db
from helpdesk.core.logging import log_info
from helpdesk.repositories import departments as departments_repo
from helpdesk.repositories import tickets as tickets_repo
from helpdesk.schemas.logs import TicketLogType
from helpdesk.schemas.tickets import (
    CLOSED_STATUSES,
    MessageContentType,
    MessageVisibility,
    TicketPriority,
    TicketStatus,
)
from helpdesk.services import ticket_audit
from helpdesk.services.ticket_audit import AuditContext

DEFAULT_TICKET_PREFIX = "HD"
_NUMBER_LOCK_TIMEOUT = 10
_UPDATABLE_FIELDS = {
    "subject",
    "description",
    "status",
    "priority",
    "responsible_id",
    "responsible_name",
}


class TicketErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CLOSED = "closed"
    INVALID_STATUS = "invalid_status"
    INVALID_PRIORITY = "invalid_priority"
    INVALID_FIELD = "invalid_field"
    DEPARTMENT_NOT_FOUND = "department_not_found"
    DUPLICATE = "duplicate"
    NUMBER_ALLOCATION = "number_allocation"


class TicketError(Exception):
    def __init__(self, kind: TicketErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


def resolve_prefix(department: Mapping[str, Any]) -> str:
    prefix = str(department.get("ticket_prefix") or "").strip().upper()
    return prefix or DEFAULT_TICKET_PREFIX


def format_ticket_number(prefix: str, number: int) -> str:
    return f"{prefix}-{number:06d}"


def _coerce_status(value: Any) -> str:
    try:
        return TicketStatus(value.value if isinstance(value, Enum) else str(value).upper()).value
    except ValueError as exc:
        raise TicketError(TicketErrorKind.INVALID_STATUS, f"Invalid status: {value}") from exc


def _coerce_priority(value: Any) -> str:
    try:
        return TicketPriority(value.value if isinstance(value, Enum) else str(value).upper()).value
    except ValueError as exc:
        raise TicketError(TicketErrorKind.INVALID_PRIORITY, f"Invalid priority: {value}") from exc


async def get_ticket(ticket_id: int) -> dict[str, Any] | None:
    return await tickets_repo.get_ticket(ticket_id)


async def _require_ticket(ticket_id: int) -> dict[str, Any]:
    ticket = await tickets_repo.get_ticket(ticket_id)
    if not ticket:
        raise TicketError(TicketErrorKind.NOT_FOUND, "Ticket not found")
    return ticket


async def list_messages(ticket_id: int) -> list[dict[str, Any]]:
    await _require_ticket(ticket_id)
    return await tickets_repo.list_messages(ticket_id)


async def create_ticket(
    *,
    department: Mapping[str, Any],
    subject: str,
    description: str | None,
    priority: TicketPriority | str = TicketPriority.MEDIUM,
    requester_name: str | None,
    requester_email: str | None,
    requester_phone: str | None = None,
    customer_id: int | None = None,
    email_message_id: str | None = None,
    email_uid: str | None = None,
    first_message: Mapping[str, Any] | None = None,
    received_at: datetime | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Create an OPEN ticket and, optionally, its first message.

    The next number for the department's prefix is read and inserted while a
    named lock for that prefix is held, and the ticket and message rows commit
    together. A second ticket for the same source message raises
    ``TicketError(DUPLICATE)``.
    """
    department_id = int(department["id"])
    prefix = resolve_prefix(department)
    priority_value = _coerce_priority(priority)

    async with db.acquire_lock(
        f"helpdesk_ticket_number_{prefix}", timeout=_NUMBER_LOCK_TIMEOUT
    ) as acquired:
        if not acquired:
            raise TicketError(
                TicketErrorKind.NUMBER_ALLOCATION,
                f"Unable to reserve a ticket number for prefix {prefix}",
            )
        try:
            async with db.transaction() as tx:
                number = await tickets_repo.get_max_number(prefix, connection=tx) + 1
                ticket_id = await tickets_repo.insert_ticket(
                    connection=tx,
                    number=number,
                    number_prefix=prefix,
                    ticket_number=format_ticket_number(prefix, number),
                    department_id=department_id,
                    subject=subject,
                    description=description,
                    status=TicketStatus.OPEN.value,
                    priority=priority_value,
                    requester_name=requester_name,
                    requester_email=requester_email,
                    requester_phone=requester_phone,
                    customer_id=customer_id,
                    email_message_id=email_message_id,
                    email_uid=email_uid,
                    created_at=received_at,
                )
                if first_message is not None:
                    await tickets_repo.insert_message(
                        connection=tx,
                        ticket_id=ticket_id,
                        content=str(first_message.get("content") or ""),
                        content_type=str(
                            first_message.get("content_type") or MessageContentType.TEXT.value
                        ),
                        visibility=MessageVisibility.PUBLIC.value,
                        sender_name=first_message.get("sender_name"),
                        sender_email=first_message.get("sender_email"),
                        email_message_id=email_message_id,
                        created_at=received_at,
                    )
        except Exception as exc:
            if email_message_id and tickets_repo.is_duplicate_source_error(exc):
                raise TicketError(
                    TicketErrorKind.DUPLICATE,
                    f"A ticket already exists for message {email_message_id}",
                ) from exc
            raise

    ticket = await tickets_repo.get_ticket(ticket_id)
    if not ticket:
        raise TicketError(TicketErrorKind.NOT_FOUND, "Ticket could not be reloaded after creation")
    log_info(
        "Helpdesk ticket created",
        ticket_id=ticket_id,
        ticket_number=ticket.get("ticket_number"),
        department_id=department_id,
    )
    ticket_audit.dispatch(ticket_audit.log_ticket_creation(ticket_id, ticket, context))
    return ticket


async def update_ticket(
    ticket_id: int,
    changes: Mapping[str, Any],
    context: AuditContext | None = None,
) -> dict[str, Any]:
    existing = await _require_ticket(ticket_id)
    updates: dict[str, Any] = {
        key: value for key, value in changes.items() if key in _UPDATABLE_FIELDS
    }
    if "subject" in updates and updates["subject"] is None:
        updates.pop("subject")
    if "status" in updates:
        if updates["status"] is None:
            updates.pop("status")
        else:
            updates["status"] = _coerce_status(updates["status"])
    if "priority" in updates:
        if updates["priority"] is None:
            updates.pop("priority")
        else:
            updates["priority"] = _coerce_priority(updates["priority"])
    if "responsible_id" in updates:
        responsible_id = updates["responsible_id"]
        if responsible_id is None:
            updates["responsible_name"] = None
        elif responsible_id == existing.get("responsible_id"):
            if not updates.get("responsible_name"):
                updates.pop("responsible_name", None)
        elif not (updates.get("responsible_name") or "").strip():
            raise TicketError(
                TicketErrorKind.INVALID_FIELD,
                "responsible_name is required when assigning a responsible",
            )

    if "status" in updates:
        was_closed = existing.get("status") in CLOSED_STATUSES
        is_closed = updates["status"] in CLOSED_STATUSES
        if is_closed and not was_closed:
            updates["closed_at"] = datetime.now(timezone.utc)
        elif was_closed and not is_closed:
            updates["closed_at"] = None

    if not updates:
        return existing

    updated = await tickets_repo.update_ticket(ticket_id, **updates)
    if not updated:
        raise TicketError(TicketErrorKind.NOT_FOUND, "Ticket not found")

    ticket_audit.dispatch(ticket_audit.log_ticket_update(ticket_id, existing, updates, context))
    event = ticket_audit.lifecycle_event(existing.get("status"), updated.get("status"))
    if event is TicketLogType.CLOSURE:
        ticket_audit.dispatch(ticket_audit.log_ticket_closure(ticket_id, context))
    elif event is TicketLogType.REOPENING:
        ticket_audit.dispatch(ticket_audit.log_ticket_reopening(ticket_id, context))
    return updated


async def add_message(
    ticket_id: int,
    *,
    content: str,
    content_type: MessageContentType | str = MessageContentType.TEXT,
    visibility: MessageVisibility | str = MessageVisibility.PUBLIC,
    sender_name: str | None = None,
    sender_email: str | None = None,
    author_id: int | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    ticket = await _require_ticket(ticket_id)
    visibility_value = MessageVisibility(visibility).value
    if (
        visibility_value == MessageVisibility.PUBLIC.value
        and ticket.get("status") == TicketStatus.CLOSED.value
    ):
        raise TicketError(TicketErrorKind.CLOSED, "Closed tickets do not accept public messages")

    message_id = await tickets_repo.insert_message(
        ticket_id=ticket_id,
        content=content,
        content_type=MessageContentType(content_type).value,
        visibility=visibility_value,
        sender_name=sender_name or (context.author_name if context else None),
        sender_email=sender_email or (context.author_email if context else None),
        author_id=author_id if author_id is not None else (context.author_id if context else None),
    )
    message = await tickets_repo.get_message(message_id)
    if not message:
        raise TicketError(TicketErrorKind.NOT_FOUND, "Message could not be reloaded")
    ticket_audit.dispatch(ticket_audit.log_message_added(ticket_id, message, context))
    return message


async def forward_ticket(
    ticket_id: int,
    department_id: int,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Move a ticket to another department; the only way its department changes."""
    ticket = await _require_ticket(ticket_id)
    target = await departments_repo.get_department(department_id)
    if not target:
        raise TicketError(TicketErrorKind.DEPARTMENT_NOT_FOUND, "Department not found")
    if ticket.get("department_id") == department_id:
        return ticket

    updated = await tickets_repo.update_ticket(ticket_id, department_id=department_id)
    if not updated:
        raise TicketError(TicketErrorKind.NOT_FOUND, "Ticket not found")
    previous_name = ticket.get("department_name") or f"Department {ticket.get('department_id')}"
    new_name = target.get("name") or f"Department {department_id}"
    ticket_audit.dispatch(
        ticket_audit.log_manual_entry(
            ticket_id,
            TicketLogType.OWNER_CHANGED,
            f'Ticket forwarded from "{previous_name}" to "{new_name}"',
            context or ticket_audit.get_audit_context(),
            previous_value=previous_name,
            new_value=new_name,
        )
    )
    return updated
