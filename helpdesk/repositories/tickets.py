from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import aiomysql
import aiosqlite

from helpdesk.core.database import Transaction, db

_TICKET_UPDATABLE_FIELDS = {
    "subject",
    "description",
    "status",
    "priority",
    "requester_name",
    "requester_email",
    "requester_phone",
    "responsible_id",
    "responsible_name",
    "customer_id",
    "department_id",
    "closed_at",
}

_TICKET_SELECT = """
    SELECT t.*, d.name AS department_name, c.name AS customer_name
    FROM helpdesk_tickets AS t
    LEFT JOIN helpdesk_departments AS d ON d.id = t.department_id
    LEFT JOIN customers AS c ON c.id = t.customer_id
"""


def _make_aware(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return None


def _db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalise_ticket(row: dict[str, Any]) -> dict[str, Any]:
    ticket = dict(row)
    for key in ("id", "number", "department_id", "responsible_id", "customer_id"):
        if key in ticket and ticket[key] is not None:
            ticket[key] = int(ticket[key])
    for key in ("closed_at", "created_at", "updated_at"):
        if key in ticket:
            ticket[key] = _make_aware(ticket.get(key))
    return ticket


def _normalise_message(row: dict[str, Any]) -> dict[str, Any]:
    message = dict(row)
    for key in ("id", "ticket_id", "author_id"):
        if key in message and message[key] is not None:
            message[key] = int(message[key])
    for key in ("created_at", "edited_at"):
        if key in message:
            message[key] = _make_aware(message.get(key))
    return message


def is_duplicate_source_error(exc: BaseException) -> bool:
    """Return True when an insert hit the (department, source message) unique key."""
    message = str(exc)
    if isinstance(exc, aiosqlite.IntegrityError):
        return "UNIQUE" in message.upper() and "email_message_id" in message
    if isinstance(exc, aiomysql.IntegrityError):
        return bool(exc.args) and exc.args[0] == 1062 and "uq_helpdesk_ticket_source" in message
    return False


async def get_ticket(ticket_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one(f"{_TICKET_SELECT} WHERE t.id = %s", (ticket_id,))
    return _normalise_ticket(row) if row else None


async def get_ticket_by_source(department_id: int, email_message_id: str) -> dict[str, Any] | None:
    row = await db.fetch_one(
        f"{_TICKET_SELECT} WHERE t.department_id = %s AND t.email_message_id = %s",
        (department_id, email_message_id),
    )
    return _normalise_ticket(row) if row else None


async def get_max_number(prefix: str, *, connection: Transaction | None = None) -> int:
    executor = connection or db
    row = await executor.fetch_one(
        "SELECT MAX(number) AS max_number FROM helpdesk_tickets WHERE number_prefix = %s",
        (prefix,),
    )
    if not row or row.get("max_number") is None:
        return 0
    return int(row["max_number"])


async def insert_ticket(
    *,
    connection: Transaction | None = None,
    number: int,
    number_prefix: str,
    ticket_number: str,
    department_id: int,
    subject: str,
    description: str | None,
    status: str,
    priority: str,
    requester_name: str | None,
    requester_email: str | None,
    requester_phone: str | None = None,
    customer_id: int | None = None,
    email_message_id: str | None = None,
    email_uid: str | None = None,
    created_at: datetime | None = None,
) -> int:
    executor = connection or db
    timestamp = _db_datetime(created_at) or _utcnow()
    return await executor.execute_returning_lastrowid(
        """
        INSERT INTO helpdesk_tickets (
            number,
            number_prefix,
            ticket_number,
            department_id,
            subject,
            description,
            status,
            priority,
            requester_name,
            requester_email,
            requester_phone,
            customer_id,
            email_message_id,
            email_uid,
            created_at,
            updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            number,
            number_prefix,
            ticket_number,
            department_id,
            subject,
            description,
            status,
            priority,
            requester_name,
            requester_email,
            requester_phone,
            customer_id,
            email_message_id,
            email_uid,
            timestamp,
            timestamp,
        ),
    )


async def update_ticket(ticket_id: int, **fields: Any) -> dict[str, Any] | None:
    assignments: list[str] = []
    params: list[Any] = []
    for key, value in fields.items():
        if key not in _TICKET_UPDATABLE_FIELDS:
            continue
        assignments.append(f"{key} = %s")
        params.append(_db_datetime(value) if isinstance(value, datetime) else value)
    if not assignments:
        return await get_ticket(ticket_id)
    assignments.append("updated_at = %s")
    params.append(_utcnow())
    params.append(ticket_id)
    await db.execute(
        f"UPDATE helpdesk_tickets SET {', '.join(assignments)} WHERE id = %s",
        tuple(params),
    )
    return await get_ticket(ticket_id)


async def count_tickets(
    *,
    department_id: int | None = None,
    customer_id: int | None = None,
    has_customer: bool | None = None,
) -> int:
    clauses: list[str] = []
    params: list[Any] = []
    if department_id is not None:
        clauses.append("department_id = %s")
        params.append(department_id)
    if customer_id is not None:
        clauses.append("customer_id = %s")
        params.append(customer_id)
    if has_customer is True:
        clauses.append("customer_id IS NOT NULL")
    elif has_customer is False:
        clauses.append("customer_id IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    row = await db.fetch_one(f"SELECT COUNT(*) AS total FROM helpdesk_tickets {where}", tuple(params))
    return int(row["total"]) if row else 0


async def count_customers_with_tickets() -> int:
    row = await db.fetch_one(
        "SELECT COUNT(DISTINCT customer_id) AS total FROM helpdesk_tickets WHERE customer_id IS NOT NULL"
    )
    return int(row["total"]) if row else 0


async def count_by_status_for_customer(customer_id: int) -> dict[str, int]:
    rows = await db.fetch_all(
        """
        SELECT status, COUNT(*) AS total
        FROM helpdesk_tickets
        WHERE customer_id = %s
        GROUP BY status
        """,
        (customer_id,),
    )
    return {str(row["status"]): int(row["total"]) for row in rows}


async def list_customer_tickets(customer_id: int) -> list[dict[str, Any]]:
    rows = await db.fetch_all(
        f"{_TICKET_SELECT} WHERE t.customer_id = %s ORDER BY t.created_at DESC, t.id DESC",
        (customer_id,),
    )
    return [_normalise_ticket(row) for row in rows]


async def list_unassociated_tickets(*, after_id: int = 0, limit: int = 50) -> list[dict[str, Any]]:
    rows = await db.fetch_all(
        f"""
        {_TICKET_SELECT}
        WHERE t.customer_id IS NULL
          AND t.requester_email IS NOT NULL
          AND t.id > %s
        ORDER BY t.id ASC
        LIMIT %s
        """,
        (after_id, limit),
    )
    return [_normalise_ticket(row) for row in rows]


async def get_latest_ticket_for_customer(customer_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one(
        f"{_TICKET_SELECT} WHERE t.customer_id = %s ORDER BY t.created_at DESC, t.id DESC LIMIT 1",
        (customer_id,),
    )
    return _normalise_ticket(row) if row else None


async def insert_message(
    *,
    connection: Transaction | None = None,
    ticket_id: int,
    content: str,
    content_type: str,
    visibility: str,
    sender_name: str | None,
    sender_email: str | None,
    author_id: int | None = None,
    email_message_id: str | None = None,
    created_at: datetime | None = None,
) -> int:
    executor = connection or db
    return await executor.execute_returning_lastrowid(
        """
        INSERT INTO helpdesk_messages (
            ticket_id,
            content,
            content_type,
            visibility,
            sender_name,
            sender_email,
            author_id,
            email_message_id,
            created_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            ticket_id,
            content,
            content_type,
            visibility,
            sender_name,
            sender_email,
            author_id,
            email_message_id,
            _db_datetime(created_at) or _utcnow(),
        ),
    )


async def get_message(message_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one("SELECT * FROM helpdesk_messages WHERE id = %s", (message_id,))
    return _normalise_message(row) if row else None


async def list_messages(ticket_id: int) -> list[dict[str, Any]]:
    rows = await db.fetch_all(
        "SELECT * FROM helpdesk_messages WHERE ticket_id = %s ORDER BY created_at ASC, id ASC",
        (ticket_id,),
    )
    return [_normalise_message(row) for row in rows]
