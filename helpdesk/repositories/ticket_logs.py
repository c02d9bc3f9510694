from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from helpdesk.core.database import db


def _serialise(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _normalise(row: dict[str, Any]) -> dict[str, Any]:
    log = dict(row)
    for key in ("id", "ticket_id", "author_id"):
        if key in log and log[key] is not None:
            log[key] = int(log[key])
    created_at = log.get("created_at")
    if isinstance(created_at, str):
        try:
            created_at = datetime.fromisoformat(created_at)
        except ValueError:
            created_at = None
    if isinstance(created_at, datetime) and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    log["created_at"] = created_at
    return log


async def create_log(
    *,
    ticket_id: int,
    log_type: str,
    description: str,
    previous_value: Any = None,
    new_value: Any = None,
    author_name: str,
    author_email: str,
    author_id: int | None = None,
) -> int:
    return await db.execute_returning_lastrowid(
        """
        INSERT INTO helpdesk_ticket_logs (
            ticket_id, log_type, description, previous_value, new_value,
            author_name, author_email, author_id, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            ticket_id,
            log_type,
            description,
            _serialise(previous_value),
            _serialise(new_value),
            author_name,
            author_email,
            author_id,
            datetime.now(timezone.utc).replace(tzinfo=None),
        ),
    )


async def get_log(log_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one("SELECT * FROM helpdesk_ticket_logs WHERE id = %s", (log_id,))
    return _normalise(row) if row else None


async def list_logs(
    ticket_id: int,
    *,
    log_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    clauses = ["ticket_id = %s"]
    params: list[Any] = [ticket_id]
    if log_type:
        clauses.append("log_type = %s")
        params.append(log_type)
    params.extend([limit, offset])
    rows = await db.fetch_all(
        f"""
        SELECT *
        FROM helpdesk_ticket_logs
        WHERE {' AND '.join(clauses)}
        ORDER BY created_at DESC, id DESC
        LIMIT %s OFFSET %s
        """,
        tuple(params),
    )
    return [_normalise(row) for row in rows]


async def count_logs(ticket_id: int, *, log_type: str | None = None) -> int:
    clauses = ["ticket_id = %s"]
    params: list[Any] = [ticket_id]
    if log_type:
        clauses.append("log_type = %s")
        params.append(log_type)
    row = await db.fetch_one(
        f"SELECT COUNT(*) AS total FROM helpdesk_ticket_logs WHERE {' AND '.join(clauses)}",
        tuple(params),
    )
    return int(row["total"]) if row else 0
