from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from helpdesk.core.database import db

_UPDATABLE_FIELDS = {"name", "email", "phone", "customer_type", "status", "notes"}


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


def _normalise_customer(row: dict[str, Any]) -> dict[str, Any]:
    customer = dict(row)
    if customer.get("id") is not None:
        customer["id"] = int(customer["id"])
    for key in ("created_at", "updated_at"):
        if key in customer:
            customer[key] = _make_aware(customer.get(key))
    return customer


async def get_customer(customer_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one("SELECT * FROM customers WHERE id = %s", (customer_id,))
    return _normalise_customer(row) if row else None


async def get_customer_by_email(email: str) -> dict[str, Any] | None:
    # Lowest id wins when the same address was stored on several records.
    row = await db.fetch_one(
        "SELECT * FROM customers WHERE LOWER(email) = %s ORDER BY id ASC LIMIT 1",
        (email.lower(),),
    )
    return _normalise_customer(row) if row else None


async def find_by_phone_fragment(digits: str) -> dict[str, Any] | None:
    row = await db.fetch_one(
        "SELECT * FROM customers WHERE phone LIKE %s ORDER BY id ASC LIMIT 1",
        (f"%{digits}%",),
    )
    return _normalise_customer(row) if row else None


async def search_by_name(name: str, *, limit: int = 10) -> list[dict[str, Any]]:
    rows = await db.fetch_all(
        """
        SELECT *
        FROM customers
        WHERE LOWER(name) LIKE %s
        ORDER BY id ASC
        LIMIT %s
        """,
        (f"%{name.lower()}%", limit),
    )
    return [_normalise_customer(row) for row in rows]


async def create_customer(
    *,
    name: str,
    email: str | None,
    phone: str | None,
    customer_type: str = "individual",
    status: str = "LEAD",
    notes: str | None = None,
) -> dict[str, Any]:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    customer_id = await db.execute_returning_lastrowid(
        """
        INSERT INTO customers (name, email, phone, customer_type, status, notes, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (name, email, phone, customer_type, status, notes, now, now),
    )
    created = await get_customer(int(customer_id)) if customer_id else None
    return created or {}


async def update_customer(customer_id: int, **fields: Any) -> dict[str, Any] | None:
    assignments: list[str] = []
    params: list[Any] = []
    for key, value in fields.items():
        if key not in _UPDATABLE_FIELDS:
            continue
        assignments.append(f"{key} = %s")
        params.append(value)
    if not assignments:
        return await get_customer(customer_id)
    assignments.append("updated_at = %s")
    params.append(datetime.now(timezone.utc).replace(tzinfo=None))
    params.append(customer_id)
    await db.execute(
        f"UPDATE customers SET {', '.join(assignments)} WHERE id = %s",
        tuple(params),
    )
    return await get_customer(customer_id)


async def count_customers() -> int:
    row = await db.fetch_one("SELECT COUNT(*) AS total FROM customers")
    return int(row["total"]) if row else 0
