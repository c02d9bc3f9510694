from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from helpdesk.core.database import db

_BOOLEAN_FIELDS = {"active", "sync_enabled", "imap_secure", "smtp_secure", "auto_reply_enabled"}
_INTEGER_FIELDS = {"id", "sync_interval", "imap_port", "smtp_port"}
_UPDATABLE_FIELDS = {
    "name",
    "description",
    "active",
    "sync_enabled",
    "sync_interval",
    "imap_host",
    "imap_port",
    "imap_user",
    "imap_password_encrypted",
    "imap_secure",
    "imap_folder",
    "smtp_host",
    "smtp_port",
    "smtp_user",
    "smtp_password_encrypted",
    "smtp_secure",
    "auto_reply_enabled",
    "ticket_prefix",
    "group_name",
    "last_sync",
}


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


def _normalise_department(row: dict[str, Any]) -> dict[str, Any]:
    department = dict(row)
    for key in _INTEGER_FIELDS:
        if key in department and department[key] is not None:
            department[key] = int(department[key])
    for key in _BOOLEAN_FIELDS:
        if key in department:
            department[key] = bool(int(department[key] or 0))
    for key in ("last_sync", "created_at", "updated_at"):
        if key in department:
            department[key] = _make_aware(department.get(key))
    return department


def _db_value(key: str, value: Any) -> Any:
    if key in _BOOLEAN_FIELDS:
        return 1 if value else 0
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)
    return value


async def list_departments() -> list[dict[str, Any]]:
    rows = await db.fetch_all("SELECT * FROM helpdesk_departments ORDER BY name ASC, id ASC")
    return [_normalise_department(row) for row in rows]


async def get_department(department_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_departments WHERE id = %s",
        (department_id,),
    )
    return _normalise_department(row) if row else None


async def create_department(**fields: Any) -> dict[str, Any]:
    columns = [key for key in fields if key in _UPDATABLE_FIELDS]
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    values = [_db_value(key, fields[key]) for key in columns]
    columns.extend(["created_at", "updated_at"])
    values.extend([now, now])
    placeholders = ", ".join(["%s"] * len(columns))
    department_id = await db.execute_returning_lastrowid(
        f"INSERT INTO helpdesk_departments ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(values),
    )
    created = await get_department(int(department_id)) if department_id else None
    return created or {}


async def update_department(department_id: int, **fields: Any) -> dict[str, Any] | None:
    assignments: list[str] = []
    params: list[Any] = []
    for key, value in fields.items():
        if key not in _UPDATABLE_FIELDS:
            continue
        assignments.append(f"{key} = %s")
        params.append(_db_value(key, value))
    if not assignments:
        return await get_department(department_id)
    assignments.append("updated_at = %s")
    params.append(datetime.now(timezone.utc).replace(tzinfo=None))
    params.append(department_id)
    await db.execute(
        f"UPDATE helpdesk_departments SET {', '.join(assignments)} WHERE id = %s",
        tuple(params),
    )
    return await get_department(department_id)


async def update_last_sync(department_id: int, synced_at: datetime) -> None:
    await db.execute(
        "UPDATE helpdesk_departments SET last_sync = %s WHERE id = %s",
        (_db_value("last_sync", synced_at), department_id),
    )


async def delete_department(department_id: int) -> None:
    await db.execute("DELETE FROM helpdesk_departments WHERE id = %s", (department_id,))
