from __future__ import annotations

from typing import Any, Mapping

from helpdesk.core.logging import log_info
from helpdesk.repositories import departments as departments_repo
from helpdesk.repositories import tickets as tickets_repo
from helpdesk.security.encryption import encrypt_secret
from helpdesk.services import email_sync
from helpdesk.services.retry import retry_manager

_PASSWORD_FIELDS = {
    "imap_password": "imap_password_encrypted",
    "smtp_password": "smtp_password_encrypted",
}


def _redact(department: Mapping[str, Any]) -> dict[str, Any]:
    redacted = dict(department)
    redacted["has_imap_password"] = bool(redacted.pop("imap_password_encrypted", None))
    redacted["has_smtp_password"] = bool(redacted.pop("smtp_password_encrypted", None))
    return redacted


def _prepare(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(payload)
    for plain_key, stored_key in _PASSWORD_FIELDS.items():
        if plain_key not in data:
            continue
        secret = data.pop(plain_key)
        if secret:
            data[stored_key] = encrypt_secret(str(secret))
    if "ticket_prefix" in data:
        prefix = str(data["ticket_prefix"] or "").strip().upper()
        data["ticket_prefix"] = prefix or None
    if "name" in data and data["name"] is not None:
        name = str(data["name"]).strip()
        if not name:
            raise ValueError("Department name is required")
        data["name"] = name
    return data


async def list_departments() -> list[dict[str, Any]]:
    departments = await departments_repo.list_departments()
    return [_redact(department) for department in departments]


async def get_department(department_id: int, *, redact: bool = True) -> dict[str, Any] | None:
    department = await departments_repo.get_department(department_id)
    if not department:
        return None
    return _redact(department) if redact else department


async def create_department(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = _prepare(payload)
    if not data.get("name"):
        raise ValueError("Department name is required")
    department = await departments_repo.create_department(**data)
    log_info("Helpdesk department created", department_id=department.get("id"))
    return _redact(department)


async def update_department(department_id: int, payload: Mapping[str, Any]) -> dict[str, Any]:
    existing = await departments_repo.get_department(department_id)
    if not existing:
        raise LookupError("Department not found")
    data = _prepare(payload)
    department = await departments_repo.update_department(department_id, **data)
    if not department:
        raise LookupError("Department not found")
    if any(key.startswith("imap_") for key in data):
        # New mailbox settings deserve a fresh set of retries.
        retry_manager.clear_retry_state(email_sync.retry_key(department_id))
    log_info("Helpdesk department updated", department_id=department_id)
    return _redact(department)


async def delete_department(department_id: int) -> None:
    existing = await departments_repo.get_department(department_id)
    if not existing:
        raise LookupError("Department not found")
    if await tickets_repo.count_tickets(department_id=department_id):
        raise ValueError("Department still owns tickets; forward them before deleting it")
    await departments_repo.delete_department(department_id)
    retry_manager.clear_retry_state(email_sync.retry_key(department_id))
    log_info("Helpdesk department deleted", department_id=department_id)


async def test_connections(department_id: int) -> dict[str, bool]:
    department = await departments_repo.get_department(department_id)
    if not department:
        raise LookupError("Department not found")
    return {
        "imap": await email_sync.test_imap_connection(department),
        "smtp": await email_sync.test_smtp_connection(department),
    }
