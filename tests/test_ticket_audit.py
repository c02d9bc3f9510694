from __future__ import annotations

from datetime import datetime, timezone

import pytest

from helpdesk.schemas.logs import TicketLogType
from helpdesk.services import ticket_audit
from helpdesk.services.ticket_audit import AuditContext

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def stored_logs(monkeypatch):
    entries: list[dict] = []

    async def fake_create_log(**kwargs):
        entries.append(kwargs)
        return len(entries)

    monkeypatch.setattr(ticket_audit.ticket_logs_repo, "create_log", fake_create_log)
    return entries


CONTEXT = AuditContext(author_name="Ana Souza", author_email="ana@example.com", author_id=7)


async def test_update_logs_one_entry_per_changed_field(stored_logs):
    written = await ticket_audit.log_ticket_update(
        10,
        {"status": "OPEN", "priority": "MEDIUM", "subject": "Printer"},
        {"status": "RESOLVED", "priority": "HIGH"},
        CONTEXT,
    )

    assert written == 2
    assert [entry["log_type"] for entry in stored_logs] == ["STATUS_CHANGED", "PRIORITY_CHANGED"]
    status_entry, priority_entry = stored_logs
    assert status_entry["previous_value"] == "OPEN"
    assert status_entry["new_value"] == "RESOLVED"
    assert status_entry["description"] == 'Status changed from "Open" to "Resolved"'
    assert priority_entry["previous_value"] == "MEDIUM"
    assert priority_entry["new_value"] == "HIGH"
    assert all(entry["author_email"] == "ana@example.com" for entry in stored_logs)


async def test_owner_change_follows_the_id_and_logs_display_names(stored_logs):
    written = await ticket_audit.log_ticket_update(
        10,
        {"responsible_id": 1, "responsible_name": "Carlos"},
        {"responsible_id": 2, "responsible_name": "Carlos"},
        CONTEXT,
    )
    unchanged = await ticket_audit.log_ticket_update(
        10,
        {"responsible_id": 2, "responsible_name": "Carlos"},
        {"responsible_id": 2},
        CONTEXT,
    )

    assert written == 1
    assert unchanged == 0
    assert stored_logs[0]["log_type"] == "OWNER_CHANGED"
    assert stored_logs[0]["previous_value"] == "Carlos"
    assert stored_logs[0]["new_value"] == "Carlos"


async def test_unassigning_owner_is_logged(stored_logs):
    await ticket_audit.log_ticket_update(
        10,
        {"responsible_id": 1, "responsible_name": "Carlos"},
        {"responsible_id": None, "responsible_name": None},
        CONTEXT,
    )

    assert len(stored_logs) == 1
    assert stored_logs[0]["log_type"] == "OWNER_CHANGED"
    assert stored_logs[0]["previous_value"] == "Carlos"
    assert stored_logs[0]["new_value"] == "Unassigned"


async def test_write_failures_are_swallowed(monkeypatch):
    async def failing_create_log(**kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(ticket_audit.ticket_logs_repo, "create_log", failing_create_log)

    written = await ticket_audit.log_ticket_update(
        10, {"status": "OPEN"}, {"status": "CLOSED"}, CONTEXT
    )
    await ticket_audit.log_ticket_closure(10, CONTEXT)
    await ticket_audit.log_ticket_creation(10, {"subject": "Printer"}, CONTEXT)

    assert written == 0


async def test_creation_snapshot_includes_requester(stored_logs):
    await ticket_audit.log_ticket_creation(
        4,
        {
            "subject": "VPN down",
            "priority": "URGENT",
            "status": "OPEN",
            "requester_name": "Rita",
            "requester_email": "rita@example.com",
        },
    )

    entry = stored_logs[0]
    assert entry["log_type"] == "CREATION"
    assert entry["description"] == 'Ticket created with subject "VPN down"'
    assert '"priority": "URGENT"' in entry["new_value"]
    assert '"email": "rita@example.com"' in entry["new_value"]
    assert entry["author_name"] == "System"


async def test_message_preview_is_truncated(stored_logs):
    await ticket_audit.log_message_added(
        3,
        {"content": "x" * 150, "visibility": "INTERNAL", "sender_name": "Ana"},
        CONTEXT,
    )

    entry = stored_logs[0]
    assert entry["description"] == "Message added by Ana (internal)"
    assert '"preview": "' + "x" * 100 + '..."' in entry["new_value"]


def test_lifecycle_event_only_on_boundary_crossing():
    assert ticket_audit.lifecycle_event("OPEN", "RESOLVED") is TicketLogType.CLOSURE
    assert ticket_audit.lifecycle_event("RESOLVED", "CLOSED") is None
    assert ticket_audit.lifecycle_event("RESOLVED", "RESOLVED") is None
    assert ticket_audit.lifecycle_event("CLOSED", "IN_PROGRESS") is TicketLogType.REOPENING
    assert ticket_audit.lifecycle_event("OPEN", "AWAITING_CUSTOMER") is None


def test_format_value_for_display():
    assert ticket_audit.format_value_for_display("status", "AWAITING_CUSTOMER") == "Awaiting customer"
    assert ticket_audit.format_value_for_display("priority", None) == "Not set"
    assert ticket_audit.format_value_for_display("subject", "Hello") == "Hello"


async def test_list_ticket_logs_caps_page_size(monkeypatch):
    captured: dict = {}

    async def fake_count_logs(ticket_id, *, log_type=None):
        captured["count_type"] = log_type
        return 230

    async def fake_list_logs(ticket_id, *, log_type=None, limit=50, offset=0):
        captured["limit"] = limit
        captured["offset"] = offset
        return [
            {
                "id": 1,
                "ticket_id": ticket_id,
                "log_type": "CLOSURE",
                "description": "Ticket closed",
                "author_name": "System",
                "author_email": "system@helpdesk.local",
                "created_at": datetime.now(timezone.utc),
            }
        ]

    monkeypatch.setattr(ticket_audit.ticket_logs_repo, "count_logs", fake_count_logs)
    monkeypatch.setattr(ticket_audit.ticket_logs_repo, "list_logs", fake_list_logs)

    result = await ticket_audit.list_ticket_logs(
        5, page=2, limit=500, log_type=TicketLogType.CLOSURE
    )

    assert captured == {"count_type": "CLOSURE", "limit": 100, "offset": 100}
    assert result["pagination"] == {"page": 2, "limit": 100, "total": 230, "pages": 3}


async def test_dispatched_failures_do_not_reach_the_caller():
    async def broken_write():
        raise RuntimeError("lost connection")

    task = ticket_audit.dispatch(broken_write())
    await ticket_audit.wait_for_pending()

    assert task.done()
    assert ticket_audit._pending == set()
