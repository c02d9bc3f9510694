from __future__ import annotations

import asyncio

import pytest

from helpdesk.repositories import departments as departments_repo
from helpdesk.repositories import ticket_logs as ticket_logs_repo
from helpdesk.services import ticket_audit
from helpdesk.services import tickets as tickets_service
from helpdesk.services.ticket_audit import AuditContext
from helpdesk.services.tickets import TicketError, TicketErrorKind

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


CONTEXT = AuditContext(author_name="Ana Souza", author_email="ana@example.com", author_id=7)


async def _department(name: str = "Support", prefix: str | None = "SUP") -> dict:
    return await departments_repo.create_department(name=name, ticket_prefix=prefix)


async def _ticket(department: dict, **overrides) -> dict:
    fields = {
        "department": department,
        "subject": "Printer offline",
        "description": "The printer on floor 2 is offline",
        "requester_name": "Rita",
        "requester_email": "rita@example.com",
    }
    fields.update(overrides)
    return await tickets_service.create_ticket(**fields)


async def _log_types(ticket_id: int) -> list[str]:
    await ticket_audit.wait_for_pending()
    logs = await ticket_logs_repo.list_logs(ticket_id, limit=100)
    return sorted(log["log_type"] for log in logs)


def test_format_ticket_number():
    assert tickets_service.format_ticket_number("HD", 42) == "HD-000042"
    assert tickets_service.resolve_prefix({"ticket_prefix": " fin "}) == "FIN"
    assert tickets_service.resolve_prefix({"ticket_prefix": None}) == "HD"


async def test_ticket_numbers_are_sequential_per_prefix(database):
    support = await _department("Support", "SUP")
    finance = await _department("Finance", "FIN")

    first = await _ticket(support)
    second = await _ticket(support)
    other = await _ticket(finance)

    assert (first["number"], first["ticket_number"]) == (1, "SUP-000001")
    assert (second["number"], second["ticket_number"]) == (2, "SUP-000002")
    assert other["ticket_number"] == "FIN-000001"
    assert first["status"] == "OPEN"


async def test_concurrent_creation_never_reuses_a_number(database):
    department = await _department()

    tickets = await asyncio.gather(
        *(_ticket(department, subject=f"Request {index}") for index in range(6))
    )

    assert sorted(ticket["number"] for ticket in tickets) == [1, 2, 3, 4, 5, 6]


async def test_duplicate_source_message_is_rejected(database):
    department = await _department()
    await _ticket(department, email_message_id="<abc@mail>")

    with pytest.raises(TicketError) as excinfo:
        await _ticket(department, email_message_id="<abc@mail>")

    assert excinfo.value.kind is TicketErrorKind.DUPLICATE


async def test_same_message_id_is_allowed_in_another_department(database):
    support = await _department("Support", "SUP")
    finance = await _department("Finance", "FIN")

    await _ticket(support, email_message_id="<shared@mail>")
    other = await _ticket(finance, email_message_id="<shared@mail>")

    assert other["department_id"] == finance["id"]


async def test_first_message_is_stored_with_the_ticket(database):
    department = await _department()
    ticket = await _ticket(
        department,
        first_message={"content": "Hello", "sender_name": "Rita", "sender_email": "rita@example.com"},
    )

    messages = await tickets_service.list_messages(ticket["id"])

    assert len(messages) == 1
    assert messages[0]["content"] == "Hello"
    assert messages[0]["visibility"] == "PUBLIC"
    assert await _log_types(ticket["id"]) == ["CREATION"]


async def test_closure_is_logged_once(database):
    department = await _department()
    ticket = await _ticket(department)

    resolved = await tickets_service.update_ticket(ticket["id"], {"status": "RESOLVED"}, CONTEXT)
    await tickets_service.update_ticket(ticket["id"], {"status": "RESOLVED"}, CONTEXT)
    await tickets_service.update_ticket(ticket["id"], {"priority": "HIGH"}, CONTEXT)

    assert resolved["closed_at"] is not None
    assert await _log_types(ticket["id"]) == [
        "CLOSURE",
        "CREATION",
        "PRIORITY_CHANGED",
        "STATUS_CHANGED",
    ]


async def test_reopening_clears_closed_at(database):
    department = await _department()
    ticket = await _ticket(department)
    await tickets_service.update_ticket(ticket["id"], {"status": "CLOSED"}, CONTEXT)

    reopened = await tickets_service.update_ticket(
        ticket["id"], {"status": "IN_PROGRESS"}, CONTEXT
    )

    assert reopened["closed_at"] is None
    types = await _log_types(ticket["id"])
    assert types.count("CLOSURE") == 1
    assert types.count("REOPENING") == 1
    assert types.count("STATUS_CHANGED") == 2


async def test_invalid_status_is_rejected(database):
    department = await _department()
    ticket = await _ticket(department)

    with pytest.raises(TicketError) as excinfo:
        await tickets_service.update_ticket(ticket["id"], {"status": "ARCHIVED"}, CONTEXT)

    assert excinfo.value.kind is TicketErrorKind.INVALID_STATUS


async def test_assigning_a_responsible_is_logged(database):
    department = await _department()
    ticket = await _ticket(department)

    updated = await tickets_service.update_ticket(
        ticket["id"], {"responsible_id": 5, "responsible_name": "Carlos"}, CONTEXT
    )
    await tickets_service.update_ticket(ticket["id"], {"responsible_id": 5}, CONTEXT)

    assert updated["responsible_id"] == 5
    assert updated["responsible_name"] == "Carlos"
    assert await _log_types(ticket["id"]) == ["CREATION", "OWNER_CHANGED"]
    logs = await ticket_logs_repo.list_logs(ticket["id"], log_type="OWNER_CHANGED")
    assert logs[0]["previous_value"] == "Unassigned"
    assert logs[0]["new_value"] == "Carlos"


async def test_responsible_id_without_a_name_is_rejected(database):
    department = await _department()
    ticket = await _ticket(department)

    with pytest.raises(TicketError) as excinfo:
        await tickets_service.update_ticket(ticket["id"], {"responsible_id": 5}, CONTEXT)

    assert excinfo.value.kind is TicketErrorKind.INVALID_FIELD
    assert await _log_types(ticket["id"]) == ["CREATION"]


async def test_null_subject_is_ignored(database):
    department = await _department()
    ticket = await _ticket(department)

    unchanged = await tickets_service.update_ticket(ticket["id"], {"subject": None}, CONTEXT)
    updated = await tickets_service.update_ticket(
        ticket["id"], {"subject": None, "priority": "HIGH"}, CONTEXT
    )

    assert unchanged["subject"] == "Printer offline"
    assert updated["subject"] == "Printer offline"
    assert updated["priority"] == "HIGH"


async def test_closed_ticket_rejects_public_messages(database):
    department = await _department()
    ticket = await _ticket(department)
    await tickets_service.update_ticket(ticket["id"], {"status": "CLOSED"}, CONTEXT)

    with pytest.raises(TicketError) as excinfo:
        await tickets_service.add_message(ticket["id"], content="Any news?", context=CONTEXT)
    internal = await tickets_service.add_message(
        ticket["id"], content="Customer called", visibility="INTERNAL", context=CONTEXT
    )

    assert excinfo.value.kind is TicketErrorKind.CLOSED
    assert internal["visibility"] == "INTERNAL"
    assert internal["sender_email"] == "ana@example.com"


async def test_forward_moves_ticket_and_records_both_departments(database):
    support = await _department("Support", "SUP")
    finance = await _department("Finance", "FIN")
    ticket = await _ticket(support)

    forwarded = await tickets_service.forward_ticket(ticket["id"], finance["id"], CONTEXT)

    assert forwarded["department_id"] == finance["id"]
    assert forwarded["ticket_number"] == ticket["ticket_number"]
    await ticket_audit.wait_for_pending()
    logs = await ticket_logs_repo.list_logs(ticket["id"], log_type="OWNER_CHANGED")
    assert len(logs) == 1
    assert logs[0]["description"] == 'Ticket forwarded from "Support" to "Finance"'


async def test_forward_to_unknown_department(database):
    department = await _department()
    ticket = await _ticket(department)

    with pytest.raises(TicketError) as excinfo:
        await tickets_service.forward_ticket(ticket["id"], 999, CONTEXT)

    assert excinfo.value.kind is TicketErrorKind.DEPARTMENT_NOT_FOUND


async def test_missing_ticket(database):
    with pytest.raises(TicketError) as excinfo:
        await tickets_service.update_ticket(404, {"status": "OPEN"}, CONTEXT)

    assert excinfo.value.kind is TicketErrorKind.NOT_FOUND
