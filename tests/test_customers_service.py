from __future__ import annotations

import pytest

from helpdesk.repositories import customers as customers_repo
from helpdesk.repositories import departments as departments_repo
from helpdesk.repositories import tickets as tickets_repo
from helpdesk.services import customers as customers_service
from helpdesk.services import tickets as tickets_service

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def _customer(name: str, email: str | None = None, phone: str | None = None) -> dict:
    return await customers_repo.create_customer(name=name, email=email, phone=phone)


async def _ticket(department: dict, **overrides) -> dict:
    fields = {
        "department": department,
        "subject": "Printer offline",
        "description": "Floor 2",
        "requester_name": "Rita",
        "requester_email": "rita@example.com",
    }
    fields.update(overrides)
    return await tickets_service.create_ticket(**fields)


@pytest.mark.parametrize(
    ("search", "client", "expected"),
    [
        ("Maria Silva", "maria silva", 90),
        ("Maria", "Maria Silva", 70),
        ("Maria Silva Santos", "Maria Santos", 60),
        ("Maria Silva", "Maria Souza", 50),
        ("Carlos", "Ana", 0),
        ("", "Ana", 0),
    ],
)
def test_name_confidence(search, client, expected):
    assert customers_service.name_confidence(search, client) == expected


async def test_email_match_wins_with_lowest_id(database):
    first = await _customer("Rita Lima", "rita@example.com")
    await _customer("Rita L.", "RITA@example.com")

    matches = await customers_service.smart_search(email="Rita@Example.com", name="Someone")

    assert len(matches) == 1
    assert matches[0].customer["id"] == first["id"]
    assert matches[0].confidence == 95
    assert matches[0].matched_by == "email"


async def test_phone_lookup_falls_back_to_local_number(database):
    customer = await _customer("Paulo", phone="87654321")

    match = await customers_service.find_by_phone("+55 (11) 9 8765-4321")
    too_short = await customers_service.find_by_phone("4321")

    assert match["id"] == customer["id"]
    assert too_short is None


async def test_name_matches_below_threshold_are_not_linked(database):
    await _customer("Maria Souza")

    customer, confidence, created = await customers_service.resolve_customer(
        None, None, "Maria"
    )

    assert customer is None
    assert confidence == 70
    assert created is False


async def test_create_from_ticket_is_idempotent(database):
    first, created = await customers_service.create_from_ticket(" Joao@Example.com ", "")
    second, created_again = await customers_service.create_from_ticket("joao@example.com", "Joao")

    assert created is True
    assert created_again is False
    assert first["id"] == second["id"]
    assert first["name"] == "joao"
    assert first["email"] == "joao@example.com"
    assert first["status"] == "LEAD"


async def test_auto_associate_links_ticket(database):
    department = await departments_repo.create_department(name="Support")
    ticket = await _ticket(department)
    customer = await _customer("Rita Lima", "rita@example.com")

    result = await customers_service.auto_associate_ticket(ticket["id"])
    again = await customers_service.auto_associate_ticket(ticket["id"])

    assert result["success"] is True
    assert result["customer_id"] == customer["id"]
    assert result["confidence"] == 95
    assert again["message"] == "Ticket already associated with a customer"
    stored = await tickets_repo.get_ticket(ticket["id"])
    assert stored["customer_id"] == customer["id"]


async def test_backfill_associates_and_refreshes_customers(database):
    department = await departments_repo.create_department(name="Support")
    await _ticket(department, requester_name="Rita Lima", requester_phone="11987654321")
    await _ticket(department, requester_email="new@example.com", requester_name="New Person")
    await _ticket(department, requester_email=None)
    await _customer("Rita", "rita@example.com")

    stats = await customers_service.sync_unassociated_tickets(batch_size=1)

    assert stats["status"] == "succeeded"
    assert stats["tickets_processed"] == 2
    assert stats["tickets_associated"] == 2
    assert stats["clients_created"] == 1
    assert stats["clients_updated"] == 1
    rita = await customers_repo.get_customer_by_email("rita@example.com")
    assert rita["name"] == "Rita Lima"
    assert rita["phone"] == "11987654321"

    summary = await customers_service.get_sync_stats()

    assert summary == {
        "total_tickets": 3,
        "tickets_with_customer": 2,
        "tickets_without_customer": 1,
        "total_customers": 2,
        "customers_with_tickets": 2,
    }


async def test_client_ticket_stats(database):
    department = await departments_repo.create_department(name="Support")
    customer = await _customer("Rita", "rita@example.com")
    for status in ("OPEN", "RESOLVED", "CLOSED", "IN_PROGRESS"):
        ticket = await _ticket(department, customer_id=customer["id"])
        if status != "OPEN":
            await tickets_repo.update_ticket(ticket["id"], status=status)

    stats = await customers_service.get_client_ticket_stats(customer["id"])
    history = await customers_service.get_client_ticket_history(customer["id"])

    assert stats == {
        "total": 4,
        "open": 1,
        "in_progress": 1,
        "awaiting_customer": 0,
        "closed": 2,
        "resolution_rate": 50,
    }
    assert len(history) == 4
