"""Tests for the helpdesk HTTP endpoints."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from helpdesk.api.dependencies.database import require_database
from helpdesk.core.database import db
from helpdesk.main import app, scheduler_service
from helpdesk.services import customers as customers_service
from helpdesk.services import email_sync
from helpdesk.services import ticket_audit
from helpdesk.services import tickets as tickets_service
from helpdesk.services.tickets import TicketError, TicketErrorKind

NOW = datetime(2025, 10, 13, 10, 0, tzinfo=timezone.utc)

TICKET = {
    "id": 5,
    "number": 12,
    "ticket_number": "SUP-000012",
    "department_id": 1,
    "department_name": "Support",
    "subject": "Printer offline",
    "description": "Floor 2",
    "status": "OPEN",
    "priority": "MEDIUM",
    "requester_name": "Rita",
    "requester_email": "rita@example.com",
    "created_at": NOW,
    "updated_at": NOW,
}


@pytest.fixture(autouse=True)
def mock_startup(monkeypatch):
    """Mock startup functions to avoid database connections."""
    async def fake_connect():
        return None

    async def fake_disconnect():
        return None

    async def fake_run_migrations():
        return None

    async def fake_start():
        return None

    async def fake_stop():
        return None

    monkeypatch.setattr(db, "connect", fake_connect)
    monkeypatch.setattr(db, "disconnect", fake_disconnect)
    monkeypatch.setattr(db, "run_migrations", fake_run_migrations)
    monkeypatch.setattr(scheduler_service, "start", fake_start)
    monkeypatch.setattr(scheduler_service, "stop", fake_stop)


@pytest.fixture
def client(monkeypatch):
    def mock_require_database():
        return None

    async def fake_get_ticket(ticket_id):
        return dict(TICKET, id=ticket_id) if ticket_id == TICKET["id"] else None

    monkeypatch.setattr(tickets_service, "get_ticket", fake_get_ticket)
    app.dependency_overrides[require_database] = mock_require_database

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_get_ticket(client):
    response = client.get("/api/helpdesk/tickets/5")

    assert response.status_code == 200
    data = response.json()
    assert data["ticket_number"] == "SUP-000012"
    assert data["status"] == "OPEN"


def test_get_missing_ticket_returns_404(client):
    response = client.get("/api/helpdesk/tickets/99")

    assert response.status_code == 404
    assert response.json()["detail"] == "Ticket not found"


def test_ticket_errors_map_to_http_status(client, monkeypatch):
    async def closed_ticket(ticket_id, **kwargs):
        raise TicketError(TicketErrorKind.CLOSED, "Ticket is closed")

    async def missing_department(ticket_id, department_id, context):
        raise TicketError(TicketErrorKind.DEPARTMENT_NOT_FOUND, "Department not found")

    monkeypatch.setattr(tickets_service, "add_message", closed_ticket)
    monkeypatch.setattr(tickets_service, "forward_ticket", missing_department)

    message = client.post("/api/helpdesk/tickets/5/messages", json={"content": "Any news?"})
    forward = client.post("/api/helpdesk/tickets/5/forward", json={"department_id": 3})

    assert message.status_code == 409
    assert message.json()["detail"] == "Ticket is closed"
    assert forward.status_code == 404


def test_update_passes_author_as_audit_context(client, monkeypatch):
    captured = {}

    async def fake_update(ticket_id, changes, context):
        captured["changes"] = changes
        captured["context"] = context
        return dict(TICKET, status="RESOLVED")

    monkeypatch.setattr(tickets_service, "update_ticket", fake_update)

    response = client.put(
        "/api/helpdesk/tickets/5",
        json={"status": "RESOLVED", "autorNome": "Ana", "autorEmail": "ana@example.com"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "RESOLVED"
    assert captured["changes"] == {"status": "RESOLVED"}
    assert captured["context"].author_name == "Ana"
    assert captured["context"].author_email == "ana@example.com"


def test_update_rejects_responsible_without_name(client, monkeypatch):
    async def fake_update(ticket_id, changes, context):
        raise TicketError(
            TicketErrorKind.INVALID_FIELD,
            "responsible_name is required when assigning a responsible",
        )

    monkeypatch.setattr(tickets_service, "update_ticket", fake_update)

    response = client.put("/api/helpdesk/tickets/5", json={"responsible_id": 9})

    assert response.status_code == 400
    assert "responsible_name" in response.json()["detail"]


def test_list_logs_paginates_and_filters(client, monkeypatch):
    captured = {}

    async def fake_list(ticket_id, *, page, limit, log_type):
        captured.update(ticket_id=ticket_id, page=page, limit=limit, log_type=log_type)
        return {
            "logs": [
                {
                    "id": 1,
                    "ticket_id": ticket_id,
                    "log_type": "CLOSURE",
                    "description": "Ticket closed",
                    "author_name": "System",
                    "author_email": "system@helpdesk.local",
                    "created_at": NOW,
                }
            ],
            "pagination": {"page": page, "limit": limit, "total": 21, "pages": 3},
        }

    monkeypatch.setattr(ticket_audit, "list_ticket_logs", fake_list)

    response = client.get("/api/helpdesk/tickets/5/logs?page=2&limit=10&tipo=closure")

    assert response.status_code == 200
    assert captured["page"] == 2
    assert captured["limit"] == 10
    assert captured["log_type"].value == "CLOSURE"
    assert response.json()["pagination"]["pages"] == 3


def test_list_logs_rejects_unknown_type(client):
    response = client.get("/api/helpdesk/tickets/5/logs?tipo=DELETED")

    assert response.status_code == 400


def test_create_log_validates_body(client):
    response = client.post(
        "/api/helpdesk/tickets/5/logs",
        json={"tipo": "STATUS_CHANGED", "descricao": "Manual note"},
    )

    assert response.status_code == 400


def test_create_log_records_entry(client, monkeypatch):
    captured = {}

    async def fake_record(ticket_id, log_type, description, context, *, previous_value, new_value):
        captured.update(log_type=log_type, context=context, previous_value=previous_value)
        return {
            "id": 8,
            "ticket_id": ticket_id,
            "log_type": log_type.value,
            "description": description,
            "previous_value": previous_value,
            "new_value": new_value,
            "author_name": context.author_name,
            "author_email": context.author_email,
            "author_id": context.author_id,
            "created_at": NOW,
        }

    monkeypatch.setattr(ticket_audit, "record_manual_log", fake_record)

    response = client.post(
        "/api/helpdesk/tickets/5/logs",
        json={
            "tipo": "STATUS_CHANGED",
            "descricao": "Status corrected by hand",
            "valorAnterior": "OPEN",
            "valorNovo": "IN_PROGRESS",
            "autorNome": "Ana",
            "autorEmail": "ana@example.com",
        },
    )

    assert response.status_code == 201
    assert response.json()["id"] == 8
    assert captured["previous_value"] == "OPEN"
    assert captured["context"].author_name == "Ana"


def test_sync_run_reports_tickets_created_in_camel_case(client, monkeypatch):
    async def fake_sync_all():
        return {
            "processed": 1,
            "tickets_created": [
                {"id": 5, "ticket_number": "SUP-000012", "subject": "Hello", "priority": "HIGH"}
            ],
            "errors": [],
            "departments": [],
        }

    monkeypatch.setattr(email_sync, "sync_all_departments", fake_sync_all)

    response = client.post("/api/helpdesk/sync")

    assert response.status_code == 200
    data = response.json()
    assert data["ticketsCreated"][0]["ticket_number"] == "SUP-000012"
    assert "tickets_created" not in data


def test_worker_status_includes_scheduler_state(client):
    response = client.get("/api/helpdesk/worker")

    assert response.status_code == 200
    data = response.json()
    assert data["scheduler_running"] is False
    assert "retry_stats" in data


def test_client_search_requires_a_criterion(client):
    response = client.get("/api/helpdesk/clients/search")

    assert response.status_code == 400


def test_associate_client(client, monkeypatch):
    async def fake_associate(ticket_id, email, phone, name, *, create_if_missing):
        return {
            "success": True,
            "customer_id": 3,
            "confidence": 95,
            "created": False,
            "message": "Ticket associated with customer",
        }

    monkeypatch.setattr(customers_service, "auto_associate_ticket", fake_associate)

    response = client.post(
        "/api/helpdesk/tickets/5/associate-client", json={"email": "rita@example.com"}
    )

    assert response.status_code == 200
    assert response.json()["confidence"] == 95
