"""Link helpdesk tickets to customer records.

Lookups run from the strongest signal to the weakest: an exact email match,
then a phone number match, then a fuzzy name search. Only matches with a
confidence of at least :data:`AUTO_ASSOCIATE_THRESHOLD` are linked
automatically. A customer is created only when the caller asks for it.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from helpdesk.core.logging import log_error, log_info
from helpdesk.repositories import customers as customers_repo
from helpdesk.repositories import tickets as tickets_repo
from helpdesk.schemas.tickets import TicketStatus

EMAIL_CONFIDENCE = 95
PHONE_CONFIDENCE = 80
AUTO_ASSOCIATE_THRESHOLD = 80
_MIN_PHONE_DIGITS = 8
_MIN_NAME_LENGTH = 3
_NAME_RESULT_LIMIT = 10

_backfill_lock = asyncio.Lock()


@dataclass(frozen=True)
class ClientMatch:
    customer: dict[str, Any]
    confidence: int
    matched_by: str


def normalise_phone(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


def name_confidence(search_name: str, client_name: str) -> int:
    search = search_name.lower().strip()
    client = client_name.lower().strip()
    if not search or not client:
        return 0
    if search == client:
        return 90
    if search in client or client in search:
        return 70
    search_words = search.split()
    client_words = client.split()
    matching = [
        word
        for word in search_words
        if any(candidate in word or word in candidate for candidate in client_words)
    ]
    percentage = len(matching) / max(len(search_words), len(client_words)) * 100
    return int(min(percentage, 60))


async def find_by_email(email: str | None) -> dict[str, Any] | None:
    if not email or "@" not in email:
        return None
    return await customers_repo.get_customer_by_email(email.strip().lower())


async def find_by_phone(phone: str | None) -> dict[str, Any] | None:
    digits = normalise_phone(phone)
    if len(digits) < _MIN_PHONE_DIGITS:
        return None
    customer = await customers_repo.find_by_phone_fragment(digits)
    if customer is None and len(digits) >= 10:
        # Stored numbers often omit the country and area code.
        customer = await customers_repo.find_by_phone_fragment(digits[-8:])
    return customer


async def find_by_name(name: str | None) -> list[ClientMatch]:
    cleaned = (name or "").strip()
    if len(cleaned) < _MIN_NAME_LENGTH:
        return []
    customers = await customers_repo.search_by_name(cleaned, limit=_NAME_RESULT_LIMIT)
    return [
        ClientMatch(customer, name_confidence(cleaned, str(customer.get("name") or "")), "name")
        for customer in customers
    ]


async def smart_search(
    email: str | None = None,
    phone: str | None = None,
    name: str | None = None,
) -> list[ClientMatch]:
    """Return candidate customers ranked by confidence, one entry per customer."""
    matches: list[ClientMatch] = []
    by_email = await find_by_email(email)
    if by_email:
        matches.append(ClientMatch(by_email, EMAIL_CONFIDENCE, "email"))
    else:
        by_phone = await find_by_phone(phone)
        if by_phone:
            matches.append(ClientMatch(by_phone, PHONE_CONFIDENCE, "phone"))
        else:
            matches.extend(await find_by_name(name))

    best: dict[int, ClientMatch] = {}
    for match in matches:
        customer_id = int(match.customer["id"])
        current = best.get(customer_id)
        if current is None or match.confidence > current.confidence:
            best[customer_id] = match
    return sorted(best.values(), key=lambda match: match.confidence, reverse=True)


async def create_from_ticket(
    email: str,
    name: str | None = None,
    phone: str | None = None,
) -> tuple[dict[str, Any], bool]:
    """Create a lead for a ticket requester; returns ``(customer, created)``.

    An existing customer with the same email is returned instead of a new one.
    """
    normalised_email = email.strip().lower()
    existing = await customers_repo.get_customer_by_email(normalised_email)
    if existing:
        return existing, False
    display_name = (name or "").strip() or normalised_email.split("@", 1)[0]
    customer = await customers_repo.create_customer(
        name=display_name,
        email=normalised_email,
        phone=(phone or "").strip() or None,
        customer_type="individual",
        status="LEAD",
        notes="Created automatically from a helpdesk ticket",
    )
    log_info("Customer created from helpdesk ticket", customer_id=customer.get("id"))
    return customer, True


async def resolve_customer(
    email: str | None = None,
    phone: str | None = None,
    name: str | None = None,
    *,
    create_if_missing: bool = False,
) -> tuple[dict[str, Any] | None, int, bool]:
    """Find the customer for a requester, creating one only when asked to.

    Returns ``(customer, confidence, created)``.
    """
    matches = await smart_search(email, phone, name)
    if matches and matches[0].confidence >= AUTO_ASSOCIATE_THRESHOLD:
        return matches[0].customer, matches[0].confidence, False
    if create_if_missing and email and "@" in email:
        customer, created = await create_from_ticket(email, name, phone)
        return customer, 100, created
    return None, matches[0].confidence if matches else 0, False


async def auto_associate_ticket(
    ticket_id: int,
    email: str | None = None,
    phone: str | None = None,
    name: str | None = None,
    *,
    create_if_missing: bool = False,
) -> dict[str, Any]:
    ticket = await tickets_repo.get_ticket(ticket_id)
    if not ticket:
        return {
            "success": False,
            "customer_id": None,
            "confidence": 0,
            "created": False,
            "message": "Ticket not found",
        }
    if ticket.get("customer_id"):
        return {
            "success": True,
            "customer_id": ticket["customer_id"],
            "confidence": 100,
            "created": False,
            "message": "Ticket already associated with a customer",
        }

    email = email or ticket.get("requester_email")
    phone = phone or ticket.get("requester_phone")
    name = name or ticket.get("requester_name")
    customer, confidence, created = await resolve_customer(
        email, phone, name, create_if_missing=create_if_missing
    )
    if customer is None:
        message = (
            "Match confidence too low; manual association recommended"
            if confidence
            else "No matching customer found"
        )
        return {
            "success": False,
            "customer_id": None,
            "confidence": confidence,
            "created": False,
            "message": message,
        }

    await tickets_repo.update_ticket(ticket_id, customer_id=customer["id"])
    log_info(
        "Ticket associated with customer",
        ticket_id=ticket_id,
        customer_id=customer["id"],
        confidence=confidence,
    )
    return {
        "success": True,
        "customer_id": customer["id"],
        "confidence": confidence,
        "created": created,
        "message": "Ticket associated with customer",
    }


async def get_client_ticket_history(customer_id: int) -> list[dict[str, Any]]:
    return await tickets_repo.list_customer_tickets(customer_id)


async def get_client_ticket_stats(customer_id: int) -> dict[str, Any]:
    counts = await tickets_repo.count_by_status_for_customer(customer_id)
    total = sum(counts.values())
    closed = counts.get(TicketStatus.RESOLVED.value, 0) + counts.get(TicketStatus.CLOSED.value, 0)
    return {
        "total": total,
        "open": counts.get(TicketStatus.OPEN.value, 0),
        "in_progress": counts.get(TicketStatus.IN_PROGRESS.value, 0),
        "awaiting_customer": counts.get(TicketStatus.AWAITING_CUSTOMER.value, 0),
        "closed": closed,
        "resolution_rate": round(closed / total * 100) if total else 0,
    }


async def _refresh_customer_details(customer: dict[str, Any]) -> bool:
    """Fill a missing phone and prefer a fuller name from the latest ticket."""
    latest = await tickets_repo.get_latest_ticket_for_customer(int(customer["id"]))
    if not latest:
        return False
    updates: dict[str, Any] = {}
    if not customer.get("phone") and latest.get("requester_phone"):
        updates["phone"] = latest["requester_phone"]
    ticket_name = (latest.get("requester_name") or "").strip()
    if len(ticket_name) > len(str(customer.get("name") or "")):
        updates["name"] = ticket_name
    if not updates:
        return False
    await customers_repo.update_customer(int(customer["id"]), **updates)
    return True


async def sync_unassociated_tickets(
    *,
    batch_size: int = 50,
    create_if_missing: bool = True,
) -> dict[str, Any]:
    """Backfill customer links for tickets that have a requester email but no customer."""
    if _backfill_lock.locked():
        return {"status": "skipped", "reason": "Customer sync already running"}

    async with _backfill_lock:
        started_at = datetime.now(timezone.utc)
        stats: dict[str, Any] = {
            "status": "succeeded",
            "tickets_processed": 0,
            "tickets_associated": 0,
            "clients_created": 0,
            "clients_updated": 0,
            "errors": [],
        }
        touched_customers: set[int] = set()
        last_id = 0
        while True:
            batch = await tickets_repo.list_unassociated_tickets(after_id=last_id, limit=batch_size)
            if not batch:
                break
            for ticket in batch:
                last_id = max(last_id, int(ticket["id"]))
                stats["tickets_processed"] += 1
                try:
                    result = await auto_associate_ticket(
                        int(ticket["id"]), create_if_missing=create_if_missing
                    )
                except Exception as exc:
                    log_error(
                        "Customer association failed during backfill",
                        ticket_id=ticket.get("id"),
                        error=str(exc),
                    )
                    stats["errors"].append({"ticket_id": ticket.get("id"), "error": str(exc)})
                    continue
                if result["success"]:
                    stats["tickets_associated"] += 1
                    if result["created"]:
                        stats["clients_created"] += 1
                    if result["customer_id"]:
                        touched_customers.add(int(result["customer_id"]))

        for customer_id in sorted(touched_customers):
            customer = await customers_repo.get_customer(customer_id)
            if customer and await _refresh_customer_details(customer):
                stats["clients_updated"] += 1

        finished_at = datetime.now(timezone.utc)
        if stats["errors"]:
            stats["status"] = "completed_with_errors"
        stats["started_at"] = started_at
        stats["finished_at"] = finished_at
        stats["duration_seconds"] = (finished_at - started_at).total_seconds()
        log_info(
            "Customer backfill completed",
            processed=stats["tickets_processed"],
            associated=stats["tickets_associated"],
            created=stats["clients_created"],
            errors=len(stats["errors"]),
        )
        return stats


async def get_sync_stats() -> dict[str, int]:
    total = await tickets_repo.count_tickets()
    with_customer = await tickets_repo.count_tickets(has_customer=True)
    return {
        "total_tickets": total,
        "tickets_with_customer": with_customer,
        "tickets_without_customer": total - with_customer,
        "total_customers": await customers_repo.count_customers(),
        "customers_with_tickets": await tickets_repo.count_customers_with_tickets(),
    }
