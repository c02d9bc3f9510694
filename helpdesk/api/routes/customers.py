from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from helpdesk.api.dependencies.database import require_database
from helpdesk.repositories import customers as customers_repo
from helpdesk.schemas.customers import AssociationStats, ClientTicketStats, CustomerMatch
from helpdesk.schemas.sync import ClientSyncResponse
from helpdesk.schemas.tickets import TicketResponse
from helpdesk.services import customers as customers_service

router = APIRouter(prefix="/api/helpdesk/clients", tags=["Helpdesk clients"])


async def _require_customer(customer_id: int) -> None:
    customer = await customers_repo.get_customer(customer_id)
    if not customer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")


@router.get("/search", response_model=list[CustomerMatch])
async def search_clients(
    email: str | None = Query(default=None),
    phone: str | None = Query(default=None),
    name: str | None = Query(default=None),
    _: None = Depends(require_database),
) -> list[CustomerMatch]:
    if not any((email, phone, name)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide an email, phone or name to search",
        )
    matches = await customers_service.smart_search(email, phone, name)
    return [
        CustomerMatch.model_validate(
            {
                "customer": match.customer,
                "confidence": match.confidence,
                "matched_by": match.matched_by,
            }
        )
        for match in matches
    ]


@router.post("/sync", response_model=ClientSyncResponse)
async def sync_clients(
    batch_size: int = Query(50, ge=1, le=500),
    create_if_missing: bool = Query(True),
    _: None = Depends(require_database),
) -> ClientSyncResponse:
    result = await customers_service.sync_unassociated_tickets(
        batch_size=batch_size, create_if_missing=create_if_missing
    )
    return ClientSyncResponse.model_validate(result)


@router.get("/sync", response_model=AssociationStats)
async def get_client_sync_stats(
    _: None = Depends(require_database),
) -> AssociationStats:
    result = await customers_service.get_sync_stats()
    return AssociationStats.model_validate(result)


@router.get("/{customer_id}/stats", response_model=ClientTicketStats)
async def get_client_stats(
    customer_id: int,
    _: None = Depends(require_database),
) -> ClientTicketStats:
    await _require_customer(customer_id)
    result = await customers_service.get_client_ticket_stats(customer_id)
    return ClientTicketStats.model_validate(result)


@router.get("/{customer_id}/tickets", response_model=list[TicketResponse])
async def get_client_tickets(
    customer_id: int,
    _: None = Depends(require_database),
) -> list[TicketResponse]:
    await _require_customer(customer_id)
    tickets = await customers_service.get_client_ticket_history(customer_id)
    return [TicketResponse.model_validate(ticket) for ticket in tickets]
