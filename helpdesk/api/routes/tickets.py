from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import ValidationError

from helpdesk.api.dependencies.database import require_database
from helpdesk.schemas.logs import TicketLogCreate, TicketLogPage, TicketLogResponse, TicketLogType
from helpdesk.schemas.tickets import (
    ClientAssociationRequest,
    ClientAssociationResponse,
    MessageCreate,
    MessageResponse,
    TicketForward,
    TicketResponse,
    TicketUpdate,
)
from helpdesk.services import customers as customers_service
from helpdesk.services import ticket_audit
from helpdesk.services import tickets as tickets_service
from helpdesk.services.tickets import TicketError, TicketErrorKind

router = APIRouter(prefix="/api/helpdesk/tickets", tags=["Helpdesk tickets"])

_ERROR_STATUS: dict[TicketErrorKind, int] = {
    TicketErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TicketErrorKind.CLOSED: status.HTTP_409_CONFLICT,
    TicketErrorKind.INVALID_STATUS: status.HTTP_400_BAD_REQUEST,
    TicketErrorKind.INVALID_PRIORITY: status.HTTP_400_BAD_REQUEST,
    TicketErrorKind.INVALID_FIELD: status.HTTP_400_BAD_REQUEST,
    TicketErrorKind.DEPARTMENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TicketErrorKind.DUPLICATE: status.HTTP_409_CONFLICT,
    TicketErrorKind.NUMBER_ALLOCATION: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_AUTHOR_FIELDS = {"author_name", "author_email", "author_id"}


def _http_error(exc: TicketError) -> HTTPException:
    return HTTPException(status_code=_ERROR_STATUS[exc.kind], detail=exc.message)


def _context(payload: Any) -> ticket_audit.AuditContext:
    return ticket_audit.get_audit_context(
        payload.author_name, payload.author_email, payload.author_id
    )


async def _require_ticket(ticket_id: int) -> dict[str, Any]:
    ticket = await tickets_service.get_ticket(ticket_id)
    if not ticket:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(
    ticket_id: int,
    _: None = Depends(require_database),
) -> TicketResponse:
    ticket = await _require_ticket(ticket_id)
    return TicketResponse.model_validate(ticket)


@router.put("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    ticket_id: int,
    payload: TicketUpdate,
    _: None = Depends(require_database),
) -> TicketResponse:
    changes = payload.model_dump(exclude_unset=True, exclude=_AUTHOR_FIELDS)
    try:
        ticket = await tickets_service.update_ticket(ticket_id, changes, _context(payload))
    except TicketError as exc:
        raise _http_error(exc) from exc
    return TicketResponse.model_validate(ticket)


@router.get("/{ticket_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    ticket_id: int,
    _: None = Depends(require_database),
) -> list[MessageResponse]:
    try:
        messages = await tickets_service.list_messages(ticket_id)
    except TicketError as exc:
        raise _http_error(exc) from exc
    return [MessageResponse.model_validate(message) for message in messages]


@router.post(
    "/{ticket_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_message(
    ticket_id: int,
    payload: MessageCreate,
    _: None = Depends(require_database),
) -> MessageResponse:
    try:
        message = await tickets_service.add_message(
            ticket_id,
            content=payload.content,
            content_type=payload.content_type,
            visibility=payload.visibility,
            sender_name=payload.sender_name,
            sender_email=payload.sender_email,
            author_id=payload.author_id,
            context=_context(payload),
        )
    except TicketError as exc:
        raise _http_error(exc) from exc
    return MessageResponse.model_validate(message)


@router.post("/{ticket_id}/forward", response_model=TicketResponse)
async def forward_ticket(
    ticket_id: int,
    payload: TicketForward,
    _: None = Depends(require_database),
) -> TicketResponse:
    try:
        ticket = await tickets_service.forward_ticket(
            ticket_id, payload.department_id, _context(payload)
        )
    except TicketError as exc:
        raise _http_error(exc) from exc
    return TicketResponse.model_validate(ticket)


@router.post("/{ticket_id}/associate-client", response_model=ClientAssociationResponse)
async def associate_client(
    ticket_id: int,
    payload: ClientAssociationRequest,
    _: None = Depends(require_database),
) -> ClientAssociationResponse:
    await _require_ticket(ticket_id)
    result = await customers_service.auto_associate_ticket(
        ticket_id,
        payload.email,
        payload.phone,
        payload.name,
        create_if_missing=payload.create_if_missing,
    )
    return ClientAssociationResponse.model_validate(result)


@router.get("/{ticket_id}/logs", response_model=TicketLogPage)
async def list_logs(
    ticket_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    tipo: str | None = Query(default=None, description="Filter by log type"),
    _: None = Depends(require_database),
) -> TicketLogPage:
    log_type: TicketLogType | None = None
    if tipo:
        try:
            log_type = TicketLogType(tipo.upper())
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid log type: {tipo}",
            ) from exc
    await _require_ticket(ticket_id)
    result = await ticket_audit.list_ticket_logs(
        ticket_id, page=page, limit=limit, log_type=log_type
    )
    return TicketLogPage.model_validate(result)


@router.post(
    "/{ticket_id}/logs",
    response_model=TicketLogResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_log(
    ticket_id: int,
    payload: dict[str, Any] = Body(...),
    _: None = Depends(require_database),
) -> TicketLogResponse:
    try:
        entry = TicketLogCreate.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    await _require_ticket(ticket_id)
    record = await ticket_audit.record_manual_log(
        ticket_id,
        entry.log_type,
        entry.description,
        ticket_audit.AuditContext(
            author_name=entry.author_name,
            author_email=entry.author_email,
            author_id=entry.author_id,
        ),
        previous_value=entry.previous_value,
        new_value=entry.new_value,
    )
    return TicketLogResponse.model_validate(record)
