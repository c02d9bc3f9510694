from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_CUSTOMER = "AWAITING_CUSTOMER"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class TicketPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class MessageContentType(str, Enum):
    TEXT = "TEXT"
    HTML = "HTML"


class MessageVisibility(str, Enum):
    PUBLIC = "PUBLIC"
    INTERNAL = "INTERNAL"


CLOSED_STATUSES: frozenset[str] = frozenset(
    {TicketStatus.RESOLVED.value, TicketStatus.CLOSED.value}
)

STATUS_LABELS: dict[str, str] = {
    TicketStatus.OPEN.value: "Open",
    TicketStatus.IN_PROGRESS.value: "In progress",
    TicketStatus.AWAITING_CUSTOMER.value: "Awaiting customer",
    TicketStatus.RESOLVED.value: "Resolved",
    TicketStatus.CLOSED.value: "Closed",
}

PRIORITY_LABELS: dict[str, str] = {
    TicketPriority.LOW.value: "Low",
    TicketPriority.MEDIUM.value: "Medium",
    TicketPriority.HIGH.value: "High",
    TicketPriority.URGENT.value: "Urgent",
}


class TicketResponse(BaseModel):
    id: int
    number: int
    ticket_number: str
    department_id: int
    department_name: Optional[str] = None
    subject: str
    description: Optional[str] = None
    status: TicketStatus
    priority: TicketPriority
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    requester_phone: Optional[str] = None
    responsible_id: Optional[int] = None
    responsible_name: Optional[str] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    email_message_id: Optional[str] = None
    closed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuthorFields(BaseModel):
    author_name: Optional[str] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("author_name", "autorNome"),
    )
    author_email: Optional[str] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("author_email", "autorEmail"),
    )
    author_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("author_id", "autorId"),
    )

    model_config = ConfigDict(populate_by_name=True)


class TicketUpdate(AuthorFields):
    subject: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    responsible_id: Optional[int] = None
    responsible_name: Optional[str] = Field(default=None, max_length=255)


class TicketForward(AuthorFields):
    department_id: int = Field(..., ge=1)


class MessageCreate(AuthorFields):
    content: str = Field(..., min_length=1)
    content_type: MessageContentType = MessageContentType.TEXT
    visibility: MessageVisibility = MessageVisibility.PUBLIC
    sender_name: Optional[str] = Field(default=None, max_length=255)
    sender_email: Optional[str] = Field(default=None, max_length=255)


class MessageResponse(BaseModel):
    id: int
    ticket_id: int
    content: str
    content_type: MessageContentType
    visibility: MessageVisibility
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    author_id: Optional[int] = None
    email_message_id: Optional[str] = None
    created_at: datetime
    edited_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ClientAssociationRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    create_if_missing: bool = False


class ClientAssociationResponse(BaseModel):
    success: bool
    customer_id: Optional[int] = None
    confidence: int = 0
    created: bool = False
    message: str
