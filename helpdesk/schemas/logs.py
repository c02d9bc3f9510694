from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TicketLogType(str, Enum):
    """Kinds of entry in a ticket's audit trail."""

    CREATION = "CREATION"
    STATUS_CHANGED = "STATUS_CHANGED"
    PRIORITY_CHANGED = "PRIORITY_CHANGED"
    OWNER_CHANGED = "OWNER_CHANGED"
    SUBJECT_CHANGED = "SUBJECT_CHANGED"
    DESCRIPTION_CHANGED = "DESCRIPTION_CHANGED"
    MESSAGE_ADDED = "MESSAGE_ADDED"
    CLOSURE = "CLOSURE"
    REOPENING = "REOPENING"


class TicketLogCreate(BaseModel):
    log_type: TicketLogType = Field(validation_alias=AliasChoices("log_type", "tipo", "type"))
    description: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("description", "descricao")
    )
    previous_value: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("previous_value", "valorAnterior")
    )
    new_value: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("new_value", "valorNovo")
    )
    author_name: str = Field(
        ..., min_length=1, max_length=255, validation_alias=AliasChoices("author_name", "autorNome")
    )
    author_email: str = Field(
        ..., min_length=3, max_length=255, validation_alias=AliasChoices("author_email", "autorEmail")
    )
    author_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("author_id", "autorId"))

    model_config = ConfigDict(populate_by_name=True)


class TicketLogResponse(BaseModel):
    id: int
    ticket_id: int
    log_type: TicketLogType
    description: str
    previous_value: Optional[Any] = None
    new_value: Optional[Any] = None
    author_name: str
    author_email: str
    author_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class TicketLogPage(BaseModel):
    logs: list[TicketLogResponse]
    pagination: Pagination
