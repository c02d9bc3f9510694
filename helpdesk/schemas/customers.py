from __future__ import annotations

from pydantic import BaseModel


class CustomerSummary(BaseModel):
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    status: str | None = None


class CustomerMatch(BaseModel):
    customer: CustomerSummary
    confidence: int
    matched_by: str


class ClientTicketStats(BaseModel):
    total: int
    open: int
    in_progress: int
    awaiting_customer: int
    closed: int
    resolution_rate: int


class AssociationStats(BaseModel):
    total_tickets: int
    tickets_with_customer: int
    tickets_without_customer: int
    total_customers: int
    customers_with_tickets: int
