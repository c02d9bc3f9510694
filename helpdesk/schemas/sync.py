from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreatedTicket(BaseModel):
    id: int
    ticket_number: str | None = None
    subject: str | None = None
    priority: str | None = None


class DepartmentSyncResponse(BaseModel):
    department_id: int
    status: str
    processed: int = 0
    tickets_created: list[CreatedTicket] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    reason: str | None = None
    error: str | None = None
    error_kind: str | None = None


class SyncRunResponse(BaseModel):
    """Summary of a run across departments.

    Serialised with camelCase ``ticketsCreated`` so existing dashboards keep
    reading the same key.
    """

    processed: int
    tickets_created: list[CreatedTicket] = Field(
        default_factory=list, serialization_alias="ticketsCreated"
    )
    errors: list[dict[str, Any]] = Field(default_factory=list)
    departments: list[DepartmentSyncResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class DepartmentSyncStatus(BaseModel):
    department_id: int
    active: bool
    sync_enabled: bool
    sync_interval: int
    last_sync: datetime | None = None
    next_sync: datetime | None = None
    ticket_count: int
    circuit_open: bool


class WorkerStatusResponse(BaseModel):
    scheduler_running: bool
    running: bool
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_run_processed: int = 0
    last_run_tickets_created: int = 0
    last_run_errors: int = 0
    tick_seconds: int
    retry_stats: dict[str, dict[str, Any]] = Field(default_factory=dict)


class ClientSyncResponse(BaseModel):
    status: str
    reason: str | None = None
    tickets_processed: int = 0
    tickets_associated: int = 0
    clients_created: int = 0
    clients_updated: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
