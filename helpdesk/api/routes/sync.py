from __future__ import annotations

from fastapi import APIRouter, Depends

from helpdesk.api.dependencies.database import require_database
from helpdesk.schemas.sync import SyncRunResponse, WorkerStatusResponse
from helpdesk.services import email_sync
from helpdesk.services.scheduler import scheduler_service

router = APIRouter(prefix="/api/helpdesk", tags=["Helpdesk sync"])


@router.post("/sync", response_model=SyncRunResponse)
async def sync_all_departments(
    _: None = Depends(require_database),
) -> SyncRunResponse:
    """Run a sync pass over every department; department failures are reported, not raised."""
    result = await email_sync.sync_all_departments()
    return SyncRunResponse.model_validate(result)


@router.get("/worker", response_model=WorkerStatusResponse)
async def get_worker_status() -> WorkerStatusResponse:
    result = email_sync.get_worker_status()
    result["scheduler_running"] = scheduler_service.running
    return WorkerStatusResponse.model_validate(result)
