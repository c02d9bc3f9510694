from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from helpdesk.api.dependencies.database import require_database
from helpdesk.schemas.departments import (
    ConnectionTestResponse,
    DepartmentCreate,
    DepartmentResponse,
    DepartmentUpdate,
)
from helpdesk.schemas.sync import DepartmentSyncResponse, DepartmentSyncStatus
from helpdesk.services import departments as departments_service
from helpdesk.services import email_sync

router = APIRouter(prefix="/api/helpdesk/departments", tags=["Helpdesk departments"])


@router.get("", response_model=list[DepartmentResponse])
async def list_departments(
    _: None = Depends(require_database),
) -> list[DepartmentResponse]:
    departments = await departments_service.list_departments()
    return [DepartmentResponse.model_validate(department) for department in departments]


@router.post("", response_model=DepartmentResponse, status_code=status.HTTP_201_CREATED)
async def create_department(
    payload: DepartmentCreate,
    _: None = Depends(require_database),
) -> DepartmentResponse:
    data = payload.model_dump(exclude={"imap_password", "smtp_password"})
    if payload.imap_password is not None:
        data["imap_password"] = payload.imap_password.get_secret_value()
    if payload.smtp_password is not None:
        data["smtp_password"] = payload.smtp_password.get_secret_value()
    try:
        department = await departments_service.create_department(data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return DepartmentResponse.model_validate(department)


@router.get("/{department_id}", response_model=DepartmentResponse)
async def get_department(
    department_id: int,
    _: None = Depends(require_database),
) -> DepartmentResponse:
    department = await departments_service.get_department(department_id)
    if not department:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Department not found")
    return DepartmentResponse.model_validate(department)


@router.put("/{department_id}", response_model=DepartmentResponse)
async def update_department(
    department_id: int,
    payload: DepartmentUpdate,
    _: None = Depends(require_database),
) -> DepartmentResponse:
    data = payload.model_dump(exclude_unset=True, exclude={"imap_password", "smtp_password"})
    if payload.imap_password is not None:
        data["imap_password"] = payload.imap_password.get_secret_value()
    if payload.smtp_password is not None:
        data["smtp_password"] = payload.smtp_password.get_secret_value()
    try:
        department = await departments_service.update_department(department_id, data)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return DepartmentResponse.model_validate(department)


@router.delete("/{department_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_department(
    department_id: int,
    _: None = Depends(require_database),
) -> None:
    try:
        await departments_service.delete_department(department_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return None


@router.post("/{department_id}/sync", response_model=DepartmentSyncResponse)
async def sync_department(
    department_id: int,
    _: None = Depends(require_database),
) -> DepartmentSyncResponse:
    department = await departments_service.get_department(department_id)
    if not department:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Department not found")
    result = await email_sync.sync_department(department_id)
    return DepartmentSyncResponse.model_validate(result)


@router.get("/{department_id}/sync", response_model=DepartmentSyncStatus)
async def get_sync_status(
    department_id: int,
    _: None = Depends(require_database),
) -> DepartmentSyncStatus:
    result = await email_sync.get_department_sync_status(department_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Department not found")
    return DepartmentSyncStatus.model_validate(result)


@router.post("/{department_id}/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    department_id: int,
    _: None = Depends(require_database),
) -> ConnectionTestResponse:
    try:
        result = await departments_service.test_connections(department_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ConnectionTestResponse.model_validate(result)
