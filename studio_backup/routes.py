"""
HTTP routes for the backup API.

Authentication happens upstream; the verified user id arrives in the
``X-User-Id`` header.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from studio_backup.dependencies import get_backup_service
from studio_backup.errors import JobStateError, ValidationError
from studio_backup.models import JobType
from studio_backup.schemas import (
    CleanupRequest,
    CleanupResponse,
    ConfigResponse,
    CreateBackupRequest,
    CreateBackupResponse,
    JobResponse,
    ListJobsResponse,
    MessageResponse,
    RestoreRequest,
    RestoreResponse,
    ScheduleBackupRequest,
)
from studio_backup.service import BackupService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup")


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


@router.get("/jobs", response_model=ListJobsResponse)
def list_jobs(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    jobs = service.list_jobs(user_id, limit)
    return ListJobsResponse(jobs=[JobResponse.from_job(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    job = service.get_job(user_id, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@router.get("/config", response_model=ConfigResponse)
def get_config(
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    try:
        config = service.get_config(user_id)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ConfigResponse(config=config.to_dict())


@router.post("/create", response_model=CreateBackupResponse, status_code=202)
def create_backup(
    payload: CreateBackupRequest,
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    """
    Queue a backup job. A worker does the heavy lifting; poll the job for its status.
    """
    try:
        job_id = service.create(user_id, payload.config.to_domain(), JobType(payload.type))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return CreateBackupResponse(job_id=job_id)


@router.post("/schedule", response_model=MessageResponse)
def schedule_backup(
    payload: ScheduleBackupRequest,
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    try:
        service.schedule(user_id, payload.config.to_domain())
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return MessageResponse(message="Backup scheduled successfully")


@router.post("/restore", response_model=RestoreResponse)
def restore_backup(
    payload: RestoreRequest,
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    try:
        result = service.restore(user_id, payload.document, payload.options.to_domain())
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RestoreResponse(result=result.to_dict())


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_backups(
    payload: CleanupRequest,
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    try:
        deleted = service.cleanup(user_id, payload.retention_days)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return CleanupResponse(
        deleted_count=deleted, message=f"{deleted} old backups cleaned up"
    )


@router.delete("/jobs/{job_id}", response_model=MessageResponse)
def delete_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BackupService = Depends(get_backup_service),
):
    try:
        deleted = service.delete_job(user_id, job_id)
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not deleted:
        raise HTTPException(status_code=404, detail="Job not found")
    return MessageResponse(message="Backup deleted successfully")
