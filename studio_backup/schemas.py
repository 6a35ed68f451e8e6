"""
Pydantic schemas for the backup API.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from studio_backup.db import BackupJob
from studio_backup.models import (
    BackupConfig,
    BackupDestination,
    BackupFrequency,
    RestoreOptions,
)


class BackupDestinationModel(BaseModel):
    type: str = Field(..., min_length=1)
    name: str
    config: dict = Field(default_factory=dict)
    enabled: bool = True

    def to_domain(self) -> BackupDestination:
        return BackupDestination(
            type=self.type, name=self.name, config=dict(self.config), enabled=self.enabled
        )


class BackupConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    frequency: Literal["daily", "weekly", "monthly"] = "weekly"
    retention_days: int = Field(
        default=30, ge=0, validation_alias=AliasChoices("retention_days", "retention")
    )
    include_files: bool = Field(default=True, alias="includeFiles")
    include_projects: bool = Field(default=True, alias="includeProjects")
    include_user_data: bool = Field(default=True, alias="includeUserData")
    include_audit_logs: bool = Field(default=False, alias="includeAuditLogs")
    destinations: list[BackupDestinationModel] = Field(default_factory=list)

    def to_domain(self) -> BackupConfig:
        return BackupConfig(
            enabled=self.enabled,
            frequency=BackupFrequency(self.frequency),
            retention_days=self.retention_days,
            include_files=self.include_files,
            include_projects=self.include_projects,
            include_user_data=self.include_user_data,
            include_audit_logs=self.include_audit_logs,
            destinations=[d.to_domain() for d in self.destinations],
        )


class RestoreOptionsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    overwrite_existing: bool = Field(default=False, alias="overwriteExisting")
    include_files: bool = Field(default=True, alias="includeFiles")
    include_projects: bool = Field(default=True, alias="includeProjects")
    include_user_data: bool = Field(default=True, alias="includeUserData")
    include_audit_logs: bool = Field(default=False, alias="includeAuditLogs")
    dry_run: bool = Field(default=False, alias="dryRun")

    def to_domain(self) -> RestoreOptions:
        return RestoreOptions(
            overwrite_existing=self.overwrite_existing,
            include_files=self.include_files,
            include_projects=self.include_projects,
            include_user_data=self.include_user_data,
            include_audit_logs=self.include_audit_logs,
            dry_run=self.dry_run,
        )


class CreateBackupRequest(BaseModel):
    config: BackupConfigModel
    type: Literal["manual", "scheduled"] = "manual"


class CreateBackupResponse(BaseModel):
    job_id: str
    message: str = "Backup started"


class ScheduleBackupRequest(BaseModel):
    config: BackupConfigModel


class RestoreRequest(BaseModel):
    document: dict[str, Any]
    options: RestoreOptionsModel = Field(default_factory=RestoreOptionsModel)


class RestoreResponse(BaseModel):
    result: dict


class CleanupRequest(BaseModel):
    retention_days: int = Field(default=30, ge=0)


class CleanupResponse(BaseModel):
    deleted_count: int
    message: str


class MessageResponse(BaseModel):
    message: str


class ConfigResponse(BaseModel):
    config: dict


class JobResponse(BaseModel):
    id: str
    user_id: str
    status: str
    type: str
    config: dict
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    size_bytes: Optional[int] = None
    items_count: Optional[int] = None
    metadata: dict
    created_at: float
    updated_at: float

    @classmethod
    def from_job(cls, job: BackupJob) -> "JobResponse":
        return cls(**job.as_dict())


class ListJobsResponse(BaseModel):
    jobs: list[JobResponse]
