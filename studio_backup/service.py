"""
Request-level operations behind the HTTP routes.

The caller has already authenticated ``user_id``; every operation is scoped
to it.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from studio_backup.audit import AuditSink
from studio_backup.db import BackupJob, JobStore
from studio_backup.errors import ValidationError
from studio_backup.models import (
    BACKUP_CONFIG_KEY,
    BackupConfig,
    BackupDocument,
    JobType,
    RestoreOptions,
    RestoreResult,
)
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.restore import RestoreOrchestrator
from studio_backup.retention import RetentionSweeper
from studio_backup.scheduler import BackupScheduler

logger = logging.getLogger(__name__)

DEFAULT_JOB_LIMIT = 50
DEFAULT_RETENTION_DAYS = 30


class BackupService:
    def __init__(
        self,
        job_store: JobStore,
        orchestrator: BackupOrchestrator,
        restorer: RestoreOrchestrator,
        sweeper: RetentionSweeper,
        scheduler: BackupScheduler,
        audit_sink: AuditSink,
    ):
        self.job_store = job_store
        self.orchestrator = orchestrator
        self.restorer = restorer
        self.sweeper = sweeper
        self.scheduler = scheduler
        self.audit_sink = audit_sink

    def list_jobs(self, user_id: str, limit: int = DEFAULT_JOB_LIMIT) -> list[BackupJob]:
        return self.job_store.list_jobs(user_id, limit=max(1, limit))

    def get_job(self, user_id: str, job_id: str) -> Optional[BackupJob]:
        if not job_id:
            raise ValidationError("Job ID required")
        job = self.job_store.get_job(job_id)
        if job is None or job.user_id != user_id:
            return None
        return job

    def get_config(self, user_id: str) -> BackupConfig:
        stored = self.job_store.get_setting(user_id, BACKUP_CONFIG_KEY)
        if stored is None:
            return BackupConfig.default()
        return BackupConfig.from_dict(stored)

    def create(
        self,
        user_id: str,
        config: Optional[BackupConfig],
        job_type: JobType = JobType.MANUAL,
    ) -> str:
        return self.orchestrator.create_backup(user_id, config, job_type)

    def schedule(self, user_id: str, config: Optional[BackupConfig]) -> None:
        self.scheduler.schedule_backup(user_id, config)

    def restore(
        self,
        user_id: str,
        document: Union[BackupDocument, dict],
        options: Optional[RestoreOptions] = None,
    ) -> RestoreResult:
        return self.restorer.restore_backup(user_id, document, options)

    def cleanup(self, user_id: str, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        return self.sweeper.cleanup_old_backups(user_id, retention_days)

    def delete_job(self, user_id: str, job_id: str) -> bool:
        """Delete one of the user's jobs. Returns False when it does not exist."""
        if not job_id:
            raise ValidationError("Job ID required")
        deleted = self.job_store.delete_job(job_id, user_id)
        if deleted:
            try:
                self.audit_sink.log("backup_deleted", {"backup_id": job_id}, user_id=user_id)
            except Exception:
                logger.exception("Failed to record audit event backup_deleted")
        return deleted
