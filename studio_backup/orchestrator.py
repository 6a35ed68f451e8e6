"""
Backup job lifecycle: create, collect, hash, write, complete or fail.

``create_backup`` only records a pending job and hands its id to the queue;
a worker later calls ``process_job`` with the claimed (running) job.
"""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from studio_backup import audit
from studio_backup.audit import AuditSink
from studio_backup.collector import Collector
from studio_backup.db import BackupJob, JobStore
from studio_backup.destinations import DestinationRegistry
from studio_backup.errors import FatalProcessingError, ValidationError, public_error_message
from studio_backup.hashing import IntegrityHasher
from studio_backup.models import (
    BACKUP_FORMAT_VERSION,
    BackupConfig,
    BackupDocument,
    BackupFile,
    JobStatus,
    JobType,
)
from studio_backup.queue import JobQueue

logger = logging.getLogger(__name__)


def backup_filename(user_id: str, timestamp: float) -> str:
    return f"{user_id}_{int(timestamp * 1000)}.json"


class BackupOrchestrator:
    def __init__(
        self,
        job_store: JobStore,
        collector: Collector,
        hasher: IntegrityHasher,
        destinations: DestinationRegistry,
        audit_sink: AuditSink,
        queue: JobQueue,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.job_store = job_store
        self.collector = collector
        self.hasher = hasher
        self.destinations = destinations
        self.audit_sink = audit_sink
        self.queue = queue
        self.clock = clock

    def create_backup(
        self,
        user_id: str,
        config: Optional[BackupConfig],
        job_type: JobType = JobType.MANUAL,
    ) -> str:
        """Persist a pending job, enqueue it and return its id without waiting."""
        if not user_id:
            raise ValidationError("user_id is required")
        self.validate_config(config)

        job = self.job_store.create_backup_job(user_id, config, JobType(job_type))
        self._audit(
            "backup_initiated",
            {
                "backup_id": job.job_id,
                "backup_type": job.type.value,
                "config": {
                    "includeFiles": config.include_files,
                    "includeProjects": config.include_projects,
                    "includeUserData": config.include_user_data,
                    "includeAuditLogs": config.include_audit_logs,
                },
            },
            user_id=user_id,
        )
        self.queue.enqueue(job.job_id)
        logger.info("[%s] Backup job queued for user %s", job.job_id, user_id)
        return job.job_id

    def validate_config(self, config: Optional[BackupConfig]) -> None:
        if config is None:
            raise ValidationError("Backup config is required")
        for destination in config.enabled_destinations:
            self.destinations.validate(destination)

    def process_job(self, job: BackupJob) -> Optional[BackupJob]:
        """
        Run a claimed job to a terminal state.

        Never raises: any failure outside the per-file isolation is recorded on
        the job as ``failed`` with a redacted message.
        """
        if job.status.is_terminal:
            logger.info("[%s] Job already %s, skipping", job.job_id, job.status.value)
            return job
        try:
            if job.status == JobStatus.PENDING:
                job = self.job_store.update_job_status(job.job_id, JobStatus.RUNNING)
                if job is None:
                    return None
            return self._run(job)
        except Exception as exc:
            logger.exception("[%s] Backup failed", job.job_id)
            self._fail(job, exc)
            return self.job_store.get_job(job.job_id)

    def _run(self, job: BackupJob) -> Optional[BackupJob]:
        user_id = job.user_id
        config = job.config
        started = self.clock()

        collected = self.collector.collect(user_id, config)
        document = BackupDocument(
            version=BACKUP_FORMAT_VERSION,
            timestamp=datetime.fromtimestamp(started, tz=timezone.utc).isoformat(),
            user_id=user_id,
            data=collected.data,
        )
        items_count = collected.items_count
        total_size = 0
        skipped_files: list[str] = []

        if config.include_files:
            document.data.files = []
            for path in self.collector.list_files(user_id):
                try:
                    content = self.collector.read_file(user_id, path)
                except Exception as exc:
                    logger.warning("[%s] Failed to back up file %s: %s", job.job_id, path, exc)
                    skipped_files.append(path)
                    continue
                document.data.files.append(
                    BackupFile(
                        path=path,
                        size=len(content),
                        hash=self.hasher.hash(content),
                        payload=base64.b64encode(content).decode("ascii"),
                    )
                )
                total_size += len(content)
                items_count += 1

        try:
            serialized = document.to_json().encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise FatalProcessingError(f"Could not serialize backup document: {exc}") from exc
        backup_hash = self.hasher.hash(serialized)
        total_size += len(serialized)

        filename = backup_filename(user_id, started)
        locations = []
        for destination in config.enabled_destinations:
            locations.append(
                self.destinations.store(destination, user_id, filename, serialized)
            )
            stored = self.destinations.fetch(destination, user_id, filename)
            if not self.hasher.verify(stored, backup_hash):
                raise FatalProcessingError(
                    f"Stored copy at {destination.name} does not match the backup hash"
                )

        metadata = {"backup_hash": backup_hash, "filename": filename, "destinations": locations}
        if collected.errors:
            metadata["collection_errors"] = collected.errors
        if skipped_files:
            metadata["skipped_files"] = skipped_files

        completed = self.job_store.update_job_status(
            job.job_id,
            JobStatus.COMPLETED,
            size_bytes=total_size,
            items_count=items_count,
            metadata=metadata,
        )
        logger.info(
            "[%s] Backup completed: %d items, %d bytes, hash %s",
            job.job_id,
            items_count,
            total_size,
            backup_hash,
        )
        self._audit(
            "backup_completed",
            {
                "backup_id": job.job_id,
                "size_mb": round(total_size / 1024 / 1024, 2),
                "items_count": items_count,
                "backup_hash": backup_hash,
            },
            user_id=user_id,
        )
        return completed

    def _fail(self, job: BackupJob, exc: Exception) -> None:
        try:
            self.job_store.update_job_status(
                job.job_id, JobStatus.FAILED, error=public_error_message(exc)
            )
        except Exception:
            logger.exception("[%s] Could not mark job as failed", job.job_id)
        self._audit(
            "backup_failed",
            {
                "backup_id": job.job_id,
                "error": str(exc) or exc.__class__.__name__,
                "error_type": exc.__class__.__name__,
            },
            severity=audit.ERROR,
            user_id=job.user_id,
        )

    def _audit(
        self,
        action: str,
        details: dict,
        *,
        severity: str = audit.INFO,
        user_id: Optional[str] = None,
    ) -> None:
        try:
            self.audit_sink.log(action, details, severity=severity, user_id=user_id)
        except Exception:
            logger.exception("Failed to record audit event %s", action)
