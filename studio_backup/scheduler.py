"""
Recurring backups driven by each user's saved ``backup_config``.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from studio_backup.audit import AuditSink
from studio_backup.db import JobStore
from studio_backup.errors import ValidationError
from studio_backup.models import (
    BACKUP_CONFIG_KEY,
    BACKUP_SCHEDULE_STATE_KEY,
    BackupConfig,
    JobType,
)
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.retention import RetentionSweeper

logger = logging.getLogger(__name__)


class BackupScheduler:
    def __init__(
        self,
        job_store: JobStore,
        orchestrator: BackupOrchestrator,
        sweeper: RetentionSweeper,
        audit_sink: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.job_store = job_store
        self.orchestrator = orchestrator
        self.sweeper = sweeper
        self.audit_sink = audit_sink
        self.clock = clock

    def schedule_backup(self, user_id: str, config: Optional[BackupConfig]) -> None:
        """Persist ``config`` as the user's recurring backup settings."""
        if not user_id:
            raise ValidationError("user_id is required")
        if config is None:
            raise ValidationError("Backup config is required")
        self.orchestrator.validate_config(config)
        self.job_store.save_setting(user_id, BACKUP_CONFIG_KEY, config.to_dict())
        try:
            self.audit_sink.log(
                "backup_scheduled",
                {
                    "enabled": config.enabled,
                    "frequency": config.frequency.value,
                    "retention_days": config.retention_days,
                    "destinations": len(config.destinations),
                },
                user_id=user_id,
            )
        except Exception:
            logger.exception("Failed to record audit event backup_scheduled")

    def last_scheduled_at(self, user_id: str) -> Optional[float]:
        """
        When the last scheduled job was queued for ``user_id``.

        Kept in its own settings row rather than read from job records,
        because the retention sweep deletes old jobs.
        """
        state = self.job_store.get_setting(user_id, BACKUP_SCHEDULE_STATE_KEY) or {}
        try:
            return float(state["last_scheduled_at"])
        except (KeyError, TypeError, ValueError):
            return None

    def is_due(self, user_id: str, config: BackupConfig, now: float) -> bool:
        last = self.last_scheduled_at(user_id)
        if last is None:
            return True
        return now - last >= config.frequency.interval_seconds

    def run_due_backups(self, now: Optional[float] = None) -> list[str]:
        """Queue a scheduled job for every enabled config whose interval elapsed."""
        now = self.clock() if now is None else now
        queued: list[str] = []
        for user_id, payload in self.job_store.list_settings(BACKUP_CONFIG_KEY):
            try:
                config = BackupConfig.from_dict(payload)
                if not config.enabled:
                    continue
                if self.is_due(user_id, config, now):
                    queued.append(
                        self.orchestrator.create_backup(user_id, config, JobType.SCHEDULED)
                    )
                    self.job_store.save_setting(
                        user_id, BACKUP_SCHEDULE_STATE_KEY, {"last_scheduled_at": now}
                    )
                self.sweeper.cleanup_old_backups(user_id, config.retention_days)
            except Exception:
                logger.exception("Scheduled backup check failed for user %s", user_id)
        if queued:
            logger.info("Queued %d scheduled backups", len(queued))
        return queued
