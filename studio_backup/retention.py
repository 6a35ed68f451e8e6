"""
Retention sweeping for backup job records.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from studio_backup.audit import AuditSink
from studio_backup.db import JobStore
from studio_backup.errors import ValidationError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class RetentionSweeper:
    """
    Deletes job records that finished more than ``retention_days`` ago.

    Only job metadata is removed; documents already written to destinations
    are left in place.
    """

    def __init__(
        self,
        job_store: JobStore,
        audit_sink: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.job_store = job_store
        self.audit_sink = audit_sink
        self.clock = clock

    def cleanup_old_backups(self, user_id: str, retention_days: int) -> int:
        if not user_id:
            raise ValidationError("user_id is required")
        if retention_days is None or retention_days < 0:
            raise ValidationError("retention_days must be >= 0")

        cutoff = self.clock() - retention_days * SECONDS_PER_DAY
        deleted = self.job_store.delete_jobs_completed_before(user_id, cutoff)
        if deleted:
            logger.info(
                "Deleted %d backup jobs older than %d days for user %s",
                len(deleted),
                retention_days,
                user_id,
            )
            try:
                self.audit_sink.log(
                    "backup_cleanup",
                    {"deleted_count": len(deleted), "retention_days": retention_days},
                    user_id=user_id,
                )
            except Exception:
                logger.exception("Failed to record audit event backup_cleanup")
        return len(deleted)
