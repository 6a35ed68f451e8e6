"""
Worker loop that runs queued backup jobs.

Run ``python -m studio_backup.worker`` under systemd/supervisor, or set
``IN_PROCESS_WORKERS`` to start a ``WorkerPool`` inside the API process.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from studio_backup.config import get_settings
from studio_backup.db import BackupJob, JobStore
from studio_backup.dependencies import get_backup_service, get_job_store, get_queue_client
from studio_backup.models import JobStatus
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.queue import JobQueue

logger = logging.getLogger(__name__)

SCHEDULE_CHECK_INTERVAL_SECONDS = 60.0


def process_next(
    *,
    orchestrator: Optional[BackupOrchestrator] = None,
    store: Optional[JobStore] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Fetch and run one job from the queue (or DB fallback). Returns True if a job ran.

    A job whose user already has a running backup is put back on the queue.
    """
    orchestrator = orchestrator or get_backup_service().orchestrator
    store = store or get_job_store()
    queue = queue or get_queue_client()

    job_id = queue.dequeue(block=block, timeout=timeout)
    job: Optional[BackupJob] = None

    if job_id:
        existing = store.get_job(job_id)
        if not existing:
            logger.warning("Received job_id %s from queue but no DB record found", job_id)
            return False
        if existing.status != JobStatus.PENDING:
            logger.info("[%s] Job is %s, nothing to do", job_id, existing.status.value)
            return False
        job = store.claim_job(job_id)
        if job is None:
            current = store.get_job(job_id)
            if current and current.status == JobStatus.PENDING:
                logger.info(
                    "[%s] User %s already has a backup running, requeueing",
                    job_id,
                    current.user_id,
                )
                queue.enqueue(job_id)
            return False
    else:
        # Fallback polling for pending jobs that were never queued.
        job = store.claim_next_pending_job()
        if not job:
            return False

    orchestrator.process_job(job)
    return True


def drain(
    *,
    orchestrator: Optional[BackupOrchestrator] = None,
    store: Optional[JobStore] = None,
    queue: Optional[JobQueue] = None,
) -> int:
    """Run queued jobs without blocking until none is left. Returns how many ran."""
    processed = 0
    while process_next(
        orchestrator=orchestrator, store=store, queue=queue, block=False
    ):
        processed += 1
    return processed


class WorkerPool:
    """A fixed number of daemon threads pulling jobs from the shared queue."""

    def __init__(self, size: int, poll_interval_seconds: float = 2.0):
        self.size = size
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for index in range(self.size):
            thread = threading.Thread(
                target=self._work, name=f"backup-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d backup workers", self.size)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()

    def _work(self) -> None:
        while not self._stop.is_set():
            try:
                processed = process_next(
                    block=True, timeout=max(1, int(self.poll_interval_seconds))
                )
            except Exception:
                logger.exception("Backup worker iteration failed")
                processed = False
            if not processed:
                self._stop.wait(self.poll_interval_seconds)


def run_loop(poll_interval_seconds: Optional[float] = None) -> None:
    """
    Simple polling loop that blocks on the queue and queues due scheduled backups.
    """
    logging.basicConfig(level=logging.INFO)
    poll_interval_seconds = poll_interval_seconds or get_settings().worker_poll_interval_seconds
    service = get_backup_service()
    last_schedule_check = 0.0
    while True:
        now = time.time()
        if now - last_schedule_check >= SCHEDULE_CHECK_INTERVAL_SECONDS:
            try:
                service.scheduler.run_due_backups(now)
            except Exception:
                logger.exception("Failed to queue scheduled backups")
            last_schedule_check = now
        processed = process_next(block=True, timeout=int(poll_interval_seconds))
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    run_loop()
