import tempfile
import unittest

from studio_backup import datastore
from studio_backup.audit import InMemoryAuditSink
from studio_backup.collector import Collector
from studio_backup.datastore import InMemoryUserDataStore
from studio_backup.db import InMemoryJobStore
from studio_backup.destinations import build_default_registry
from studio_backup.hashing import IntegrityHasher
from studio_backup.models import BackupConfig, JobStatus
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.queue import InMemoryJobQueue
from studio_backup.storage import InMemoryStorageClient
from studio_backup.worker import drain, process_next


class WorkerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.store = InMemoryJobStore()
        self.queue = InMemoryJobQueue()
        self.data = InMemoryUserDataStore()
        self.orchestrator = BackupOrchestrator(
            job_store=self.store,
            collector=Collector(self.data, InMemoryStorageClient()),
            hasher=IntegrityHasher(),
            destinations=build_default_registry(self.tmp.name),
            audit_sink=InMemoryAuditSink(),
            queue=self.queue,
        )

    def _process(self):
        return process_next(
            orchestrator=self.orchestrator, store=self.store, queue=self.queue, block=False
        )

    def test_process_once_no_jobs(self):
        self.assertFalse(self._process())

    def test_unknown_job_id_is_ignored(self):
        self.queue.enqueue("missing")
        self.assertFalse(self._process())

    def test_process_once_completes_job(self):
        self.data.upsert_row(datastore.PROJECTS, {"id": "p1", "user_id": "user-1"})
        job_id = self.orchestrator.create_backup("user-1", BackupConfig.default())
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.PENDING)

        self.assertTrue(self._process())

        updated = self.store.get_job(job_id)
        self.assertEqual(updated.status, JobStatus.COMPLETED)
        self.assertEqual(updated.items_count, 1)
        self.assertIsNotNone(updated.completed_at)

    def test_second_job_for_busy_user_is_requeued(self):
        first = self.store.create_backup_job("user-1", BackupConfig.default())
        self.store.claim_job(first.job_id)
        second = self.orchestrator.create_backup("user-1", BackupConfig.default())

        self.assertFalse(self._process())
        self.assertEqual(self.store.get_job(second).status, JobStatus.PENDING)
        self.assertEqual(list(self.queue.items), [second])

    def test_unqueued_pending_jobs_are_picked_up(self):
        job = self.store.create_backup_job("user-1", BackupConfig.default())
        self.assertTrue(self._process())
        self.assertEqual(self.store.get_job(job.job_id).status, JobStatus.COMPLETED)

    def test_drain_runs_every_queued_job(self):
        ids = [
            self.orchestrator.create_backup(user, BackupConfig.default())
            for user in ("user-1", "user-2", "user-3")
        ]
        processed = drain(orchestrator=self.orchestrator, store=self.store, queue=self.queue)
        self.assertEqual(processed, 3)
        for job_id in ids:
            self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
