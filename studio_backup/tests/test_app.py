import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from studio_backup import datastore
from studio_backup.app import create_app
from studio_backup.audit import InMemoryAuditSink
from studio_backup.collector import Collector
from studio_backup.config import Settings
from studio_backup.datastore import InMemoryUserDataStore
from studio_backup.db import InMemoryJobStore
from studio_backup.dependencies import get_backup_service
from studio_backup.destinations import build_default_registry
from studio_backup.hashing import IntegrityHasher
from studio_backup.models import BACKUP_CONFIG_KEY
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.queue import InMemoryJobQueue
from studio_backup.restore import RestoreOrchestrator
from studio_backup.retention import RetentionSweeper
from studio_backup.scheduler import BackupScheduler
from studio_backup.service import BackupService
from studio_backup.storage import InMemoryStorageClient
from studio_backup.worker import drain

HEADERS = {"X-User-Id": "user-1"}


class BackupApiTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

        self.store = InMemoryJobStore()
        self.data = InMemoryUserDataStore()
        self.storage = InMemoryStorageClient()
        self.queue = InMemoryJobQueue()
        self.audit = InMemoryAuditSink()
        hasher = IntegrityHasher()
        self.orchestrator = BackupOrchestrator(
            job_store=self.store,
            collector=Collector(self.data, self.storage),
            hasher=hasher,
            destinations=build_default_registry(self.tmp.name),
            audit_sink=self.audit,
            queue=self.queue,
        )
        sweeper = RetentionSweeper(self.store, self.audit)
        self.service = BackupService(
            job_store=self.store,
            orchestrator=self.orchestrator,
            restorer=RestoreOrchestrator(self.data, self.storage, hasher, self.audit, self.store),
            sweeper=sweeper,
            scheduler=BackupScheduler(self.store, self.orchestrator, sweeper, self.audit),
            audit_sink=self.audit,
        )

        app = create_app()
        app.dependency_overrides[get_backup_service] = lambda: self.service
        self.client = TestClient(app)

    def _drain(self):
        return drain(orchestrator=self.orchestrator, store=self.store, queue=self.queue)

    def _create(self, **config):
        response = self.client.post(
            "/api/backup/create", json={"config": config}, headers=HEADERS
        )
        self.assertEqual(response.status_code, 202)
        return response.json()["job_id"]

    def test_requests_without_user_are_rejected(self):
        response = self.client.get("/api/backup/jobs")
        self.assertEqual(response.status_code, 401)

    def test_default_config(self):
        response = self.client.get("/api/backup/config", headers=HEADERS)
        self.assertEqual(response.status_code, 200)
        config = response.json()["config"]
        self.assertEqual(config["frequency"], "weekly")
        self.assertEqual(config["destinations"][0]["type"], "local")

    def test_create_backup_and_poll_status(self):
        self.data.upsert_row(datastore.PROJECTS, {"id": "p1", "user_id": "user-1"})
        job_id = self._create(
            destinations=[{"type": "local", "name": "Local Storage"}],
            includeFiles=False,
        )

        status = self.client.get(f"/api/backup/jobs/{job_id}", headers=HEADERS)
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json()["status"], "pending")

        self.assertEqual(self._drain(), 1)
        status = self.client.get(f"/api/backup/jobs/{job_id}", headers=HEADERS)
        payload = status.json()
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(payload["items_count"], 1)
        self.assertIn("backup_hash", payload["metadata"])

        listing = self.client.get("/api/backup/jobs", headers=HEADERS)
        self.assertEqual([job["id"] for job in listing.json()["jobs"]], [job_id])

    def test_jobs_of_other_users_are_hidden(self):
        job_id = self._create()
        response = self.client.get(
            f"/api/backup/jobs/{job_id}", headers={"X-User-Id": "user-2"}
        )
        self.assertEqual(response.status_code, 404)
        listing = self.client.get("/api/backup/jobs", headers={"X-User-Id": "user-2"})
        self.assertEqual(listing.json()["jobs"], [])

    def test_negative_retention_is_rejected(self):
        response = self.client.post(
            "/api/backup/create", json={"config": {"retention_days": -1}}, headers=HEADERS
        )
        self.assertEqual(response.status_code, 422)
        response = self.client.post(
            "/api/backup/cleanup", json={"retention_days": -5}, headers=HEADERS
        )
        self.assertEqual(response.status_code, 422)

    def test_destinations_outside_backup_area_are_rejected(self):
        outside = Path(self.tmp.name).parent / f"{Path(self.tmp.name).name}-outside"
        bad_destinations = [
            {"type": "local", "name": "Escape", "config": {"path": str(outside)}},
            {"type": "local", "name": "Escape", "config": {"path": "../outside"}},
            {"type": "s3", "name": "Assets", "config": {"bucket": "assets", "prefix": "user-2/"}},
        ]
        for destination in bad_destinations:
            response = self.client.post(
                "/api/backup/create",
                json={"config": {"destinations": [destination]}},
                headers=HEADERS,
            )
            self.assertEqual(response.status_code, 400)
            response = self.client.post(
                "/api/backup/schedule",
                json={"config": {"enabled": True, "destinations": [destination]}},
                headers=HEADERS,
            )
            self.assertEqual(response.status_code, 400)

        self.assertEqual(self._drain(), 0)
        self.assertEqual(self.store.jobs, {})
        self.assertFalse(outside.exists())
        self.assertEqual(list(Path(self.tmp.name).rglob("backup_*")), [])

    def test_local_subdirectory_stays_in_backup_dir(self):
        job_id = self._create(
            destinations=[{"type": "local", "name": "Nightly", "config": {"path": "nightly"}}],
        )
        self._drain()
        job = self.store.get_job(job_id)
        self.assertEqual(job.status.value, "completed")
        [location] = job.metadata["destinations"]
        self.assertEqual(Path(location).parent.resolve(), (Path(self.tmp.name) / "nightly").resolve())

    def test_corrupt_stored_config_is_a_bad_request(self):
        self.store.save_setting("user-1", BACKUP_CONFIG_KEY, {"retention_days": "soon"})
        response = self.client.get("/api/backup/config", headers=HEADERS)
        self.assertEqual(response.status_code, 400)
        self.assertIn("retention_days", response.json()["detail"])

    def test_schedule_saves_config(self):
        response = self.client.post(
            "/api/backup/schedule",
            json={"config": {"enabled": True, "frequency": "daily", "retention": 7}},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 200)
        config = self.client.get("/api/backup/config", headers=HEADERS).json()["config"]
        self.assertTrue(config["enabled"])
        self.assertEqual(config["frequency"], "daily")
        self.assertEqual(config["retention_days"], 7)
        self.assertIn("backup_scheduled", self.audit.actions())

    def test_delete_and_cleanup(self):
        first = self._create()
        second = self._create()
        self._drain()

        response = self.client.delete(f"/api/backup/jobs/{first}", headers=HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.store.get_job(first))
        response = self.client.delete(f"/api/backup/jobs/{first}", headers=HEADERS)
        self.assertEqual(response.status_code, 404)

        response = self.client.post(
            "/api/backup/cleanup", json={"retention_days": 0}, headers=HEADERS
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deleted_count"], 1)
        self.assertIsNone(self.store.get_job(second))

    def test_delete_running_job_conflicts(self):
        job = self.store.create_backup_job("user-1", self.service.get_config("user-1"))
        self.store.claim_job(job.job_id)
        response = self.client.delete(f"/api/backup/jobs/{job.job_id}", headers=HEADERS)
        self.assertEqual(response.status_code, 409)

    def test_restore_dry_run(self):
        document = {
            "version": "1.0.0",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "user_id": "someone-else",
            "data": {"projects": [{"id": "p1", "user_id": "someone-else", "name": "A"}]},
        }
        response = self.client.post(
            "/api/backup/restore",
            json={"document": document, "options": {"dryRun": True}},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 200)
        result = response.json()["result"]
        self.assertTrue(result["success"])
        self.assertEqual(result["restored_items"]["projects"], 0)
        self.assertEqual(result["planned_items"]["projects"], 1)
        self.assertEqual(self.data.write_count, 0)

    def test_restore_without_data_section_is_rejected(self):
        response = self.client.post(
            "/api/backup/restore",
            json={"document": {"version": "1.0.0"}},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 200)
        result = response.json()["result"]
        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "Backup document has no data section")


class SettingsTests(unittest.TestCase):
    def test_assets_bucket_is_never_a_backup_bucket(self):
        settings = Settings(backup_buckets="nightly, archive,assets", assets_bucket="assets")
        self.assertEqual(settings.allowed_backup_buckets, ["nightly", "archive"])


if __name__ == "__main__":
    unittest.main()
