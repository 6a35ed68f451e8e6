import json
import tempfile
import unittest
from pathlib import Path

from studio_backup import datastore
from studio_backup.audit import InMemoryAuditSink
from studio_backup.collector import Collector
from studio_backup.datastore import InMemoryUserDataStore
from studio_backup.db import InMemoryJobStore
from studio_backup.destinations import build_default_registry
from studio_backup.errors import GENERIC_FAILURE_MESSAGE, ValidationError
from studio_backup.hashing import IntegrityHasher
from studio_backup.models import BackupConfig, BackupDestination, JobStatus
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.queue import InMemoryJobQueue
from studio_backup.storage import InMemoryStorageClient
from studio_backup.worker import drain


class FlakyStorage(InMemoryStorageClient):
    def get_bytes(self, path):
        if path.endswith("broken.png"):
            raise OSError("disk read error")
        return super().get_bytes(path)


class BrokenWriter:
    def validate(self, destination):
        pass

    def store(self, destination, user_id, filename, payload):
        raise OSError("/srv/backups is read-only")

    def fetch(self, destination, user_id, filename):
        raise OSError("unavailable")


class CorruptingWriter(BrokenWriter):
    def __init__(self):
        self.stored = {}

    def store(self, destination, user_id, filename, payload):
        self.stored[filename] = payload
        return f"memory://{filename}"

    def fetch(self, destination, user_id, filename):
        return self.stored[filename][:-1]


class BackupOrchestratorTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.store = InMemoryJobStore()
        self.data = InMemoryUserDataStore()
        self.storage = FlakyStorage()
        self.queue = InMemoryJobQueue()
        self.audit = InMemoryAuditSink()
        self.hasher = IntegrityHasher()
        self.registry = build_default_registry(self.tmp.name)
        self.orchestrator = BackupOrchestrator(
            job_store=self.store,
            collector=Collector(self.data, self.storage),
            hasher=self.hasher,
            destinations=self.registry,
            audit_sink=self.audit,
            queue=self.queue,
        )

    def _config(self, **overrides):
        payload = {"destinations": [{"type": "local", "name": "Local Storage"}]}
        payload.update(overrides)
        return BackupConfig.from_dict(payload)

    def _run(self, user_id, config):
        job_id = self.orchestrator.create_backup(user_id, config)
        drain(orchestrator=self.orchestrator, store=self.store, queue=self.queue)
        return self.store.get_job(job_id)

    def _seed(self, user_id, projects=0):
        self.data.upsert_row(datastore.PROFILES, {"id": user_id, "email": f"{user_id}@example.test"})
        for index in range(projects):
            self.data.upsert_row(
                datastore.PROJECTS,
                {"id": f"{user_id}-p{index}", "user_id": user_id, "name": f"Project {index}"},
            )

    def test_create_requires_user_and_config(self):
        with self.assertRaises(ValidationError):
            self.orchestrator.create_backup("", BackupConfig.default())
        with self.assertRaises(ValidationError):
            self.orchestrator.create_backup("user-1", None)
        self.assertEqual(self.store.jobs, {})

    def test_create_returns_pending_job_and_audits(self):
        job_id = self.orchestrator.create_backup("user-1", BackupConfig.default())
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.PENDING)
        self.assertEqual(list(self.queue.items), [job_id])
        self.assertEqual(self.audit.actions(), ["backup_initiated"])

    def test_all_domains_disabled_yields_empty_backup(self):
        self._seed("user-1", projects=2)
        job = self._run(
            "user-1",
            self._config(
                includeFiles=False,
                includeProjects=False,
                includeUserData=False,
                includeAuditLogs=False,
            ),
        )
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.items_count, 0)

    def test_projects_only_backup_counts_rows(self):
        self._seed("user-1", projects=3)
        job = self._run(
            "user-1",
            self._config(includeFiles=False, includeUserData=False),
        )
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.items_count, 3)
        self.assertEqual(job.metadata["filename"].split("_")[0], "user-1")
        self.assertEqual(
            self.audit.actions(), ["backup_initiated", "backup_completed"]
        )

    def test_written_document_matches_recorded_hash(self):
        self._seed("user-1", projects=1)
        job = self._run("user-1", self._config())

        [location] = job.metadata["destinations"]
        payload = Path(location).read_bytes()
        self.assertTrue(Path(location).name.startswith("backup_user-1_"))
        self.assertEqual(self.hasher.hash(payload), job.metadata["backup_hash"])
        self.assertEqual(job.size_bytes, len(payload))

        document = json.loads(payload)
        self.assertEqual(document["user_id"], "user-1")
        self.assertEqual(document["data"]["profile"]["id"], "user-1")
        self.assertEqual(document["data"]["files"], [])

    def test_backups_are_isolated_per_user(self):
        self._seed("user-a", projects=2)
        self._seed("user-b", projects=1)
        self.storage.put_bytes("user-b/secret.png", b"b-only")

        job = self._run("user-a", self._config())
        payload = Path(job.metadata["destinations"][0]).read_text()
        self.assertNotIn("user-b", payload)
        self.assertNotIn("secret.png", payload)

    def test_unreadable_file_is_skipped(self):
        self.storage.put_bytes("user-1/ok.png", b"fine")
        self.storage.put_bytes("user-1/broken.png", b"never read")

        job = self._run("user-1", self._config(includeUserData=False, includeProjects=False))
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.items_count, 1)
        self.assertEqual(job.metadata["skipped_files"], ["broken.png"])

        document = json.loads(Path(job.metadata["destinations"][0]).read_bytes())
        [entry] = document["data"]["files"]
        self.assertEqual(entry["path"], "ok.png")
        self.assertEqual(entry["hash"], self.hasher.hash(b"fine"))

    def test_credential_refs_never_carry_key_material(self):
        self.data.upsert_row(
            datastore.API_KEYS,
            {"id": "k1", "user_id": "user-1", "provider": "openai", "encrypted_key": "enc-zzz"},
        )
        job = self._run("user-1", self._config(includeFiles=False))
        payload = Path(job.metadata["destinations"][0]).read_text()
        self.assertIn("openai", payload)
        self.assertNotIn("enc-zzz", payload)
        self.assertNotIn("encrypted_key", payload)

    def test_destination_outside_backup_dir_is_rejected_before_queueing(self):
        config = self._config(
            destinations=[{"type": "local", "name": "Escape", "config": {"path": "../escape"}}]
        )
        with self.assertRaises(ValidationError):
            self.orchestrator.create_backup("user-1", config)
        self.assertEqual(self.store.jobs, {})
        self.assertEqual(list(self.queue.items), [])
        self.assertEqual(self.audit.actions(), [])

    def test_unsupported_destination_fails_job(self):
        config = BackupConfig(
            include_files=False,
            destinations=[BackupDestination(type="gcs", name="Cloud")],
        )
        job = self._run("user-1", config)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("not supported", job.error)
        self.assertIsNotNone(job.completed_at)
        failed = [e for e in self.audit.events if e.action == "backup_failed"]
        self.assertEqual(failed[0].severity, "error")

    def test_internal_errors_are_redacted(self):
        self.registry.register("local", BrokenWriter())
        job = self._run("user-1", self._config(includeFiles=False))
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error, GENERIC_FAILURE_MESSAGE)
        self.assertNotIn("/srv/backups", job.error)

    def test_stored_copy_is_read_back_and_verified(self):
        self.registry.register("local", CorruptingWriter())
        job = self._run("user-1", self._config(includeFiles=False))
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error, GENERIC_FAILURE_MESSAGE)
        failed = [e for e in self.audit.events if e.action == "backup_failed"]
        self.assertIn("does not match the backup hash", failed[0].details["error"])

    def test_failing_domain_is_recorded_but_job_completes(self):
        self._seed("user-1", projects=2)
        original = self.data.list_rows

        def list_rows(table, user_id, **kwargs):
            if table == datastore.TEMPLATES:
                raise RuntimeError("templates table missing")
            return original(table, user_id, **kwargs)

        self.data.list_rows = list_rows
        job = self._run("user-1", self._config(includeFiles=False))
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.metadata["collection_errors"], ["templates"])
        self.assertEqual(job.items_count, 3)

    def test_terminal_job_is_not_reprocessed(self):
        job_id = self.orchestrator.create_backup("user-1", self._config(includeFiles=False))
        drain(orchestrator=self.orchestrator, store=self.store, queue=self.queue)
        job = self.store.get_job(job_id)
        completed_at = job.completed_at

        self.orchestrator.process_job(job)
        self.assertEqual(self.store.get_job(job_id).completed_at, completed_at)


class CollectorTests(unittest.TestCase):
    class LeakyStore(InMemoryUserDataStore):
        """Returns every row regardless of owner."""

        def get_profile(self, user_id):
            return {"id": "intruder"}

        def list_rows(self, table, user_id, **kwargs):
            return [dict(row) for row in self.tables[table].values()]

    def test_foreign_rows_are_dropped(self):
        store = self.LeakyStore()
        store.upsert_row(datastore.PROJECTS, {"id": "p1", "user_id": "user-1"})
        store.upsert_row(datastore.PROJECTS, {"id": "p2", "user_id": "user-2"})
        collector = Collector(store, InMemoryStorageClient())

        result = collector.collect("user-1", BackupConfig())
        self.assertIsNone(result.data.profile)
        self.assertEqual([p["id"] for p in result.data.projects], ["p1"])
        self.assertEqual(result.items_count, 1)

    def test_audit_logs_are_limited_to_newest(self):
        store = InMemoryUserDataStore()
        for index in range(5):
            store.upsert_row(
                datastore.AUDIT_LOGS,
                {"id": f"a{index}", "user_id": "user-1", "created_at": f"2024-01-0{index + 1}"},
            )
        collector = Collector(store, InMemoryStorageClient(), audit_log_limit=2)
        logs = collector.fetch_audit_logs("user-1")
        self.assertEqual([row["id"] for row in logs], ["a4", "a3"])

    def test_gating_follows_flags(self):
        store = InMemoryUserDataStore()
        store.upsert_row(datastore.PROFILES, {"id": "user-1"})
        store.upsert_row(datastore.TEMPLATES, {"id": "t1", "user_id": "user-1"})
        store.upsert_row(datastore.GENERATIONS, {"id": "g1", "user_id": "user-1"})
        store.upsert_row(datastore.AUDIT_LOGS, {"id": "a1", "user_id": "user-1"})
        collector = Collector(store, InMemoryStorageClient())

        result = collector.collect(
            "user-1", BackupConfig(include_user_data=False, include_audit_logs=True)
        )
        self.assertIsNone(result.data.profile)
        self.assertIsNone(result.data.templates)
        self.assertEqual(len(result.data.generations), 1)
        self.assertEqual(len(result.data.audit_logs), 1)

    def test_list_files_is_relative_to_user(self):
        storage = InMemoryStorageClient()
        storage.put_bytes("user-1/a.png", b"a")
        storage.put_bytes("user-1/nested/b.png", b"b")
        storage.put_bytes("user-10/c.png", b"c")
        collector = Collector(InMemoryUserDataStore(), storage)
        self.assertEqual(collector.list_files("user-1"), ["a.png", "nested/b.png"])


if __name__ == "__main__":
    unittest.main()
