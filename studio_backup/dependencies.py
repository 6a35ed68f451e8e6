"""
Dependency wiring for the FastAPI app and workers.

Collaborators are built once per process and injected into the
orchestrators explicitly; ``reset_dependencies`` drops them (tests).
"""

from __future__ import annotations

from studio_backup.audit import AuditSink, LoggingAuditSink
from studio_backup.collector import Collector
from studio_backup.config import get_settings
from studio_backup.datastore import InMemoryUserDataStore, PostgresUserDataStore, UserDataStore
from studio_backup.db import InMemoryJobStore, JobStore, PostgresJobStore
from studio_backup.destinations import DestinationRegistry, build_default_registry
from studio_backup.hashing import IntegrityHasher
from studio_backup.orchestrator import BackupOrchestrator
from studio_backup.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from studio_backup.restore import RestoreOrchestrator
from studio_backup.retention import RetentionSweeper
from studio_backup.scheduler import BackupScheduler
from studio_backup.service import BackupService
from studio_backup.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_job_store: JobStore | None = None
_data_store: UserDataStore | None = None
_storage_client: StorageClient | None = None
_queue_client: JobQueue | None = None
_audit_sink: AuditSink | None = None
_destinations: DestinationRegistry | None = None
_backup_service: BackupService | None = None


def get_job_store() -> JobStore:
    """
    Return a singleton job store so job/status state persists across requests.
    """
    global _job_store
    if _job_store:
        return _job_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _job_store = InMemoryJobStore()
    else:
        _job_store = PostgresJobStore(settings.database_url)
    return _job_store


def get_data_store() -> UserDataStore:
    global _data_store
    if _data_store:
        return _data_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _data_store = InMemoryUserDataStore()
    else:
        _data_store = PostgresUserDataStore(settings.database_url)
    return _data_store


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.assets_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.assets_bucket,
            region=settings.assets_region or "",
            endpoint=settings.assets_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    return _storage_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching jobs to workers.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_audit_sink() -> AuditSink:
    global _audit_sink
    if _audit_sink:
        return _audit_sink
    _audit_sink = LoggingAuditSink()
    return _audit_sink


def get_destinations() -> DestinationRegistry:
    global _destinations
    if _destinations:
        return _destinations
    settings = get_settings()
    _destinations = build_default_registry(
        settings.local_backup_dir,
        s3_endpoint=settings.backup_s3_endpoint,
        s3_region=settings.backup_s3_region,
        allowed_buckets=settings.allowed_backup_buckets,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
    )
    return _destinations


def get_backup_service() -> BackupService:
    global _backup_service
    if _backup_service:
        return _backup_service

    settings = get_settings()
    job_store = get_job_store()
    data_store = get_data_store()
    storage = get_storage_client()
    audit_sink = get_audit_sink()
    hasher = IntegrityHasher()

    orchestrator = BackupOrchestrator(
        job_store=job_store,
        collector=Collector(data_store, storage, audit_log_limit=settings.audit_log_limit),
        hasher=hasher,
        destinations=get_destinations(),
        audit_sink=audit_sink,
        queue=get_queue_client(),
    )
    sweeper = RetentionSweeper(job_store, audit_sink)
    _backup_service = BackupService(
        job_store=job_store,
        orchestrator=orchestrator,
        restorer=RestoreOrchestrator(data_store, storage, hasher, audit_sink, job_store),
        sweeper=sweeper,
        scheduler=BackupScheduler(job_store, orchestrator, sweeper, audit_sink),
        audit_sink=audit_sink,
    )
    return _backup_service


def reset_dependencies() -> None:
    global _job_store, _data_store, _storage_client, _queue_client
    global _audit_sink, _destinations, _backup_service
    _job_store = None
    _data_store = None
    _storage_client = None
    _queue_client = None
    _audit_sink = None
    _destinations = None
    _backup_service = None
