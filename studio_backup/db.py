"""
Job store for backup jobs, per-user settings and restore logs.

Postgres (any SQLAlchemy URL) and an in-memory test implementation.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Float,
    Index,
    Integer,
    String,
    create_engine,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from studio_backup.errors import JobStateError
from studio_backup.models import (
    ALLOWED_TRANSITIONS,
    BACKUP_FORMAT_VERSION,
    BackupConfig,
    JobStatus,
    JobType,
)

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Interface for job, settings and restore-log persistence."""

    def create_backup_job(
        self, user_id: str, config: BackupConfig, job_type: JobType = JobType.MANUAL
    ) -> "BackupJob":
        ...

    def get_job(self, job_id: str) -> Optional["BackupJob"]:
        ...

    def list_jobs(self, user_id: str, limit: int = 50) -> list["BackupJob"]:
        ...

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        size_bytes: Optional[int] = None,
        items_count: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Optional["BackupJob"]:
        ...

    def has_running_job(self, user_id: str, exclude_job_id: str | None = None) -> bool:
        ...

    def claim_job(self, job_id: str) -> Optional["BackupJob"]:
        ...

    def claim_next_pending_job(self) -> Optional["BackupJob"]:
        ...

    def delete_job(self, job_id: str, user_id: str) -> bool:
        ...

    def delete_jobs_completed_before(self, user_id: str, cutoff: float) -> list[str]:
        ...

    def save_setting(self, user_id: str, key: str, value: dict) -> None:
        ...

    def get_setting(self, user_id: str, key: str) -> Optional[dict]:
        ...

    def list_settings(self, key: str) -> list[tuple[str, dict]]:
        ...

    def record_restore(self, record: "RestoreLogRecord") -> None:
        ...

    def list_restore_logs(self, user_id: str, limit: int = 50) -> list["RestoreLogRecord"]:
        ...


@dataclass
class BackupJob:
    job_id: str
    user_id: str
    status: JobStatus
    type: JobType
    config: BackupConfig
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    size_bytes: Optional[int] = None
    items_count: Optional[int] = None
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.job_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "type": self.type.value,
            "config": self.config.to_dict(),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "size_bytes": self.size_bytes,
            "items_count": self.items_count,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class RestoreLogRecord:
    user_id: str
    backup_source: str
    restore_options: dict
    status: JobStatus
    result: Optional[dict] = None
    error: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=lambda: time.time())
    completed_at: Optional[float] = None


def _check_transition(job_id: str, current: JobStatus, new: JobStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[current]:
        raise JobStateError(
            f"Job {job_id} cannot move from {current.value} to {new.value}"
        )


def _new_job_metadata(user_id: str) -> dict:
    return {"version": BACKUP_FORMAT_VERSION, "created_by": user_id}


class InMemoryJobStore:
    """Simple in-memory job store for development and tests."""

    def __init__(self):
        self.jobs: Dict[str, BackupJob] = {}
        self.settings: Dict[tuple[str, str], dict] = {}
        self.restore_logs: Dict[str, RestoreLogRecord] = {}
        self._lock = threading.RLock()

    def create_backup_job(
        self, user_id: str, config: BackupConfig, job_type: JobType = JobType.MANUAL
    ) -> BackupJob:
        job_id = str(uuid.uuid4())
        record = BackupJob(
            job_id=job_id,
            user_id=user_id,
            status=JobStatus.PENDING,
            type=JobType(job_type),
            config=config,
            metadata=_new_job_metadata(user_id),
        )
        with self._lock:
            self.jobs[job_id] = record
        return record

    def get_job(self, job_id: str) -> Optional[BackupJob]:
        with self._lock:
            return self.jobs.get(job_id)

    def list_jobs(self, user_id: str, limit: int = 50) -> list[BackupJob]:
        with self._lock:
            jobs = [job for job in self.jobs.values() if job.user_id == user_id]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        size_bytes: Optional[int] = None,
        items_count: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[BackupJob]:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                return None
            _check_transition(job_id, job.status, status)
            now = time.time()
            job.status = status
            if status == JobStatus.RUNNING:
                job.started_at = now
            if status.is_terminal:
                job.completed_at = now
            if error is not None:
                job.error = error
            if size_bytes is not None:
                job.size_bytes = size_bytes
            if items_count is not None:
                job.items_count = items_count
            if metadata:
                job.metadata = {**job.metadata, **metadata}
            job.updated_at = now
            return job

    def has_running_job(self, user_id: str, exclude_job_id: str | None = None) -> bool:
        with self._lock:
            return any(
                job.user_id == user_id
                and job.status == JobStatus.RUNNING
                and job.job_id != exclude_job_id
                for job in self.jobs.values()
            )

    def claim_job(self, job_id: str) -> Optional[BackupJob]:
        """Move a pending job to running unless its user already has one running."""
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.status != JobStatus.PENDING:
                return None
            if self.has_running_job(job.user_id, exclude_job_id=job_id):
                return None
            return self.update_job_status(job_id, JobStatus.RUNNING)

    def claim_next_pending_job(self) -> Optional[BackupJob]:
        with self._lock:
            pending = sorted(
                (job for job in self.jobs.values() if job.status == JobStatus.PENDING),
                key=lambda job: job.created_at,
            )
            for job in pending:
                if not self.has_running_job(job.user_id):
                    return self.update_job_status(job.job_id, JobStatus.RUNNING)
        return None

    def delete_job(self, job_id: str, user_id: str) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.user_id != user_id:
                return False
            if job.status == JobStatus.RUNNING:
                raise JobStateError(f"Job {job_id} is running and cannot be deleted")
            del self.jobs[job_id]
            return True

    def delete_jobs_completed_before(self, user_id: str, cutoff: float) -> list[str]:
        with self._lock:
            doomed = [
                job.job_id
                for job in self.jobs.values()
                if job.user_id == user_id
                and job.completed_at is not None
                and job.completed_at <= cutoff
            ]
            for job_id in doomed:
                del self.jobs[job_id]
            return doomed

    def save_setting(self, user_id: str, key: str, value: dict) -> None:
        with self._lock:
            self.settings[(user_id, key)] = value

    def get_setting(self, user_id: str, key: str) -> Optional[dict]:
        with self._lock:
            return self.settings.get((user_id, key))

    def list_settings(self, key: str) -> list[tuple[str, dict]]:
        with self._lock:
            return [
                (user_id, value)
                for (user_id, setting_key), value in self.settings.items()
                if setting_key == key
            ]

    def record_restore(self, record: RestoreLogRecord) -> None:
        with self._lock:
            self.restore_logs[record.id] = record

    def list_restore_logs(self, user_id: str, limit: int = 50) -> list[RestoreLogRecord]:
        with self._lock:
            logs = [log for log in self.restore_logs.values() if log.user_id == user_id]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return logs[:limit]

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.jobs.clear()
            self.settings.clear()
            self.restore_logs.clear()


class PostgresJobStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresJobStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_job(self, row: "BackupJobRow") -> BackupJob:
        return BackupJob(
            job_id=row.id,
            user_id=row.user_id,
            status=JobStatus(row.status),
            type=JobType(row.type),
            config=BackupConfig.from_dict(row.config),
            started_at=row.started_at,
            completed_at=row.completed_at,
            error=row.error,
            size_bytes=row.size_bytes,
            items_count=row.items_count,
            metadata=dict(row.job_metadata or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def create_backup_job(
        self, user_id: str, config: BackupConfig, job_type: JobType = JobType.MANUAL
    ) -> BackupJob:
        now = time.time()
        with self.Session() as session:
            row = BackupJobRow(
                id=str(uuid.uuid4()),
                user_id=user_id,
                status=JobStatus.PENDING.value,
                type=JobType(job_type).value,
                config=config.to_dict(),
                job_metadata=_new_job_metadata(user_id),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    def get_job(self, job_id: str) -> Optional[BackupJob]:
        with self.Session() as session:
            row = session.get(BackupJobRow, job_id)
            if not row:
                return None
            return self._to_job(row)

    def list_jobs(self, user_id: str, limit: int = 50) -> list[BackupJob]:
        with self.Session() as session:
            stmt = (
                select(BackupJobRow)
                .where(BackupJobRow.user_id == user_id)
                .order_by(BackupJobRow.created_at.desc())
                .limit(limit)
            )
            return [self._to_job(row) for row in session.execute(stmt).scalars()]

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        size_bytes: Optional[int] = None,
        items_count: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[BackupJob]:
        with self.Session() as session:
            row = session.get(BackupJobRow, job_id, with_for_update=True)
            if not row:
                return None
            _check_transition(job_id, JobStatus(row.status), status)
            now = time.time()
            row.status = status.value
            if status == JobStatus.RUNNING:
                row.started_at = now
            if status.is_terminal:
                row.completed_at = now
            if error is not None:
                row.error = error
            if size_bytes is not None:
                row.size_bytes = size_bytes
            if items_count is not None:
                row.items_count = items_count
            if metadata:
                # Reassign so the JSON column is flagged dirty.
                row.job_metadata = {**(row.job_metadata or {}), **metadata}
            row.updated_at = now
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    def has_running_job(self, user_id: str, exclude_job_id: str | None = None) -> bool:
        with self.Session() as session:
            stmt = select(BackupJobRow.id).where(
                BackupJobRow.user_id == user_id,
                BackupJobRow.status == JobStatus.RUNNING.value,
            )
            if exclude_job_id:
                stmt = stmt.where(BackupJobRow.id != exclude_job_id)
            return session.execute(stmt.limit(1)).first() is not None

    def _lock_user(self, session: Session, user_id: str) -> None:
        # Held until commit/rollback; serializes claims for one user across workers.
        if self.engine.dialect.name == "postgresql":
            session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:user_id))"),
                {"user_id": user_id},
            )

    def _user_busy(self, session: Session, user_id: str, job_id: str) -> bool:
        busy = session.execute(
            select(BackupJobRow.id)
            .where(
                BackupJobRow.user_id == user_id,
                BackupJobRow.status == JobStatus.RUNNING.value,
                BackupJobRow.id != job_id,
            )
            .limit(1)
        ).first()
        return busy is not None

    def _claim_row(self, session: Session, row: "BackupJobRow") -> Optional[BackupJob]:
        self._lock_user(session, row.user_id)
        if self._user_busy(session, row.user_id, row.id):
            return None
        now = time.time()
        row.status = JobStatus.RUNNING.value
        row.started_at = now
        row.updated_at = now
        try:
            session.commit()
        except IntegrityError:
            # The one-running-job-per-user index caught a concurrent claim.
            session.rollback()
            logger.info("[%s] User %s already has a running job", row.id, row.user_id)
            return None
        session.refresh(row)
        return self._to_job(row)

    def claim_job(self, job_id: str) -> Optional[BackupJob]:
        """Move a pending job to running unless its user already has one running."""
        with self.Session() as session:
            stmt = (
                select(BackupJobRow)
                .where(
                    BackupJobRow.id == job_id,
                    BackupJobRow.status == JobStatus.PENDING.value,
                )
                .with_for_update(skip_locked=True)
            )
            row = session.execute(stmt).scalar_one_or_none()
            if not row:
                return None
            return self._claim_row(session, row)

    def claim_next_pending_job(self) -> Optional[BackupJob]:
        with self.Session() as session:
            stmt = (
                select(BackupJobRow)
                .where(BackupJobRow.status == JobStatus.PENDING.value)
                .order_by(BackupJobRow.created_at.asc())
                .with_for_update(skip_locked=True)
            )
            for row in session.execute(stmt).scalars().all():
                claimed = self._claim_row(session, row)
                if claimed:
                    return claimed
        return None

    def delete_job(self, job_id: str, user_id: str) -> bool:
        with self.Session() as session:
            row = session.get(BackupJobRow, job_id)
            if not row or row.user_id != user_id:
                return False
            if row.status == JobStatus.RUNNING.value:
                raise JobStateError(f"Job {job_id} is running and cannot be deleted")
            session.delete(row)
            session.commit()
            return True

    def delete_jobs_completed_before(self, user_id: str, cutoff: float) -> list[str]:
        with self.Session() as session:
            rows = (
                session.query(BackupJobRow)
                .filter(
                    BackupJobRow.user_id == user_id,
                    BackupJobRow.completed_at != None,  # noqa: E711
                    BackupJobRow.completed_at <= cutoff,
                )
                .all()
            )
            deleted = [row.id for row in rows]
            for row in rows:
                session.delete(row)
            session.commit()
            return deleted

    def save_setting(self, user_id: str, key: str, value: dict) -> None:
        with self.Session() as session:
            existing = session.get(UserSettingRow, (user_id, key))
            if existing:
                existing.value = value
                existing.updated_at = time.time()
            else:
                session.add(
                    UserSettingRow(
                        user_id=user_id, key=key, value=value, updated_at=time.time()
                    )
                )
            session.commit()

    def get_setting(self, user_id: str, key: str) -> Optional[dict]:
        with self.Session() as session:
            row = session.get(UserSettingRow, (user_id, key))
            return row.value if row else None

    def list_settings(self, key: str) -> list[tuple[str, dict]]:
        with self.Session() as session:
            rows = session.query(UserSettingRow).filter(UserSettingRow.key == key).all()
            return [(row.user_id, row.value) for row in rows]

    def record_restore(self, record: RestoreLogRecord) -> None:
        with self.Session() as session:
            session.add(
                RestoreLogRow(
                    id=record.id,
                    user_id=record.user_id,
                    backup_source=record.backup_source,
                    restore_options=record.restore_options,
                    status=record.status.value,
                    result=record.result,
                    error=record.error,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                )
            )
            session.commit()

    def list_restore_logs(self, user_id: str, limit: int = 50) -> list[RestoreLogRecord]:
        with self.Session() as session:
            rows = (
                session.query(RestoreLogRow)
                .filter(RestoreLogRow.user_id == user_id)
                .order_by(RestoreLogRow.started_at.desc())
                .limit(limit)
                .all()
            )
            return [
                RestoreLogRecord(
                    id=row.id,
                    user_id=row.user_id,
                    backup_source=row.backup_source,
                    restore_options=row.restore_options,
                    status=JobStatus(row.status),
                    result=row.result,
                    error=row.error,
                    started_at=row.started_at,
                    completed_at=row.completed_at,
                )
                for row in rows
            ]


Base = declarative_base()


class BackupJobRow(Base):
    __tablename__ = "backup_jobs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    config = Column(JSON, nullable=False)
    started_at = Column(Float, nullable=True)
    completed_at = Column(Float, nullable=True)
    error = Column(String, nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    items_count = Column(Integer, nullable=True)
    job_metadata = Column("metadata", JSON, nullable=False)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)

    # At most one running job per user.
    __table_args__ = (
        Index(
            "uq_backup_jobs_running_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )


class UserSettingRow(Base):
    __tablename__ = "user_settings"

    user_id = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(Float, nullable=False)


class RestoreLogRow(Base):
    __tablename__ = "backup_restore_logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    backup_source = Column(String, nullable=False)
    restore_options = Column(JSON, nullable=False)
    status = Column(String, nullable=False)
    result = Column(JSON, nullable=True)
    error = Column(String, nullable=True)
    started_at = Column(Float, nullable=False, index=True)
    completed_at = Column(Float, nullable=True)
