"""
Restores a backup document into the user data store and asset storage.

Ownership embedded in the document is never trusted: every row is rewritten
to belong to the restoring user, and rows whose id already belongs to a
different account are refused.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Optional, Union

from studio_backup import audit, datastore
from studio_backup.audit import AuditSink
from studio_backup.datastore import UserDataStore
from studio_backup.db import JobStore, RestoreLogRecord
from studio_backup.errors import TransientIOError, ValidationError, public_error_message
from studio_backup.hashing import IntegrityHasher
from studio_backup.models import (
    BackupDocument,
    BackupFile,
    JobStatus,
    RestoredItems,
    RestoreOptions,
    RestoreResult,
)
from studio_backup.storage import StorageClient, user_prefix

logger = logging.getLogger(__name__)

RESTORE_FAILURE_MESSAGE = "Restore failed due to an internal error"


@dataclass(frozen=True)
class _Category:
    section: str
    table: str
    noun: str
    counter: str
    option: str


CATEGORIES = (
    _Category("projects", datastore.PROJECTS, "Project", "projects", "include_projects"),
    _Category("generations", datastore.GENERATIONS, "Generation", "generations", "include_projects"),
    _Category("templates", datastore.TEMPLATES, "Template", "templates", "include_user_data"),
)


def _label(entity: Any, index: int) -> str:
    if isinstance(entity, dict):
        for key in ("id", "name", "path"):
            if entity.get(key) not in (None, ""):
                return str(entity[key])
    return f"#{index}"


def _safe_relative_path(path: str) -> str:
    if not path or not isinstance(path, str):
        raise ValidationError("file path is empty")
    pure = PurePosixPath(path.replace("\\", "/"))
    if pure.is_absolute() or any(part in ("..", "") for part in pure.parts):
        raise ValidationError(f"file path {path!r} escapes the user folder")
    return str(pure)


class RestoreOrchestrator:
    def __init__(
        self,
        data_store: UserDataStore,
        storage: StorageClient,
        hasher: IntegrityHasher,
        audit_sink: AuditSink,
        job_store: Optional[JobStore] = None,
    ):
        self.data_store = data_store
        self.storage = storage
        self.hasher = hasher
        self.audit_sink = audit_sink
        self.job_store = job_store

    def restore_backup(
        self,
        user_id: str,
        document: Union[BackupDocument, dict],
        options: Optional[RestoreOptions] = None,
    ) -> RestoreResult:
        """
        Apply ``document`` for ``user_id``.

        Per-entity failures end up in ``conflicts`` (audit logs only bump
        ``skipped_items``) and never abort the restore. With ``dry_run`` the
        same checks run but nothing is written; ``planned_items`` reports what
        a real run would restore.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        options = options or RestoreOptions()
        result = RestoreResult()
        counts = result.restored_items
        if options.dry_run:
            result.planned_items = RestoredItems()
            counts = result.planned_items
        log = RestoreLogRecord(
            user_id=user_id,
            backup_source="unknown",
            restore_options=options.to_dict(),
            status=JobStatus.RUNNING,
        )

        try:
            if not isinstance(document, BackupDocument):
                document = BackupDocument.from_dict(document)
            log.backup_source = self.hasher.hash(document.to_json().encode("utf-8"))
            self._audit(
                "backup_restore_initiated",
                {
                    "backup_version": document.version,
                    "backup_timestamp": document.timestamp,
                    "dry_run": options.dry_run,
                    "options": options.to_dict(),
                },
                user_id=user_id,
            )

            data = document.data
            if options.include_user_data and data.profile is not None:
                self._restore_profile(user_id, data.profile, options, result, counts)

            for category in CATEGORIES:
                if getattr(options, category.option):
                    self._restore_category(
                        user_id, category, getattr(data, category.section), options, result, counts
                    )

            if options.include_files and data.files is not None:
                self._restore_files(user_id, data.files, options, result, counts)

            if options.include_audit_logs and data.audit_logs is not None:
                self._restore_audit_logs(user_id, data.audit_logs, options, result, counts)

            result.success = True
            self._audit(
                "backup_restore_completed",
                {
                    "dry_run": options.dry_run,
                    "restored_items": counts.to_dict(),
                    "conflicts_count": len(result.conflicts),
                    "skipped_items": result.skipped_items,
                },
                user_id=user_id,
            )
        except Exception as exc:
            logger.exception("[%s] Restore failed", user_id)
            result.success = False
            result.error = public_error_message(exc, RESTORE_FAILURE_MESSAGE)
            self._audit(
                "backup_restore_failed",
                {"error": str(exc) or exc.__class__.__name__},
                severity=audit.ERROR,
                user_id=user_id,
            )

        if not options.dry_run:
            self._record(log, result)
        return result

    def _restore_profile(
        self,
        user_id: str,
        profile: Any,
        options: RestoreOptions,
        result: RestoreResult,
        counts: RestoredItems,
    ) -> None:
        try:
            if not isinstance(profile, dict):
                raise ValidationError("profile is not an object")
            row = {**profile, "id": user_id}
            if self._should_write(datastore.PROFILES, row, user_id, options, result):
                if not options.dry_run:
                    self.data_store.upsert_row(datastore.PROFILES, row)
                counts.profile += 1
        except Exception as exc:
            result.conflicts.append(f"Profile restore failed: {exc}")

    def _restore_category(
        self,
        user_id: str,
        category: _Category,
        entities: Any,
        options: RestoreOptions,
        result: RestoreResult,
        counts: RestoredItems,
    ) -> None:
        if entities is None:
            return
        if not isinstance(entities, list):
            result.conflicts.append(f"{category.noun} section is malformed")
            return
        for index, entity in enumerate(entities):
            try:
                row = self._owned_row(entity, user_id)
                if self._should_write(category.table, row, user_id, options, result):
                    if not options.dry_run:
                        self.data_store.upsert_row(category.table, row)
                    setattr(counts, category.counter, getattr(counts, category.counter) + 1)
            except Exception as exc:
                result.conflicts.append(
                    f"{category.noun} {_label(entity, index)} restore failed: {exc}"
                )

    def _restore_audit_logs(
        self,
        user_id: str,
        entries: Any,
        options: RestoreOptions,
        result: RestoreResult,
        counts: RestoredItems,
    ) -> None:
        if not isinstance(entries, list):
            result.skipped_items += 1
            return
        for index, entry in enumerate(entries):
            try:
                row = self._owned_row(entry, user_id)
                if self._should_write(datastore.AUDIT_LOGS, row, user_id, options, result):
                    if not options.dry_run:
                        self.data_store.upsert_row(datastore.AUDIT_LOGS, row)
                    counts.audit_logs += 1
            except Exception as exc:
                logger.debug("[%s] Skipping audit log %s: %s", user_id, _label(entry, index), exc)
                result.skipped_items += 1

    def _restore_files(
        self,
        user_id: str,
        files: Any,
        options: RestoreOptions,
        result: RestoreResult,
        counts: RestoredItems,
    ) -> None:
        if not isinstance(files, list):
            result.conflicts.append("File section is malformed")
            return
        for index, entry in enumerate(files):
            label = entry.path if isinstance(entry, BackupFile) and entry.path else f"#{index}"
            try:
                if not isinstance(entry, BackupFile):
                    raise ValidationError("file entry is malformed")
                path = _safe_relative_path(entry.path)
                try:
                    content = base64.b64decode(entry.payload, validate=True)
                except (binascii.Error, TypeError, ValueError) as exc:
                    raise ValidationError(f"payload is not valid base64 ({exc})") from exc
                if entry.hash and not self.hasher.verify(content, entry.hash):
                    raise ValidationError("content hash does not match payload")
                key = f"{user_prefix(user_id)}{path}"
                if options.dry_run:
                    if not options.overwrite_existing and self.storage.exists(key):
                        raise TransientIOError("file already exists")
                else:
                    try:
                        self.storage.put_bytes(key, content, overwrite=options.overwrite_existing)
                    except FileExistsError as exc:
                        raise TransientIOError("file already exists") from exc
                counts.files += 1
            except Exception as exc:
                result.conflicts.append(f"File {label} restore failed: {exc}")

    def _owned_row(self, entity: Any, user_id: str) -> dict:
        if not isinstance(entity, dict):
            raise ValidationError("record is not an object")
        row_id = entity.get("id")
        if row_id in (None, "") or not isinstance(row_id, (str, int)):
            raise ValidationError("record has no valid id")
        return {**entity, "user_id": user_id}

    def _should_write(
        self,
        table: str,
        row: dict,
        user_id: str,
        options: RestoreOptions,
        result: RestoreResult,
    ) -> bool:
        existing = self.data_store.get_row(table, row["id"])
        if existing is None:
            return True
        owner = existing.get("id") if table == datastore.PROFILES else existing.get("user_id")
        if str(owner) != str(user_id):
            raise ValidationError("id belongs to another account")
        if not options.overwrite_existing:
            result.skipped_items += 1
            return False
        return True

    def _record(self, log: RestoreLogRecord, result: RestoreResult) -> None:
        if self.job_store is None:
            return
        log.status = JobStatus.COMPLETED if result.success else JobStatus.FAILED
        log.result = result.to_dict()
        log.error = result.error
        log.completed_at = time.time()
        try:
            self.job_store.record_restore(log)
        except Exception:
            logger.exception("[%s] Failed to record restore log", log.user_id)

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
