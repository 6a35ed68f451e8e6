"""
Domain types for backup configuration, backup documents and restores.

Wire dictionaries use the key names clients already send (``includeFiles``,
``overwriteExisting``...), so every type has explicit ``to_dict`` /
``from_dict`` helpers instead of relying on ``asdict``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

from studio_backup.errors import ValidationError

BACKUP_FORMAT_VERSION = "1.0.0"
BACKUP_CONFIG_KEY = "backup_config"
BACKUP_SCHEDULE_STATE_KEY = "backup_schedule_state"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class JobType(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class BackupFrequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def interval_seconds(self) -> int:
        days = {"daily": 1, "weekly": 7, "monthly": 30}[self.value]
        return days * 86400


@dataclass
class BackupDestination:
    type: str
    name: str
    config: dict = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "name": self.name,
            "config": dict(self.config),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "BackupDestination":
        if not payload.get("type"):
            raise ValidationError("Destination type is required")
        return cls(
            type=str(payload["type"]),
            name=str(payload.get("name") or payload["type"]),
            config=dict(payload.get("config") or {}),
            enabled=bool(payload.get("enabled", True)),
        )


@dataclass
class BackupConfig:
    enabled: bool = False
    frequency: BackupFrequency = BackupFrequency.WEEKLY
    retention_days: int = 30
    include_files: bool = True
    include_projects: bool = True
    include_user_data: bool = True
    include_audit_logs: bool = False
    destinations: list[BackupDestination] = field(default_factory=list)

    def __post_init__(self):
        self.frequency = BackupFrequency(self.frequency)
        if self.retention_days < 0:
            raise ValidationError("retention_days must be >= 0")

    @classmethod
    def default(cls) -> "BackupConfig":
        """Configuration returned to users who never saved one."""
        return cls(
            destinations=[
                BackupDestination(type="local", name="Local Storage", config={})
            ]
        )

    @property
    def enabled_destinations(self) -> list[BackupDestination]:
        return [d for d in self.destinations if d.enabled]

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "retention_days": self.retention_days,
            "includeFiles": self.include_files,
            "includeProjects": self.include_projects,
            "includeUserData": self.include_user_data,
            "includeAuditLogs": self.include_audit_logs,
            "destinations": [d.to_dict() for d in self.destinations],
        }

    @classmethod
    def from_dict(cls, payload: Optional[dict]) -> "BackupConfig":
        if payload is None:
            raise ValidationError("Backup config is required")
        retention = payload.get("retention_days", payload.get("retention", 30))
        try:
            frequency = BackupFrequency(payload.get("frequency", "weekly"))
        except ValueError as exc:
            raise ValidationError(f"Unknown backup frequency: {payload.get('frequency')}") from exc
        try:
            retention_days = int(retention)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"retention_days must be an integer, got {retention!r}") from exc
        return cls(
            enabled=bool(payload.get("enabled", False)),
            frequency=frequency,
            retention_days=retention_days,
            include_files=bool(payload.get("includeFiles", True)),
            include_projects=bool(payload.get("includeProjects", True)),
            include_user_data=bool(payload.get("includeUserData", True)),
            include_audit_logs=bool(payload.get("includeAuditLogs", False)),
            destinations=[
                BackupDestination.from_dict(d) for d in payload.get("destinations") or []
            ],
        )


class RawSecret:
    """
    A plaintext credential held in memory only.

    It never renders its value and refuses pickling and JSON encoding, so it
    cannot end up inside a backup document.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "RawSecret('***')"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("RawSecret cannot be serialized")

    def to_dict(self) -> dict:
        raise TypeError("RawSecret cannot be serialized")


@dataclass(frozen=True)
class CredentialRef:
    """Storable metadata about a user's provider credential. Never the key itself."""

    id: str
    provider: str
    created_at: Optional[str] = None
    last_used: Optional[str] = None

    FIELDS = ("id", "provider", "created_at", "last_used")

    def __post_init__(self):
        for name in self.FIELDS:
            if isinstance(getattr(self, name), RawSecret):
                raise TypeError(f"CredentialRef.{name} cannot hold a RawSecret")

    @classmethod
    def from_row(cls, row: dict) -> "CredentialRef":
        return cls(
            id=str(row.get("id") or ""),
            provider=str(row.get("provider") or ""),
            created_at=_optional_str(row.get("created_at")),
            last_used=_optional_str(row.get("last_used")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "created_at": self.created_at,
            "last_used": self.last_used,
        }


@dataclass
class BackupFile:
    path: str
    size: int
    hash: str
    payload: str  # base64

    def to_dict(self) -> dict:
        return {"path": self.path, "size": self.size, "hash": self.hash, "payload": self.payload}

    @classmethod
    def from_dict(cls, payload: dict) -> "BackupFile":
        return cls(
            path=payload.get("path", ""),
            size=int(payload.get("size") or 0),
            hash=payload.get("hash", ""),
            payload=payload.get("payload", payload.get("data", "")),
        )


@dataclass
class BackupData:
    profile: Optional[dict] = None
    projects: Optional[list] = None
    generations: Optional[list] = None
    templates: Optional[list] = None
    credential_refs: Optional[list[CredentialRef]] = None
    audit_logs: Optional[list] = None
    files: Optional[list[BackupFile]] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        if self.profile is not None:
            data["profile"] = self.profile
        for name in ("projects", "generations", "templates", "audit_logs"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.credential_refs is not None:
            data["credential_refs"] = [ref.to_dict() for ref in self.credential_refs]
        if self.files is not None:
            data["files"] = [
                f.to_dict() if isinstance(f, BackupFile) else f for f in self.files
            ]
        return data

    @classmethod
    def from_dict(cls, payload: dict) -> "BackupData":
        refs = payload.get("credential_refs", payload.get("api_keys"))
        files = payload.get("files")
        return cls(
            profile=payload.get("profile"),
            projects=payload.get("projects"),
            generations=payload.get("generations"),
            templates=payload.get("templates"),
            credential_refs=(
                [CredentialRef.from_row(r) for r in refs if isinstance(r, dict)]
                if isinstance(refs, list)
                else None
            ),
            audit_logs=payload.get("audit_logs"),
            # Malformed file entries are kept as-is and reported by the restore.
            files=(
                [_parse_file(f) for f in files]
                if isinstance(files, list)
                else files
            ),
        )


def _parse_file(entry: Any) -> Any:
    if not isinstance(entry, dict):
        return entry
    try:
        return BackupFile.from_dict(entry)
    except (TypeError, ValueError):
        return entry


def _reject_unserializable(value: Any) -> Any:
    if isinstance(value, RawSecret):
        raise TypeError("RawSecret cannot be written into a backup document")
    return str(value)


@dataclass
class BackupDocument:
    version: str
    timestamp: str
    user_id: str
    data: BackupData = field(default_factory=BackupData)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "user_id": self.user_id,
            "data": self.data.to_dict(),
        }

    def to_json(self) -> str:
        """Deterministic serialization used for storage and hashing."""
        return json.dumps(
            self.to_dict(),
            indent=2,
            sort_keys=True,
            ensure_ascii=False,
            default=_reject_unserializable,
        )

    @classmethod
    def from_dict(cls, payload: dict) -> "BackupDocument":
        if not isinstance(payload, dict):
            raise ValidationError("Backup document must be an object")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValidationError("Backup document has no data section")
        return cls(
            version=str(payload.get("version") or BACKUP_FORMAT_VERSION),
            timestamp=str(payload.get("timestamp") or ""),
            user_id=str(payload.get("user_id") or ""),
            data=BackupData.from_dict(data),
        )


@dataclass
class RestoreOptions:
    overwrite_existing: bool = False
    include_files: bool = True
    include_projects: bool = True
    include_user_data: bool = True
    include_audit_logs: bool = False
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "overwriteExisting": self.overwrite_existing,
            "includeFiles": self.include_files,
            "includeProjects": self.include_projects,
            "includeUserData": self.include_user_data,
            "includeAuditLogs": self.include_audit_logs,
            "dryRun": self.dry_run,
        }

    @classmethod
    def from_dict(cls, payload: Optional[dict]) -> "RestoreOptions":
        payload = payload or {}
        return cls(
            overwrite_existing=bool(payload.get("overwriteExisting", False)),
            include_files=bool(payload.get("includeFiles", True)),
            include_projects=bool(payload.get("includeProjects", True)),
            include_user_data=bool(payload.get("includeUserData", True)),
            include_audit_logs=bool(payload.get("includeAuditLogs", False)),
            dry_run=bool(payload.get("dryRun", False)),
        )


@dataclass
class RestoredItems:
    profile: int = 0
    projects: int = 0
    generations: int = 0
    templates: int = 0
    files: int = 0
    audit_logs: int = 0

    def to_dict(self) -> dict:
        return {
            "profile": self.profile,
            "projects": self.projects,
            "generations": self.generations,
            "templates": self.templates,
            "files": self.files,
            "audit_logs": self.audit_logs,
        }


@dataclass
class RestoreResult:
    success: bool = False
    error: Optional[str] = None
    restored_items: RestoredItems = field(default_factory=RestoredItems)
    skipped_items: int = 0
    conflicts: list[str] = field(default_factory=list)
    # Filled by dry runs only: what a real restore would write.
    planned_items: Optional[RestoredItems] = None

    def to_dict(self) -> dict:
        payload = {
            "success": self.success,
            "error": self.error,
            "restored_items": self.restored_items.to_dict(),
            "skipped_items": self.skipped_items,
            "conflicts": list(self.conflicts),
        }
        if self.planned_items is not None:
            payload["planned_items"] = self.planned_items.to_dict()
        return payload


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
