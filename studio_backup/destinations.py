"""
Destination writers for serialized backup documents.

Each destination ``type`` maps to one writer in a ``DestinationRegistry``.
Register a writer to support a new type; the orchestrator only ever talks to
the registry.

``destination.config`` comes from the user's request. Writers only let it
choose *within* the space the service owns: a subdirectory of the local
backup directory, or an allow-listed bucket under a per-user key prefix.
Endpoints and credentials always come from the service settings.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Optional, Protocol

from studio_backup.errors import UnsupportedDestinationError, ValidationError
from studio_backup.models import BackupDestination
from studio_backup.storage import S3StorageClient, StorageClient

logger = logging.getLogger(__name__)

LOCAL_KEY_PREFIX = "backup_"
DEFAULT_OBJECT_PREFIX = "backups/"


class DestinationWriter(Protocol):
    def validate(self, destination: BackupDestination) -> None:
        """Raise ``ValidationError`` when ``destination.config`` is not acceptable."""
        ...

    def store(
        self, destination: BackupDestination, user_id: str, filename: str, payload: bytes
    ) -> str:
        """Persist ``payload`` and return where it landed."""
        ...

    def fetch(self, destination: BackupDestination, user_id: str, filename: str) -> bytes:
        ...


def _relative_parts(value: str, what: str) -> tuple[str, ...]:
    pure = PurePosixPath(str(value).replace("\\", "/"))
    if pure.is_absolute() or any(part in ("..", "") for part in pure.parts):
        raise ValidationError(f"{what} {value!r} must be a relative path inside the backup area")
    return pure.parts


def _filename(filename: str) -> str:
    name = Path(filename).name
    if not name or name != filename:
        raise ValueError(f"Invalid backup filename: {filename!r}")
    return name


class LocalDestinationWriter:
    """
    Writes ``backup_<filename>`` files into the service's backup directory.

    ``config["path"]`` may name a subdirectory of it, nothing else.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    def _directory(self, destination: BackupDestination) -> Path:
        subdir = destination.config.get("path")
        if not subdir:
            return self.base_dir
        directory = self.base_dir.joinpath(*_relative_parts(subdir, "Local path"))
        root = self.base_dir.resolve()
        resolved = directory.resolve()
        if resolved != root and root not in resolved.parents:
            raise ValidationError(f"Local path {subdir!r} escapes the backup directory")
        return directory

    def validate(self, destination: BackupDestination) -> None:
        self._directory(destination)

    def _path(self, destination: BackupDestination, filename: str) -> Path:
        return self._directory(destination) / f"{LOCAL_KEY_PREFIX}{_filename(filename)}"

    def store(
        self, destination: BackupDestination, user_id: str, filename: str, payload: bytes
    ) -> str:
        path = self._path(destination, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(payload)
        tmp_path.replace(path)
        return str(path)

    def fetch(self, destination: BackupDestination, user_id: str, filename: str) -> bytes:
        return self._path(destination, filename).read_bytes()


class ObjectStoreDestinationWriter:
    """
    Writes into an S3-compatible bucket.

    ``destination.config`` names the bucket, which must be allow-listed, and
    an optional ``prefix``. Keys are always ``{prefix}{user_id}/{filename}``.
    """

    def __init__(
        self,
        client_factory: Callable[[str], StorageClient],
        *,
        allowed_buckets: Iterable[str] = (),
    ):
        self.client_factory = client_factory
        self.allowed_buckets = frozenset(b for b in allowed_buckets if b)

    def _bucket(self, destination: BackupDestination) -> str:
        bucket = destination.config.get("bucket")
        if not bucket:
            raise ValidationError(f"Destination {destination.name} has no bucket configured")
        if bucket not in self.allowed_buckets:
            raise ValidationError(f"Bucket {bucket!r} is not an allowed backup bucket")
        return bucket

    def _prefix(self, destination: BackupDestination) -> str:
        prefix = destination.config.get("prefix", DEFAULT_OBJECT_PREFIX)
        if not prefix:
            return ""
        parts = _relative_parts(str(prefix).rstrip("/"), "Prefix")
        return "/".join(parts) + "/"

    def _key(self, destination: BackupDestination, user_id: str, filename: str) -> str:
        if not user_id:
            raise ValidationError("user_id is required")
        return f"{self._prefix(destination)}{user_id}/{_filename(filename)}"

    def validate(self, destination: BackupDestination) -> None:
        self._bucket(destination)
        self._prefix(destination)

    def store(
        self, destination: BackupDestination, user_id: str, filename: str, payload: bytes
    ) -> str:
        bucket = self._bucket(destination)
        key = self._key(destination, user_id, filename)
        self.client_factory(bucket).put_bytes(key, payload)
        return f"{destination.type}://{bucket}/{key}"

    def fetch(self, destination: BackupDestination, user_id: str, filename: str) -> bytes:
        bucket = self._bucket(destination)
        return self.client_factory(bucket).get_bytes(self._key(destination, user_id, filename))


def s3_client_factory(
    *,
    endpoint: Optional[str],
    region: Optional[str],
    access_key_id: Optional[str],
    secret_access_key: Optional[str],
) -> Callable[[str], StorageClient]:
    def build(bucket: str) -> StorageClient:
        return S3StorageClient(
            bucket=bucket,
            region=region or "",
            endpoint=endpoint or "",
            access_key_id=access_key_id or "",
            secret_access_key=secret_access_key or "",
        )

    return build


class DestinationRegistry:
    def __init__(self):
        self._writers: dict[str, DestinationWriter] = {}

    def register(self, destination_type: str, writer: DestinationWriter) -> None:
        self._writers[destination_type] = writer

    def supported_types(self) -> list[str]:
        return sorted(self._writers)

    def writer_for(self, destination_type: str) -> DestinationWriter:
        writer = self._writers.get(destination_type)
        if writer is None:
            raise UnsupportedDestinationError(
                f"Destination type {destination_type!r} is not supported"
            )
        return writer

    def validate(self, destination: BackupDestination) -> None:
        """
        Check a registered destination's config up front.

        Unknown types pass here and fail the job when it runs.
        """
        writer = self._writers.get(destination.type)
        if writer is not None:
            writer.validate(destination)

    def store(
        self, destination: BackupDestination, user_id: str, filename: str, payload: bytes
    ) -> str:
        location = self.writer_for(destination.type).store(destination, user_id, filename, payload)
        logger.info("Stored %s (%d bytes) at %s", filename, len(payload), location)
        return location

    def fetch(self, destination: BackupDestination, user_id: str, filename: str) -> bytes:
        return self.writer_for(destination.type).fetch(destination, user_id, filename)


def build_default_registry(
    local_backup_dir: str | Path,
    *,
    s3_endpoint: Optional[str] = None,
    s3_region: Optional[str] = None,
    allowed_buckets: Iterable[str] = (),
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
) -> DestinationRegistry:
    """Local disk and S3. ``gcs`` and ``azure`` stay unregistered and fail fast."""
    registry = DestinationRegistry()
    registry.register("local", LocalDestinationWriter(local_backup_dir))
    registry.register(
        "s3",
        ObjectStoreDestinationWriter(
            s3_client_factory(
                endpoint=s3_endpoint,
                region=s3_region,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
            ),
            allowed_buckets=allowed_buckets,
        ),
    )
    return registry
