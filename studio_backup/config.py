"""
Configuration and settings for the backup service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the backup API and workers."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Job store and user data (any SQLAlchemy URL, Postgres expected)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # S3-compatible bucket holding user assets
    assets_endpoint: Optional[str] = Field(default=None, env="ASSETS_ENDPOINT")
    assets_region: Optional[str] = Field(default=None, env="ASSETS_REGION")
    assets_bucket: Optional[str] = Field(default=None, env="ASSETS_BUCKET")
    aws_access_key_id: Optional[str] = Field(
        default=None, env="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Destinations
    local_backup_dir: str = Field(default="data/backups", env="LOCAL_BACKUP_DIR")
    backup_s3_endpoint: Optional[str] = Field(default=None, env="BACKUP_S3_ENDPOINT")
    backup_s3_region: Optional[str] = Field(default=None, env="BACKUP_S3_REGION")
    # Comma-separated buckets users may pick for "s3" destinations
    backup_buckets: str = Field(default="", env="BACKUP_BUCKETS")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    # Queue (Redis)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_queue_key: str = Field(
        default="studio_backup:jobs", env="REDIS_QUEUE_KEY"
    )

    # Workers started inside the API process (0 = run worker.py separately)
    in_process_workers: int = Field(default=0, env="IN_PROCESS_WORKERS")
    worker_poll_interval_seconds: float = Field(
        default=2.0, env="WORKER_POLL_INTERVAL_SECONDS"
    )

    # Newest audit log rows copied into a backup
    audit_log_limit: int = Field(default=1000, env="AUDIT_LOG_LIMIT")

    @property
    def allowed_backup_buckets(self) -> list[str]:
        """Backup buckets minus the assets bucket, which is never a destination."""
        buckets = [b.strip() for b in self.backup_buckets.split(",") if b.strip()]
        return [b for b in buckets if b != self.assets_bucket]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
