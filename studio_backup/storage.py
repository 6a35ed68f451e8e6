"""
Object storage abstraction for user assets: S3-compatible buckets and in-memory testing.

Assets are keyed ``"{user_id}/{path}"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError


class StorageClient(Protocol):
    """Defines the operations backup and restore need from object storage."""

    def list_paths(self, prefix: str) -> list[str]:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...

    def put_bytes(self, path: str, data: bytes, *, overwrite: bool = True) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...


def user_prefix(user_id: str) -> str:
    return f"{user_id}/"


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}
        self.write_count = 0

    def list_paths(self, prefix: str) -> list[str]:
        return sorted(path for path in self.stored_objects if path.startswith(prefix))

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored

    def put_bytes(self, path: str, data: bytes, *, overwrite: bool = True) -> None:
        if not overwrite and path in self.stored_objects:
            raise FileExistsError(path)
        self.stored_objects[path] = bytes(data)
        self.write_count += 1

    def exists(self, path: str) -> bool:
        return path in self.stored_objects


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (AWS S3, Tencent COS, MinIO...).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def list_paths(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        paths: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                paths.append(item["Key"])
        return paths

    def get_bytes(self, path: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=path)
        return response["Body"].read()

    def put_bytes(self, path: str, data: bytes, *, overwrite: bool = True) -> None:
        if not overwrite and self.exists(path):
            raise FileExistsError(path)
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType="application/octet-stream",
        )

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True
