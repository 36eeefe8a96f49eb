"""
Object storage abstraction for S3-compatible buckets (Cloudflare R2), the local
filesystem, and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cms_backend.errors import StorageError


@dataclass(frozen=True)
class StoredObject:
    path: str
    size: int
    last_modified: datetime


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def put_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        ...

    def upload_file(self, src_path: str, dest_path: str) -> None:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...

    def list_objects(self, prefix: str) -> list[StoredObject]:
        ...

    def delete(self, path: str) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = field(default_factory=dict)
    modified: dict = field(default_factory=dict)

    def put_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        self.stored_objects[path] = bytes(data)
        self.modified[path] = datetime.now(timezone.utc)

    def upload_file(self, src_path: str, dest_path: str) -> None:
        with open(src_path, "rb") as f:
            self.put_bytes(dest_path, f.read())

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored

    def list_objects(self, prefix: str) -> list[StoredObject]:
        return [
            StoredObject(path=path, size=len(data), last_modified=self.modified[path])
            for path, data in sorted(self.stored_objects.items())
            if path.startswith(prefix)
        ]

    def delete(self, path: str) -> None:
        self.stored_objects.pop(path, None)
        self.modified.pop(path, None)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"


@dataclass
class LocalStorageClient:
    """
    Stores objects as files under ``root``. Used in development, where the app
    serves ``root`` itself under ``/uploads``.
    """

    root: str
    base_url: str = "http://localhost:3001/uploads"

    def _resolve(self, path: str) -> Path:
        root = Path(self.root).resolve()
        target = (root / path).resolve()
        if root not in target.parents:
            raise StorageError(f"Refusing to access path outside storage root: {path}")
        return target

    def put_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def upload_file(self, src_path: str, dest_path: str) -> None:
        with open(src_path, "rb") as f:
            self.put_bytes(dest_path, f.read())

    def get_bytes(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        return target.read_bytes()

    def list_objects(self, prefix: str) -> list[StoredObject]:
        root = Path(self.root).resolve()
        if not root.exists():
            return []
        objects = []
        for file_path in sorted(root.rglob("*")):
            if not file_path.is_file():
                continue
            key = file_path.relative_to(root).as_posix()
            if key.startswith(prefix):
                stat = file_path.stat()
                objects.append(
                    StoredObject(
                        path=key,
                        size=stat.st_size,
                        last_modified=datetime.fromtimestamp(
                            stat.st_mtime, tz=timezone.utc
                        ),
                    )
                )
        return objects

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def public_url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path}"


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (Cloudflare R2, AWS S3, MinIO).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    media_domain: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def put_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload of {path} failed: {exc}") from exc

    def upload_file(self, src_path: str, dest_path: str) -> None:
        try:
            self._client.upload_file(src_path, self.bucket, dest_path)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload of {dest_path} failed: {exc}") from exc

    def get_bytes(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(path) from exc
            raise StorageError(f"Download of {path} failed: {exc}") from exc
        return response["Body"].read()

    def list_objects(self, prefix: str) -> list[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(
                        StoredObject(
                            path=item["Key"],
                            size=item["Size"],
                            last_modified=item["LastModified"],
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Listing {prefix} failed: {exc}") from exc
        return objects

    def delete(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Delete of {path} failed: {exc}") from exc

    def public_url(self, path: str) -> str:
        if self.media_domain:
            return f"https://{self.media_domain}/{path}"
        return self._presign_get(path)

    def _presign_get(self, path: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=expires_in,
        )
