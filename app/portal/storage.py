"""Blob storage for request attachments: a local directory in development, S3 in production.

Object keys look like ``requests/<request id>/<random hex>-<secure filename>``.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO

from werkzeug.utils import secure_filename


class StorageError(RuntimeError):
    pass


def request_file_key(request_id: int, filename: str) -> str:
    return f"requests/{request_id}/{uuid.uuid4().hex}-{secure_filename(filename) or 'upload'}"


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def check(self) -> None:
        """Raise StorageError when the backend is unusable."""


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _resolve(self, key: str) -> Path:
        parts = PurePosixPath(key.replace("\\", "/")).parts
        parts = tuple(p for p in parts if p not in ("/", ""))
        if not parts or ".." in parts:
            raise StorageError(f"Invalid storage key: {key}")
        return self.root.joinpath(*parts)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        try:
            return self._resolve(key).open("rb")
        except FileNotFoundError:
            raise StorageError(f"Missing object: {key}") from None

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def delete(self, key: str) -> None:
        self._resolve(key).unlink(missing_ok=True)

    def check(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Storage root {self.root} is not writable: {e}") from e


@dataclass
class S3Storage(Storage):
    """S3-compatible bucket (AWS, DigitalOcean Spaces, MinIO)."""

    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    _client_cache: Any = field(default=None, init=False, repr=False, compare=False)

    @property
    def client(self):
        if self._client_cache is None:
            import boto3

            endpoint = self.endpoint
            if endpoint and "://" not in endpoint:
                endpoint = f"https://{endpoint}"
            self._client_cache = boto3.client(
                "s3",
                endpoint_url=endpoint or None,
                region_name=self.region or None,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
            )
        return self._client_cache

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            return self.client.get_object(Bucket=self.bucket, Key=key)["Body"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise StorageError(f"Missing object: {key}") from None
            raise

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return False
            raise
        return True

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def check(self) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot access bucket {self.bucket!r}: {e}") from e


S3_REQUIRED_SETTINGS = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def storage_from_config(config) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "local":
        return LocalStorage(root=Path(config.get("STORAGE_ROOT") or Path(os.getcwd()) / "storage"))
    if backend != "s3":
        raise StorageError(f"Unknown STORAGE_BACKEND {backend!r}")
    settings = {name: (config.get(name) or "").strip() for name in S3_REQUIRED_SETTINGS}
    return S3Storage(
        endpoint=settings["S3_ENDPOINT"],
        region=(config.get("S3_REGION") or "nyc3").strip(),
        bucket=settings["S3_BUCKET"],
        access_key_id=settings["S3_ACCESS_KEY_ID"],
        secret_access_key=settings["S3_SECRET_ACCESS_KEY"],
    )
