"""Object storage for compressed videos.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage
(Supabase Storage exposes an S3 endpoint). Uploads never overwrite an
existing object unless explicitly asked to.
"""

import logging
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from app.core.config import Settings

logger = logging.getLogger(__name__)

# Error codes S3-compatible services return for a failed If-None-Match write
_CONDITIONAL_WRITE_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412"}


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    bucket: str
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    already_exists: bool = False
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio, supabase
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    public_base_url: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageConfig":
        return cls(
            backend=settings.STORAGE_BACKEND,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
            public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
        )


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    def __init__(self, config: StorageConfig):
        self.config = config

    @abstractmethod
    def upload(
        self,
        bucket: str,
        key: str,
        file_path: str,
        content_type: str = "application/octet-stream",
        overwrite: bool = False,
    ) -> StorageResult:
        """Upload a local file under ``bucket/key``.

        Opening ``file_path`` happens before the backend is contacted, so a
        missing or unreadable source raises ``OSError`` instead of producing
        a failed result.
        """

    @abstractmethod
    def get_public_url(self, bucket: str, key: str) -> str:
        """Get the public URL of an object."""

    def _public_base_url(self, bucket: str, key: str) -> Optional[str]:
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{quote(bucket)}/{quote(key)}"
        return None


class LocalStorage(StorageBackend):
    """Local filesystem storage backend.

    Each bucket is a directory below ``local_path``.
    """

    def __init__(self, config: StorageConfig):
        super().__init__(config)
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, bucket: str, key: str) -> Path:
        path = (self.base_path / bucket / key).resolve()
        if not path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Key escapes storage root: {bucket}/{key}")
        return path

    def upload(
        self,
        bucket: str,
        key: str,
        file_path: str,
        content_type: str = "application/octet-stream",
        overwrite: bool = False,
    ) -> StorageResult:
        with open(file_path, "rb") as src:
            try:
                dest_path = self._get_full_path(bucket, key)
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                with open(dest_path, "wb" if overwrite else "xb") as dst:
                    shutil.copyfileobj(src, dst)
                file_size = dest_path.stat().st_size
            except FileExistsError:
                return StorageResult(
                    success=False,
                    bucket=bucket,
                    key=key,
                    already_exists=True,
                    error_message=f"Object already exists: {bucket}/{key}",
                )
            except (OSError, ValueError) as e:
                return StorageResult(
                    success=False,
                    bucket=bucket,
                    key=key,
                    error_message=str(e),
                )

        logger.info(f"Stored {file_path} -> {dest_path}")
        return StorageResult(success=True, bucket=bucket, key=key, file_size=file_size)

    def get_public_url(self, bucket: str, key: str) -> str:
        url = self._public_base_url(bucket, key)
        if url:
            return url
        return self._get_full_path(bucket, key).as_uri()


class S3Storage(StorageBackend):
    """S3/MinIO/Supabase compatible storage backend."""

    def __init__(self, config: StorageConfig):
        super().__init__(config)
        self._client = None
        self._client_lock = threading.Lock()

    def _get_client(self):
        """Get or create the S3 client.

        The client is created once and shared by every job; boto3 clients
        are safe to use from several threads.
        """
        with self._client_lock:
            if self._client is None:
                import boto3
                from botocore.config import Config as BotoConfig

                client_kwargs = {
                    "service_name": "s3",
                    "region_name": self.config.region or "us-east-1",
                    "aws_access_key_id": self.config.access_key or None,
                    "aws_secret_access_key": self.config.secret_key or None,
                }

                # MinIO, Supabase and other S3-compatible endpoints
                if self.config.endpoint_url:
                    client_kwargs["endpoint_url"] = self.config.endpoint_url
                    client_kwargs["config"] = BotoConfig(
                        signature_version="s3v4",
                        s3={"addressing_style": "path"},
                    )
                    if not self.config.use_ssl:
                        client_kwargs["use_ssl"] = False

                self._client = boto3.client(**client_kwargs)

        return self._client

    def upload(
        self,
        bucket: str,
        key: str,
        file_path: str,
        content_type: str = "application/octet-stream",
        overwrite: bool = False,
    ) -> StorageResult:
        from botocore.exceptions import BotoCoreError, ClientError

        with open(file_path, "rb") as f:
            file_size = Path(file_path).stat().st_size
            params = {
                "Bucket": bucket,
                "Key": key,
                "Body": f,
                "ContentType": content_type,
            }
            if not overwrite:
                params["IfNoneMatch"] = "*"

            try:
                response = self._get_client().put_object(**params)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                already_exists = code in _CONDITIONAL_WRITE_CODES
                logger.error(f"Failed to upload {file_path} to s3://{bucket}/{key}: {e}")
                return StorageResult(
                    success=False,
                    bucket=bucket,
                    key=key,
                    already_exists=already_exists,
                    error_message=(
                        f"Object already exists: {bucket}/{key}" if already_exists else str(e)
                    ),
                )
            except BotoCoreError as e:
                logger.error(f"Failed to upload {file_path} to s3://{bucket}/{key}: {e}")
                return StorageResult(
                    success=False,
                    bucket=bucket,
                    key=key,
                    error_message=str(e),
                )

        logger.info(f"Uploaded {file_path} -> s3://{bucket}/{key}")
        return StorageResult(
            success=True,
            bucket=bucket,
            key=key,
            file_size=file_size,
            etag=response.get("ETag", "").strip('"') or None,
        )

    def get_public_url(self, bucket: str, key: str) -> str:
        url = self._public_base_url(bucket, key)
        if url:
            return url
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{quote(bucket)}/{quote(key)}"
        region = self.config.region or "us-east-1"
        return f"https://{bucket}.s3.{region}.amazonaws.com/{quote(key)}"


def create_storage(config: StorageConfig) -> StorageBackend:
    """Create the storage backend named by the configuration."""
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws", "supabase"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")
