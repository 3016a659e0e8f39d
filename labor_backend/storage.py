"""
Blob storage abstraction for S3-compatible object stores and in-memory testing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote, urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from labor_backend.errors import StorageError

logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def exists(self, path: str) -> bool:
        ...

    def get_bytes(self, path: str) -> bytes:
        """Return the object's content; raise FileNotFoundError if missing."""
        ...

    def put_bytes(self, path: str, data: bytes, content_type: str) -> str:
        """Store (or replace) the object and return its URL."""
        ...

    def public_url(self, path: str) -> str:
        ...

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None
    content_types: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}
        if self.content_types is None:
            self.content_types = {}

    def reset(self) -> None:
        self.stored_objects.clear()
        self.content_types.clear()

    def exists(self, path: str) -> bool:
        return path in self.stored_objects

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored

    def put_bytes(self, path: str, data: bytes, content_type: str) -> str:
        self.stored_objects[path] = bytes(data)
        self.content_types[path] = content_type
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        return f"{self.base_url}/{path}?op=get&expires={expires_in}"


@dataclass
class S3StorageClient:
    """
    Storage client for any S3-compatible object store (AWS S3, Tencent COS, R2...).

    Objects are written publicly readable when ``public_base_url`` is set, and
    their URL is derived from it; otherwise the plain virtual-hosted object URL
    is returned. Use ``presign_get`` for temporary download links.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # Virtual-hosted style addressing works for both S3 and COS.
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

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES:
                return False
            raise StorageError(f"Failed to check object {path}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to check object {path}") from exc
        return True

    def get_bytes(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES:
                raise FileNotFoundError(path) from exc
            raise StorageError(f"Failed to read object {path}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read object {path}") from exc

    def put_bytes(self, path: str, data: bytes, content_type: str) -> str:
        params = {
            "Bucket": self.bucket,
            "Key": path,
            "Body": data,
            "ContentType": content_type,
        }
        if self.public_base_url:
            params["ACL"] = "public-read"
        try:
            self._client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"Upload of {path} failed: {exc}")
            raise StorageError(f"Failed to write object {path}") from exc
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{path}"
        key = quote(path)
        if self.endpoint:
            parts = urlsplit(self.endpoint)
            host = parts.netloc or parts.path.strip("/")
            return f"{parts.scheme or 'https'}://{self.bucket}.{host}/{key}"
        region = self.region or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{key}"

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=expires_in,
        )
