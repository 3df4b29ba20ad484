"""
Blob store: the audio object store the recorders upload into.

Implementations:
  - InMemoryBlobStore (dict-based, for development/testing)
  - S3BlobStore       (boto3, every call wrapped in asyncio.to_thread)

Deletes are idempotent: removing a missing object is not an error.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Any, Optional

logger = structlog.get_logger()


class BlobNotFoundError(KeyError):
    pass


class BaseBlobStore(abc.ABC):

    @abc.abstractmethod
    async def head_object(self, key: str) -> dict[str, Any]:
        """User metadata of ``key``. Raises BlobNotFoundError when missing."""
        ...

    @abc.abstractmethod
    async def get_object(self, key: str) -> bytes:
        ...

    @abc.abstractmethod
    async def put_object(self, key: str, body: bytes, metadata: Optional[dict[str, str]] = None) -> None:
        ...

    @abc.abstractmethod
    async def delete_object(self, key: str) -> None:
        ...

    def uri_for(self, key: str) -> str:
        return key


class InMemoryBlobStore(BaseBlobStore):

    def __init__(self, bucket: str = "memory"):
        self.bucket = bucket
        self._objects: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.deleted: list[str] = []

    async def head_object(self, key: str) -> dict[str, Any]:
        if key not in self._objects:
            raise BlobNotFoundError(key)
        return dict(self._objects[key][1])

    async def get_object(self, key: str) -> bytes:
        if key not in self._objects:
            raise BlobNotFoundError(key)
        return self._objects[key][0]

    async def put_object(self, key: str, body: bytes, metadata: Optional[dict[str, str]] = None) -> None:
        self._objects[key] = (body, dict(metadata or {}))

    async def delete_object(self, key: str) -> None:
        self._objects.pop(key, None)
        self.deleted.append(key)

    def exists(self, key: str) -> bool:
        return key in self._objects

    def uri_for(self, key: str) -> str:
        return f"memory://{self.bucket}/{key}"


class S3BlobStore(BaseBlobStore):
    """S3-backed blob store. The boto3 client is created lazily."""

    def __init__(self, bucket: str, region: str = "us-east-2", client=None):
        self.bucket = bucket
        self.region = region
        self._client = client

    def _s3(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    async def head_object(self, key: str) -> dict[str, Any]:
        from botocore.exceptions import ClientError
        try:
            resp = await asyncio.to_thread(self._s3().head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                raise BlobNotFoundError(key) from e
            raise
        return dict(resp.get("Metadata") or {})

    async def get_object(self, key: str) -> bytes:
        from botocore.exceptions import ClientError
        try:
            resp = await asyncio.to_thread(self._s3().get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                raise BlobNotFoundError(key) from e
            raise
        return await asyncio.to_thread(resp["Body"].read)

    async def put_object(self, key: str, body: bytes, metadata: Optional[dict[str, str]] = None) -> None:
        await asyncio.to_thread(
            self._s3().put_object,
            Bucket=self.bucket, Key=key, Body=body, Metadata=metadata or {},
        )

    async def delete_object(self, key: str) -> None:
        # S3 DeleteObject already succeeds for missing keys
        await asyncio.to_thread(self._s3().delete_object, Bucket=self.bucket, Key=key)
        logger.info("blob_deleted", bucket=self.bucket, key=key)

    def uri_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"


def create_blob_store(config) -> BaseBlobStore:
    """Factory: pick the blob store backend from a StorageConfig."""
    if config.backend == "s3":
        logger.info("blob_store_created", backend="s3", bucket=config.bucket)
        return S3BlobStore(bucket=config.bucket, region=config.region)
    logger.info("blob_store_created", backend="memory")
    return InMemoryBlobStore(bucket=config.bucket)
