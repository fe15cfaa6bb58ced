"""Artifact store adapters.

The pipeline only needs put/get/delete and presigned reads; all operations are
idempotent on the object key. The S3 adapter works against AWS S3 or any
S3-compatible endpoint such as MinIO.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import StorageError

logger = structlog.get_logger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class AbstractArtifactStore:
    """Common interface for artifact storage."""

    async def put(
        self,
        key: str,
        path: Path,
        *,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> int:  # pragma: no cover - interface
        """Upload ``path`` under ``key`` and return the stored size in bytes."""
        raise NotImplementedError

    async def get(self, key: str) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError

    async def download(self, key: str, destination: Path) -> Path:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def exists(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def presigned_get(self, key: str, expires: int) -> str:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class StoredObject:
    body: bytes
    content_type: str
    metadata: dict[str, str] = field(default_factory=dict)


class InMemoryArtifactStore(AbstractArtifactStore):
    """Dictionary-backed store used for testing and local dev."""

    def __init__(self, base_url: str = "memory://artifacts") -> None:
        self.objects: dict[str, StoredObject] = {}
        self.put_calls: list[str] = []
        self._base_url = base_url.rstrip("/")

    async def put(
        self,
        key: str,
        path: Path,
        *,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> int:
        body = path.read_bytes()
        self.objects[key] = StoredObject(body=body, content_type=content_type, metadata=dict(metadata or {}))
        self.put_calls.append(key)
        return len(body)

    async def get(self, key: str) -> bytes:
        stored = self.objects.get(key)
        if stored is None:
            raise StorageError("get", key, "no such key")
        return stored.body

    async def download(self, key: str, destination: Path) -> Path:
        body = await self.get(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(body)
        return destination

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def presigned_get(self, key: str, expires: int) -> str:
        return f"{self._base_url}/{key}?expires={expires}"


def _session(settings: Settings) -> boto3.session.Session:
    return boto3.session.Session(
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        region_name=settings.s3_region,
    )


def _client_config() -> BotoConfig:
    return BotoConfig(s3={"addressing_style": "path"}, signature_version="s3v4")


class S3ArtifactStore(AbstractArtifactStore):
    """boto3-backed store; blocking SDK calls run in a worker thread."""

    def __init__(self, bucket: str, client: Any, presign_client: Optional[Any] = None) -> None:
        self.bucket = bucket
        self._s3 = client
        # Presigned URLs must carry the host the client will actually reach.
        self._presign = presign_client or client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ArtifactStore":
        session = _session(settings)
        client = session.client("s3", endpoint_url=settings.s3_endpoint_url, config=_client_config())
        presign_client = client
        if settings.s3_public_endpoint_url:
            presign_client = session.client(
                "s3", endpoint_url=settings.s3_public_endpoint_url, config=_client_config()
            )
        return cls(settings.s3_bucket, client, presign_client)

    def _put_sync(self, key: str, path: Path, content_type: str, metadata: dict[str, str]) -> int:
        size = path.stat().st_size
        with path.open("rb") as body:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentLength=size,
                ContentType=content_type,
                Metadata=metadata,
            )
        return size

    async def put(
        self,
        key: str,
        path: Path,
        *,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> int:
        try:
            size = await asyncio.to_thread(self._put_sync, key, path, content_type, dict(metadata or {}))
        except (ClientError, BotoCoreError, OSError) as exc:
            logger.error("Artifact upload failed", key=key, error=str(exc))
            raise StorageError("put", key, str(exc)) from exc
        logger.debug("Artifact uploaded", key=key, size=size)
        return size

    def _get_sync(self, key: str) -> bytes:
        response = self._s3.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("get", key, str(exc)) from exc

    def _download_sync(self, key: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        response = self._s3.get_object(Bucket=self.bucket, Key=key)
        with destination.open("wb") as output_file:
            for chunk in response["Body"].iter_chunks(DOWNLOAD_CHUNK_SIZE):
                output_file.write(chunk)
        return destination

    async def download(self, key: str, destination: Path) -> Path:
        try:
            return await asyncio.to_thread(self._download_sync, key, destination)
        except (ClientError, BotoCoreError, OSError) as exc:
            raise StorageError("download", key, str(exc)) from exc

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._s3.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Artifact deletion failed", key=key, error=str(exc))
            raise StorageError("delete", key, str(exc)) from exc

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._s3.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise StorageError("head", key, str(exc)) from exc
        except BotoCoreError as exc:
            raise StorageError("head", key, str(exc)) from exc
        return True

    async def presigned_get(self, key: str, expires: int) -> str:
        try:
            return self._presign.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires,
                HttpMethod="GET",
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("presign", key, str(exc)) from exc


def create_artifact_store(settings: Settings) -> AbstractArtifactStore:
    if settings.storage_backend == "memory":
        return InMemoryArtifactStore()
    return S3ArtifactStore.from_settings(settings)
