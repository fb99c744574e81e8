"""Asset store adapter with interchangeable local and S3 backends.

Keys are relative POSIX paths (``<prefix>-<hash>.<ext>`` for uploads). The
locator returned by :meth:`AssetStore.put` is the key itself for both
backends, so a locator stays valid when the backend is swapped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aioboto3
import aiofiles
import aiofiles.os
from botocore.exceptions import ClientError

from config import StorageSettings
from services.errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class CopyReport:
    """Outcome of a prefix copy; ``ok`` is False as soon as one object failed."""

    src_prefix: str
    dst_prefix: str
    copied: List[Tuple[str, str]] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src_prefix": self.src_prefix,
            "dst_prefix": self.dst_prefix,
            "ok": self.ok,
            "copied": [{"source": src, "destination": dst} for src, dst in self.copied],
            "failed": dict(self.failed),
        }


def validate_key(key: str) -> str:
    """Reject keys that could escape the store root."""
    if not key or key.startswith("/") or "\\" in key or "\0" in key:
        raise ValidationError(f"Invalid asset key '{key}'")
    if any(part in {"", ".", ".."} for part in key.split("/")):
        raise ValidationError(f"Invalid asset key '{key}'")
    return key


class AssetStore(ABC):
    """Capability set shared by every asset backend."""

    name: str = "abstract"

    @abstractmethod
    async def put(self, stream: AsyncIterator[bytes], key: str, *, content_type: Optional[str] = None) -> str:
        """Store the full stream under ``key`` and return its locator.

        Either the whole stream is stored or :class:`StorageError` is raised
        and nothing observable changes.
        """

    @abstractmethod
    async def read(self, locator: str) -> AsyncIterator[bytes]:
        """Return a chunk iterator for ``locator`` (raises :class:`NotFoundError` up front)."""

    @abstractmethod
    async def list(self, prefix: str) -> List[str]:
        """Return every locator whose key starts with ``prefix``, sorted."""

    async def copy(self, src_prefix: str, dst_prefix: str) -> CopyReport:
        """Duplicate every object under ``src_prefix`` to the same relative key under ``dst_prefix``.

        Copies are best effort: every object is attempted and each failure
        is recorded in the report instead of aborting the others.
        """
        if not src_prefix or not dst_prefix:
            raise ValidationError("Both source and destination prefixes are required")
        report = CopyReport(src_prefix=src_prefix, dst_prefix=dst_prefix)
        keys = await self.list(src_prefix)
        targets = [(key, dst_prefix + key[len(src_prefix):]) for key in keys]

        results = await asyncio.gather(
            *(self._copy_object(src, dst) for src, dst in targets),
            return_exceptions=True,
        )
        for (src, dst), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Unable to copy asset %s to %s: %s", src, dst, result)
                report.failed[src] = str(result) or result.__class__.__name__
            else:
                report.copied.append((src, dst))

        logger.info(
            "Copied %d asset(s) from prefix %s to %s (%d failed)",
            len(report.copied),
            src_prefix,
            dst_prefix,
            len(report.failed),
        )
        return report

    async def _copy_object(self, src: str, dst: str) -> None:
        stream = await self.read(src)
        await self.put(stream, dst)


class LocalAssetStore(AssetStore):
    """Stores assets below a root directory, keeping the key as relative path."""

    name = "local"

    def __init__(self, root: str | Path, *, chunk_size: int = 64 * 1024) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size

    def _path_for(self, key: str) -> Path:
        return self.root / Path(*PurePosixPath(validate_key(key)).parts)

    async def put(self, stream: AsyncIterator[bytes], key: str, *, content_type: Optional[str] = None) -> str:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Hidden partial file in the same directory so the final rename is atomic.
        partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            async with aiofiles.open(partial, "wb") as destination:
                async for chunk in stream:
                    if chunk:
                        await destination.write(chunk)
            await aiofiles.os.replace(partial, target)
        except Exception as exc:
            if partial.exists():
                await aiofiles.os.remove(partial)
            raise StorageError(f"Unable to store asset {key}") from exc
        return key

    async def read(self, locator: str) -> AsyncIterator[bytes]:
        path = self._path_for(locator)
        if not await aiofiles.os.path.isfile(path):
            raise NotFoundError(f"Asset {locator} not found")
        return self._iter_file(path)

    async def _iter_file(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as source:
            while True:
                chunk = await source.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    async def list(self, prefix: str) -> List[str]:
        # rglob blocks; walk the tree in a worker thread.
        return await asyncio.to_thread(self._scan, prefix)

    def _scan(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys: List[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class _AsyncStreamReader:
    """Expose an async chunk iterator through the ``read(size)`` file API."""

    def __init__(self, stream: AsyncIterator[bytes]) -> None:
        self._stream = stream.__aiter__()
        self._buffer = bytearray()
        self._exhausted = False

    async def read(self, size: int = -1) -> bytes:
        while not self._exhausted and (size < 0 or len(self._buffer) < size):
            try:
                self._buffer.extend(await self._stream.__anext__())
            except StopAsyncIteration:
                self._exhausted = True
        if size < 0:
            size = len(self._buffer)
        chunk = bytes(self._buffer[:size])
        del self._buffer[:size]
        return chunk


class S3AssetStore(AssetStore):
    """Stores assets as objects of an S3 compatible bucket under the same key."""

    name = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        chunk_size: int = 64 * 1024,
        session: Optional[aioboto3.Session] = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket must be configured for the s3 asset store")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.access_key = access_key
        self.secret_key = secret_key
        self.chunk_size = chunk_size
        self._session = session or aioboto3.Session()

    def _client_config(self) -> Dict[str, str]:
        client_config = {"region_name": self.region}
        if self.endpoint_url:
            client_config["endpoint_url"] = self.endpoint_url
        if self.access_key:
            client_config["aws_access_key_id"] = self.access_key
        if self.secret_key:
            client_config["aws_secret_access_key"] = self.secret_key
        return client_config

    def _client(self):
        return self._session.client("s3", **self._client_config())

    async def put(self, stream: AsyncIterator[bytes], key: str, *, content_type: Optional[str] = None) -> str:
        validate_key(key)
        extra_args = {"ContentType": content_type} if content_type else None
        try:
            async with self._client() as s3:
                # Multipart uploads only become visible once completed.
                await s3.upload_fileobj(_AsyncStreamReader(stream), self.bucket, key, ExtraArgs=extra_args)
        except Exception as exc:
            raise StorageError(f"Unable to store asset {key} in bucket {self.bucket}") from exc
        return key

    async def read(self, locator: str) -> AsyncIterator[bytes]:
        validate_key(locator)
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self.bucket, Key=locator)
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status == 404 or exc.response.get("Error", {}).get("Code") in {"404", "NoSuchKey"}:
                raise NotFoundError(f"Asset {locator} not found") from exc
            raise StorageError(f"Unable to read asset {locator}") from exc
        return self._iter_object(locator)

    async def _iter_object(self, key: str) -> AsyncIterator[bytes]:
        async with self._client() as s3:
            response = await s3.get_object(Bucket=self.bucket, Key=key)
            async with response["Body"] as body:
                async for chunk in body.iter_chunks(self.chunk_size):
                    yield chunk

    async def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        try:
            async with self._client() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                    keys.extend(item["Key"] for item in page.get("Contents", []))
        except ClientError as exc:
            raise StorageError(f"Unable to list assets with prefix {prefix}") from exc
        return sorted(keys)

    async def _copy_object(self, src: str, dst: str) -> None:
        validate_key(dst)
        async with self._client() as s3:
            await s3.copy_object(
                Bucket=self.bucket,
                Key=dst,
                CopySource={"Bucket": self.bucket, "Key": src},
            )


def build_asset_store(settings: StorageSettings) -> AssetStore:
    """Instantiate the backend selected in configuration."""
    if settings.backend == "s3":
        logger.info("Using S3 asset store (bucket %s)", settings.s3_bucket)
        return S3AssetStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            chunk_size=settings.chunk_size,
        )
    logger.info("Using local asset store rooted at %s", settings.local_root)
    return LocalAssetStore(settings.local_root, chunk_size=settings.chunk_size)
