"""Streaming zip archive fed into an HTTP response one chunk at a time."""

from __future__ import annotations

import asyncio
import logging
import zipfile
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from services.errors import ArchiveError

logger = logging.getLogger(__name__)


class _ChunkSink:
    """Write-only, non-seekable target for ``zipfile``.

    ``zipfile`` detects the missing ``tell``/``seek`` and falls back to data
    descriptors, so entries never need to be rewritten after the fact.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class ArchiveStream:
    """Append-only zip archive rooted at ``<root_name>/``.

    Entries are written one at a time (a zip entry must be complete before
    the next starts), compressed bytes are handed to a bounded queue and
    read by :meth:`iter_bytes`. A full queue suspends the writer, so memory
    stays bounded by ``queue_size`` chunks no matter how large the images.
    """

    def __init__(self, root_name: str, *, queue_size: int = 32) -> None:
        self.root_name = root_name
        self.entries: List[str] = []
        self.truncated: List[str] = []
        self.finalized = False
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=queue_size)
        self._sink = _ChunkSink()
        self._zip = zipfile.ZipFile(self._sink, mode="w", compression=zipfile.ZIP_DEFLATED)
        self._lock = asyncio.Lock()
        self._error: Optional[BaseException] = None

    def entry_name(self, relative_path: str) -> str:
        return f"{self.root_name}/{relative_path}"

    async def _drain(self) -> None:
        data = self._sink.take()
        if data:
            await self._queue.put(data)

    def _ensure_open(self) -> None:
        if self.finalized:
            raise ArchiveError(f"Archive {self.root_name} is already finalized")

    async def add_bytes(self, relative_path: str, data: bytes) -> str:
        name = self.entry_name(relative_path)
        async with self._lock:
            self._ensure_open()
            try:
                self._zip.writestr(name, data)
            except Exception as exc:
                raise ArchiveError(f"Unable to write archive entry {name}") from exc
            self.entries.append(name)
            await self._drain()
        return name

    async def add_stream(self, relative_path: str, chunks: AsyncIterator[bytes]) -> str:
        """Pipe ``chunks`` into a new entry.

        When ``chunks`` itself fails the entry is closed as is (truncated) and
        the source error propagates; zip write failures raise
        :class:`ArchiveError`.
        """
        name = self.entry_name(relative_path)
        async with self._lock:
            self._ensure_open()
            try:
                entry = self._zip.open(name, mode="w")
            except Exception as exc:
                raise ArchiveError(f"Unable to open archive entry {name}") from exc
            try:
                async for chunk in chunks:
                    try:
                        entry.write(chunk)
                    except Exception as exc:
                        raise ArchiveError(f"Unable to write archive entry {name}") from exc
                    await self._drain()
            except ArchiveError:
                raise
            except Exception:
                self.truncated.append(name)
                raise
            finally:
                entry.close()
            self.entries.append(name)
            await self._drain()
        return name

    async def finalize(self) -> None:
        """Write the central directory and signal end of stream."""
        async with self._lock:
            if self.finalized:
                return
            self.finalized = True
            try:
                self._zip.close()
            except Exception as exc:
                raise ArchiveError(f"Unable to finalize archive {self.root_name}") from exc
            await self._drain()
            await self._queue.put(None)
        logger.info("Archive %s finalized with %d entries", self.root_name, len(self.entries))

    async def _produce(self, build: Callable[["ArchiveStream"], Awaitable[None]]) -> None:
        try:
            await build(self)
            await self.finalize()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Archive %s aborted", self.root_name)
            self._error = exc
            await self._queue.put(None)

    async def iter_bytes(self, build: Callable[["ArchiveStream"], Awaitable[None]]) -> AsyncIterator[bytes]:
        """Run ``build`` in a background task and yield the archive as it is written.

        Closing the iterator early (client disconnect) cancels ``build``.
        """
        producer = asyncio.create_task(self._produce(build))
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    break
                yield chunk
            if self._error is not None:
                raise ArchiveError(f"Archive {self.root_name} is incomplete") from self._error
            await producer
        finally:
            if not producer.done():
                logger.warning("Archive %s stream closed before completion, cancelling", self.root_name)
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass
