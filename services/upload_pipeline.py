"""Multipart upload pipeline: spool, hash, rename and store mailing assets."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiofiles
import aiofiles.os
from starlette.datastructures import FormData
from starlette.datastructures import UploadFile as StarletteUploadFile

from config import StorageSettings
from logging_utils import Phase, PhaseLogger
from services.asset_store import AssetStore
from services.errors import UploadFailed, UploadTooLargeError, ValidationError
from services.name_normalizer import derive_stored_name, slug_filename_stem, validate_prefix

logger = logging.getLogger(__name__)

MARKUP_FIELD = "markup"
EDITOR_FILE_FIELD = "files[]"
IMAGE_ROUTE = "/filemanager/img"


class Formatter(str, Enum):
    EDITOR = "editor"
    GROUPS = "groups"


@dataclass
class UploadedFile:
    """One binary part spooled to disk, owned by the pipeline for one request."""

    field_name: str
    original_name: str
    mime_type: str
    size_bytes: int
    content_hash: str
    tmp_location: Path
    normalized_name: str = ""
    stored_name: str = ""


@dataclass
class UploadResult:
    assets: Dict[str, str] = field(default_factory=dict)
    markup: Optional[str] = None
    files: List[UploadedFile] = field(default_factory=list)
    fields: Dict[str, str] = field(default_factory=dict)


def format_editor_file(stored_name: str, size_bytes: Optional[int], mime_type: Optional[str]) -> Dict[str, Any]:
    """Shape one stored asset the way the single-file upload widget expects."""
    url = f"{IMAGE_ROUTE}/{stored_name}"
    return {
        "name": stored_name,
        "size": size_bytes,
        "type": mime_type,
        "url": url,
        "thumbnailUrl": url,
    }


class UploadPipeline:
    """Turns one multipart submission into stored assets and a result record."""

    def __init__(self, store: AssetStore, settings: StorageSettings, *, verbose: bool = False) -> None:
        self.store = store
        self.settings = settings
        self.verbose = verbose
        self.tmp_dir = Path(settings.tmp_dir)

    async def process(
        self,
        form: FormData,
        *,
        prefix: str,
        formatter: Formatter | str = Formatter.GROUPS,
    ) -> Dict[str, Any]:
        formatter = Formatter(formatter)
        result = await self.collect(form, prefix=prefix)
        if formatter is Formatter.EDITOR:
            return self.format_editor(result)
        return self.format_groups(result)

    async def collect(self, form: FormData, *, prefix: str) -> UploadResult:
        """Store every usable part of ``form`` under ``prefix``.

        The returned result is only built once every write has settled; a
        single failed write raises :class:`UploadFailed` instead.
        """
        validate_prefix(prefix)
        phase_logger = PhaseLogger(request_id=f"upload-{prefix}", verbose=self.verbose, logger=logger)
        result = UploadResult()
        spooled: List[UploadedFile] = []

        try:
            with phase_logger.phase(Phase.UPLOAD_PARSE):
                for field_name, value in form.multi_items():
                    if not isinstance(value, StarletteUploadFile):
                        if field_name == MARKUP_FIELD:
                            result.markup = value or result.markup
                        else:
                            result.fields[field_name] = value
                        continue

                    if not value.filename:
                        phase_logger.debug(f"Dropping unnamed part '{field_name}'")
                        continue

                    if field_name == MARKUP_FIELD:
                        text = (await value.read()).decode("utf-8", errors="replace")
                        if text:
                            result.markup = text
                        continue

                    uploaded = await self._spool(field_name, value)
                    spooled.append(uploaded)
                    if uploaded.size_bytes == 0:
                        phase_logger.debug(f"Dropping empty part '{uploaded.original_name}'")
                        continue

                    uploaded.normalized_name = slug_filename_stem(uploaded.original_name)
                    if not uploaded.normalized_name:
                        phase_logger.warning(
                            f"Skipping '{uploaded.original_name}': nothing left of the name after normalization"
                        )
                        continue

                    # Raises UnknownMimeType before anything reaches the store.
                    uploaded.stored_name = derive_stored_name(uploaded.content_hash, prefix, uploaded.mime_type)
                    result.files.append(uploaded)

            with phase_logger.phase(Phase.UPLOAD_STORE, sub_label=f"{len(result.files)} asset(s)"):
                await self._store_all(result.files, phase_logger)

            for uploaded in result.files:
                result.assets[uploaded.normalized_name] = uploaded.stored_name
                phase_logger.debug(f"{uploaded.original_name} -> {uploaded.stored_name}")
            return result
        finally:
            await self._cleanup(spooled)

    async def _store_all(self, files: List[UploadedFile], phase_logger: PhaseLogger) -> None:
        # Identical content shares one stored name, so it is written once.
        unique: Dict[str, UploadedFile] = {}
        for uploaded in files:
            unique.setdefault(uploaded.stored_name, uploaded)
        writes = list(unique.values())

        results = await asyncio.gather(
            *(self._write(uploaded) for uploaded in writes),
            return_exceptions=True,
        )
        errors: List[BaseException] = []
        for uploaded, outcome in zip(writes, results):
            if isinstance(outcome, BaseException):
                phase_logger.error(f"Unable to store '{uploaded.original_name}' as {uploaded.stored_name}: {outcome}")
                errors.append(outcome)
        if errors:
            raise UploadFailed(
                f"{len(errors)} of {len(writes)} asset write(s) failed",
                errors=errors,
            ) from errors[0]

    async def _write(self, uploaded: UploadedFile) -> str:
        return await self.store.put(
            self._iter_path(uploaded.tmp_location),
            uploaded.stored_name,
            content_type=uploaded.mime_type,
        )

    async def _spool(self, field_name: str, upload: StarletteUploadFile) -> UploadedFile:
        """Copy ``upload`` to the temp dir while hashing and measuring it."""
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        tmp_location = self.tmp_dir / f"{uuid.uuid4().hex}.upload"
        digest = hashlib.new(self.settings.hash_algorithm)
        total_bytes = 0

        try:
            async with aiofiles.open(tmp_location, "wb") as destination:
                while True:
                    chunk = await upload.read(self.settings.chunk_size)
                    if not chunk:
                        break
                    total_bytes += len(chunk)
                    if total_bytes > self.settings.max_size_bytes:
                        raise UploadTooLargeError(
                            f"Upload '{upload.filename}' exceeds allowed size of {self.settings.max_size_bytes} bytes"
                        )
                    await destination.write(chunk)
                    digest.update(chunk)
        except BaseException:
            await _remove_quietly(tmp_location)
            raise

        return UploadedFile(
            field_name=field_name,
            original_name=upload.filename or "",
            mime_type=upload.content_type or "",
            size_bytes=total_bytes,
            content_hash=digest.hexdigest(),
            tmp_location=tmp_location,
        )

    async def _iter_path(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as source:
            while True:
                chunk = await source.read(self.settings.chunk_size)
                if not chunk:
                    break
                yield chunk

    async def _cleanup(self, spooled: List[UploadedFile]) -> None:
        for uploaded in spooled:
            await _remove_quietly(uploaded.tmp_location)

    @staticmethod
    def format_editor(result: UploadResult) -> Dict[str, Any]:
        editor_files = [f for f in result.files if f.field_name == EDITOR_FILE_FIELD]
        if not editor_files:
            raise ValidationError(f"No usable file received in '{EDITOR_FILE_FIELD}'")
        uploaded = editor_files[0]
        return {"files": [format_editor_file(uploaded.stored_name, uploaded.size_bytes, uploaded.mime_type)]}

    @staticmethod
    def format_groups(result: UploadResult) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(result.fields)
        payload["assets"] = dict(result.assets)
        if result.markup is not None:
            payload["markup"] = result.markup
        return payload


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
