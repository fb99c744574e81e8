"""Mailing export: discover remote images, rewrite links, stream a zip archive.

Discovery parses the document with BeautifulSoup, but the rewrite itself is
plain string replacement on the original markup. Email HTML is full of
conditional comments and vendor specific attributes that a serializer
would normalise away, so the tree is never written back.

Each image is downloaded in full, under its own deadline, before it is
appended to the archive; a body that fails or runs out of time is skipped
and never leaves a partial entry behind.
"""

from __future__ import annotations

import asyncio
import logging
import re
import tempfile
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlsplit

import httpx
from bs4 import BeautifulSoup

from config import ExportSettings
from logging_utils import Phase, PhaseLogger
from services.archive_stream import ArchiveStream
from services.errors import FetchError, ValidationError
from services.mail_dispatch import sanitize
from services.name_normalizer import archive_name, slug, split_filename

logger = logging.getLogger(__name__)

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
_STYLE_URL = re.compile(r"""url\(\s*['"]?([^)'"]*)['"]?\s*\)""", re.IGNORECASE)
_EXTENSION_CHARS = re.compile(r"[^a-z0-9.]")

DEFAULT_IMAGE_NAME = "image"
SPOOL_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ManifestEntry:
    remote_url: str
    archive_path: str


@dataclass
class FetchOutcome:
    entry: ManifestEntry
    stored: bool
    reason: Optional[str] = None


@dataclass
class PreparedExport:
    """Everything computed before the first archive byte is produced."""

    archive_name: str
    manifest: List[ManifestEntry]
    html: str
    outcomes: List[FetchOutcome] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return f"{self.archive_name}.zip"


def is_http_url(value: Optional[str]) -> bool:
    return bool(value) and bool(_HTTP_URL.match(value))


def extract_asset_urls(html: str) -> List[str]:
    """Return the distinct absolute image URLs referenced by ``html``, in document order.

    Three shapes are recognised: ``<img src>``, any element's ``background``
    attribute, and the first ``url(...)`` of an inline ``style``.
    """
    soup = BeautifulSoup(html, "html.parser")
    candidates: List[str] = []

    for img in soup.find_all("img", src=True):
        candidates.append(img["src"])
    for element in soup.find_all(attrs={"background": True}):
        candidates.append(element["background"])
    for element in soup.find_all(style=True):
        match = _STYLE_URL.search(element["style"])
        if match:
            candidates.append(match.group(1))

    seen: Dict[str, None] = {}
    for candidate in candidates:
        url = candidate.strip()
        if is_http_url(url):
            seen.setdefault(url, None)
    return list(seen)


def image_name_for_url(url: str) -> str:
    """Derive a flat file name from the path of ``url`` (``/a/b c.png`` -> ``a-b-c.png``)."""
    segments = [segment for segment in unquote(urlsplit(url).path).split("/") if segment]
    if not segments:
        return DEFAULT_IMAGE_NAME
    last_stem, extension = split_filename(segments[-1])
    stem = " ".join(segments[:-1] + [last_stem])
    extension = _EXTENSION_CHARS.sub("", extension)
    return (slug(stem) or DEFAULT_IMAGE_NAME) + extension


def build_manifest(urls: Iterable[str], images_folder: str = "images") -> List[ManifestEntry]:
    """Pair every distinct URL with a distinct archive relative path."""
    manifest: List[ManifestEntry] = []
    taken = set()
    seen_urls = set()

    for url in urls:
        if url in seen_urls:
            continue
        seen_urls.add(url)

        name = image_name_for_url(url)
        stem, extension = split_filename(name)
        candidate, counter = name, 1
        while candidate in taken:
            counter += 1
            candidate = f"{stem}-{counter}{extension}"
        taken.add(candidate)
        manifest.append(ManifestEntry(remote_url=url, archive_path=f"{images_folder}/{candidate}"))
    return manifest


def rewrite_html(html: str, manifest: Iterable[ManifestEntry]) -> str:
    """Point every manifest URL at its archive path with plain string replacement.

    Longer URLs are replaced first so a URL that is a prefix of another one
    cannot break it. The ``&amp;`` spelling of a URL is rewritten as well.
    """
    for entry in sorted(manifest, key=lambda item: len(item.remote_url), reverse=True):
        html = html.replace(entry.remote_url, entry.archive_path)
        escaped = entry.remote_url.replace("&", "&amp;")
        if escaped != entry.remote_url:
            html = html.replace(escaped, entry.archive_path)
    return html


class ExportPipeline:
    """Builds the zip export of one mailing."""

    def __init__(
        self,
        settings: ExportSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verbose: bool = False,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.verbose = verbose

    def prepare(self, html: Optional[str], display_name: Optional[str]) -> PreparedExport:
        """Parse, plan and rewrite ``html``; raises before any byte is streamed."""
        if not html or not html.strip():
            raise ValidationError("Mailing HTML is required for export")

        name = archive_name(display_name)
        phase_logger = PhaseLogger(request_id=f"zip-{name}", verbose=self.verbose, logger=logger)
        with phase_logger.phase(Phase.EXPORT_MANIFEST):
            manifest = build_manifest(extract_asset_urls(html), self.settings.images_folder)
            for entry in manifest:
                phase_logger.debug(f"{entry.remote_url} -> {entry.archive_path}")
            phase_logger.info(f"{len(manifest)} remote image(s) referenced")
            rewritten = sanitize(rewrite_html(html, manifest))
        return PreparedExport(archive_name=name, manifest=manifest, html=rewritten)

    def stream(self, prepared: PreparedExport) -> AsyncIterator[bytes]:
        """Return the archive bytes; fetching starts when iteration starts."""
        archive = ArchiveStream(prepared.archive_name, queue_size=self.settings.stream_queue_size)

        async def build(target: ArchiveStream) -> None:
            await self.assemble(prepared, target)

        return archive.iter_bytes(build)

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.fetch_timeout_seconds,
            connect=self.settings.fetch_connect_timeout_seconds,
        )
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": self.settings.user_agent},
            transport=self.transport,
        )

    async def assemble(self, prepared: PreparedExport, archive: ArchiveStream) -> List[FetchOutcome]:
        """Write the HTML entry, then every image that could be fetched.

        Returns only once every fetch has settled; finalizing is left to the
        caller.
        """
        phase_logger = PhaseLogger(
            request_id=f"zip-{prepared.archive_name}-{uuid.uuid4().hex[:6]}",
            verbose=self.verbose,
            logger=logger,
        )
        with phase_logger.phase(Phase.EXPORT_ARCHIVE):
            await archive.add_bytes(f"{prepared.archive_name}.html", prepared.html.encode("utf-8"))

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_fetches)
        with phase_logger.phase(Phase.EXPORT_FETCH, sub_label=f"{len(prepared.manifest)} image(s)"):
            async with self._client() as client:
                tasks = [
                    asyncio.create_task(self._fetch_entry(client, archive, entry, semaphore, phase_logger))
                    for entry in prepared.manifest
                ]
                try:
                    outcomes = await asyncio.gather(*tasks)
                except BaseException:
                    for task in tasks:
                        task.cancel()
                    raise

        stored = sum(1 for outcome in outcomes if outcome.stored)
        phase_logger.info(f"Archived {stored} of {len(outcomes)} image(s) for {prepared.archive_name}")
        prepared.outcomes = outcomes
        return outcomes

    async def _fetch_entry(
        self,
        client: httpx.AsyncClient,
        archive: ArchiveStream,
        entry: ManifestEntry,
        semaphore: asyncio.Semaphore,
        phase_logger: PhaseLogger,
    ) -> FetchOutcome:
        deadline = self.settings.fetch_timeout_seconds
        async with semaphore:
            # The body is spooled before the archive is touched, so a slow
            # server only ever holds up its own entry.
            with tempfile.SpooledTemporaryFile(max_size=self.settings.spool_memory_bytes) as spool:
                try:
                    await asyncio.wait_for(self._download(client, entry.remote_url, spool), timeout=deadline)
                except asyncio.TimeoutError:
                    phase_logger.warning(f"Skipping {entry.remote_url}: no complete response within {deadline}s")
                    return FetchOutcome(entry=entry, stored=False, reason=f"Timed out after {deadline}s")
                except (FetchError, httpx.HTTPError, httpx.InvalidURL) as exc:
                    phase_logger.warning(f"Skipping {entry.remote_url}: {exc}")
                    return FetchOutcome(entry=entry, stored=False, reason=str(exc) or exc.__class__.__name__)

                spool.seek(0)
                await archive.add_stream(entry.archive_path, _iter_spool(spool))

        phase_logger.debug(f"Archived {entry.remote_url} as {entry.archive_path}")
        return FetchOutcome(entry=entry, stored=True)

    @staticmethod
    async def _download(client: httpx.AsyncClient, url: str, spool) -> None:
        async with client.stream("GET", url) as response:
            if response.status_code != 200:
                raise FetchError(f"HTTP {response.status_code}")
            async for chunk in response.aiter_bytes():
                spool.write(chunk)


async def _iter_spool(spool, chunk_size: int = SPOOL_CHUNK_SIZE) -> AsyncIterator[bytes]:
    while True:
        chunk = spool.read(chunk_size)
        if not chunk:
            break
        yield chunk
