"""Deterministic naming for uploaded assets and export archives.

Everything in this module is pure: no I/O, no configuration lookups.
"""

from __future__ import annotations

import mimetypes
import re
import unicodedata
from pathlib import PurePosixPath
from typing import Dict, Optional, Tuple

from services.errors import UnknownMimeType, ValidationError

# Letters that NFKD decomposition leaves untouched but that have a
# conventional ASCII spelling.
_TRANSLITERATIONS: Dict[str, str] = {
    "ß": "ss",
    "ẞ": "ss",
    "æ": "ae",
    "Æ": "ae",
    "œ": "oe",
    "Œ": "oe",
    "ø": "o",
    "Ø": "o",
    "đ": "d",
    "Đ": "d",
    "ð": "d",
    "Ð": "d",
    "ł": "l",
    "Ł": "l",
    "þ": "th",
    "Þ": "th",
    "ı": "i",
    "&": " and ",
}

# Upload extensions come only from this table, never from the host mime.types.
MIME_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/pjpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/bmp": "bmp",
    "image/tiff": "tif",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/avif": "avif",
    "text/html": "html",
    "text/css": "css",
    "text/plain": "txt",
    "application/pdf": "pdf",
    "application/json": "json",
    "application/zip": "zip",
    "font/woff": "woff",
    "font/woff2": "woff2",
}

# First MIME type listed for an extension wins (jpg -> image/jpeg).
_EXTENSION_MIMES: Dict[str, str] = {}
for _mime, _extension in MIME_EXTENSIONS.items():
    _EXTENSION_MIMES.setdefault(_extension, _mime)

KNOWN_DOCUMENT_EXTENSIONS: Tuple[str, ...] = (".html", ".htm", ".zip", ".eml", ".txt")

DEFAULT_ARCHIVE_NAME = "email"

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_HASH_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


def slug(raw_name: Optional[str]) -> str:
    """Turn any user supplied name into a lower-case ``[a-z0-9-]`` token.

    Accents are transliterated, everything else that is not ASCII is
    dropped, and runs of whitespace or punctuation collapse to a single
    hyphen. ``slug(slug(x)) == slug(x)`` for every input.
    """
    text = "".join(_TRANSLITERATIONS.get(ch, ch) for ch in (raw_name or ""))
    decomposed = unicodedata.normalize("NFKD", text)
    ascii_only = decomposed.encode("ascii", "ignore").decode("ascii").lower()
    return _NON_SLUG_CHARS.sub("-", ascii_only).strip("-")


def split_filename(raw_name: Optional[str]) -> Tuple[str, str]:
    """Return ``(stem, extension)`` of the last path component of ``raw_name``.

    Browsers on Windows may send the full client path, so both separators
    are honoured.
    """
    name = (raw_name or "").replace("\\", "/")
    base = PurePosixPath(name).name
    if not base:
        return "", ""
    path = PurePosixPath(base)
    return path.stem if path.suffix else base, path.suffix.lower()


def slug_filename_stem(raw_name: Optional[str]) -> str:
    """Slug the extension-free part of a filename (empty when nothing usable remains)."""
    stem, _ = split_filename(raw_name)
    return slug(stem)


def extension_for_mime(mime_type: Optional[str]) -> str:
    """Resolve the file extension registered for ``mime_type``."""
    normalized = (mime_type or "").split(";", 1)[0].strip().lower()
    extension = MIME_EXTENSIONS.get(normalized)
    if not extension:
        raise UnknownMimeType(mime_type)
    return extension


def mime_for_name(name: str) -> Optional[str]:
    """Reverse lookup used when serving stored assets.

    Extensions of the upload table resolve from it; anything else falls
    back to ``mimetypes``.
    """
    extension = PurePosixPath(name).suffix.lstrip(".").lower()
    if not extension:
        return None
    known = _EXTENSION_MIMES.get(extension)
    if known:
        return known
    return mimetypes.guess_type(f"file.{extension}")[0]


def validate_prefix(prefix: Optional[str]) -> str:
    if not prefix or not _PREFIX_PATTERN.match(prefix):
        raise ValidationError(f"Storage prefix '{prefix or ''}' must only contain letters, digits, '-' or '_'")
    return prefix


def derive_stored_name(content_hash: str, prefix: str, mime_type: Optional[str]) -> str:
    """Build the collision resistant ``<prefix>-<hash>.<ext>`` stored name.

    Identical content under the same prefix always yields the same name,
    which is how duplicate uploads end up sharing a single object.
    """
    validate_prefix(prefix)
    if not content_hash or not _HASH_PATTERN.match(content_hash):
        raise ValidationError("Content hash must be a non-empty alphanumeric digest")
    extension = extension_for_mime(mime_type)
    return f"{prefix}-{content_hash.lower()}.{extension}"


def archive_name(display_name: Optional[str]) -> str:
    """Folder and file name used for an exported mailing archive."""
    name = (display_name or "").strip()
    lowered = name.lower()
    for extension in KNOWN_DOCUMENT_EXTENSIONS:
        if lowered.endswith(extension):
            name = name[: -len(extension)]
            break
    return slug(name) or DEFAULT_ARCHIVE_NAME
