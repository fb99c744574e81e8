"""Exception hierarchy shared by the upload, export and mail pipelines."""

from __future__ import annotations

from typing import List, Optional


class MailingServiceError(Exception):
    """Base exception for mailing service errors."""


class ValidationError(MailingServiceError):
    """Raised when incoming data is missing or malformed."""


class UnknownMimeType(ValidationError):
    """Raised when no file extension is known for a MIME type."""

    def __init__(self, mime_type: Optional[str]) -> None:
        self.mime_type = mime_type
        super().__init__(f"No file extension is registered for MIME type '{mime_type or 'unknown'}'")


class UploadTooLargeError(ValidationError):
    """Raised when an uploaded part exceeds the configured size limit."""


class NotFoundError(MailingServiceError):
    """Raised when a mailing or asset cannot be located for the caller."""


class StorageError(MailingServiceError):
    """Raised when the asset store cannot read or write an object."""


class UploadFailed(StorageError):
    """Raised when at least one asset write of a submission failed.

    ``errors`` keeps every failure in submission order; ``__cause__`` is the first one.
    """

    def __init__(self, message: str, errors: Optional[List[BaseException]] = None) -> None:
        super().__init__(message)
        self.errors: List[BaseException] = list(errors or [])


class FetchError(MailingServiceError):
    """Raised when a remote asset cannot be fetched during an export."""


class ArchiveError(MailingServiceError):
    """Raised when the export archive stream cannot be written."""


class MailDeliveryFailed(MailingServiceError):
    """Raised when the SMTP transport rejects or cannot deliver a message."""
