"""Shared pytest fixtures for Mailing Workshop tests."""

import io
import os
import sys
from typing import Dict, Optional

import pytest
from starlette.datastructures import FormData, Headers, UploadFile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ExportSettings, MailSettings, MailingStoreSettings, StorageSettings  # noqa: E402
from core.security import CurrentUser  # noqa: E402


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def storage_settings(tmp_path):
    """Local storage rooted in a per-test temporary directory."""
    return StorageSettings(
        backend="local",
        local_root=str(tmp_path / "uploads"),
        tmp_dir=str(tmp_path / "spool"),
        max_size_bytes=1024 * 1024,
        chunk_size=1024,
    )


@pytest.fixture
def export_settings():
    """Export settings with short timeouts and a tiny stream buffer."""
    return ExportSettings(
        fetch_timeout_seconds=2.0,
        fetch_connect_timeout_seconds=1.0,
        max_concurrent_fetches=4,
        stream_queue_size=4,
    )


@pytest.fixture
def mail_settings():
    return MailSettings(
        host="smtp.test.local",
        port=2525,
        from_address="workshop@test.local",
        test_subject_prefix="[test] ",
    )


@pytest.fixture
def mailing_store_settings(tmp_path):
    return MailingStoreSettings(path=str(tmp_path / "mailings.json"))


# ============================================================================
# Identity Fixtures
# ============================================================================

@pytest.fixture
def regular_user():
    return CurrentUser(user_id="user-1", group_id="group-a", email="editor@test.local")


@pytest.fixture
def other_group_user():
    return CurrentUser(user_id="user-2", group_id="group-b", email="other@test.local")


@pytest.fixture
def admin_user():
    return CurrentUser(user_id="admin", group_id=None, email="admin@test.local", is_admin=True)


@pytest.fixture
def user_headers():
    """Gateway identity headers for ``regular_user``."""
    return {
        "X-User-Id": "user-1",
        "X-User-Group": "group-a",
        "X-User-Email": "editor@test.local",
    }


# ============================================================================
# Multipart Helpers
# ============================================================================

def make_upload(data: bytes, filename: Optional[str], content_type: str = "image/png") -> UploadFile:
    """Build an in-memory Starlette upload part."""
    return UploadFile(
        file=io.BytesIO(data),
        size=len(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


@pytest.fixture
def form_factory():
    """Build a FormData from ``(field, value)`` pairs; values may be uploads or strings."""

    def _build(*items) -> FormData:
        return FormData(list(items))

    return _build


@pytest.fixture
def png_bytes() -> Dict[str, bytes]:
    """Three distinct small payloads standing in for images."""
    return {
        "logo": b"\x89PNG\r\n\x1a\n" + b"logo" * 64,
        "hero": b"\x89PNG\r\n\x1a\n" + b"hero" * 64,
        "footer": b"\x89PNG\r\n\x1a\n" + b"footer" * 64,
    }


@pytest.fixture
def upload_factory():
    """Expose ``make_upload`` to test modules."""
    return make_upload
