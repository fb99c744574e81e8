"""
Shared fixtures for integration tests.

These fixtures handle:
- Gateway trust for the TestClient peer
- Per-test asset and mailing stores under tmp_path
- Dependency overrides for the routers
- A TestClient with gateway identity headers
"""

from pathlib import Path
from typing import Dict
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

import json_utils as json
from core.app_state import app
from filemanager_router import get_asset_store, get_upload_pipeline
from mailings_router import get_export_pipeline, get_mail_dispatcher, get_mailing_store
from services.asset_store import LocalAssetStore
from services.export_pipeline import ExportPipeline
from services.mail_dispatch import MailDispatcher
from services.mailing_store import JsonMailingStore, Mailing
from services.upload_pipeline import UploadPipeline


# ============================================================================
# Gateway Bypass
# ============================================================================

@pytest.fixture(autouse=True)
def trust_test_peer():
    """
    Treat the TestClient peer ("testclient", not an IP) as the gateway so
    identity headers are honoured.
    """
    with patch("core.security.is_trusted_proxy", return_value=True):
        yield


# ============================================================================
# Seed Data
# ============================================================================

@pytest.fixture
def seeded_mailing() -> Mailing:
    return Mailing(
        id="m1",
        name="Spring Newsletter",
        template_id="tpl-1",
        user_id="user-1",
        group_id="group-a",
        data={"hero": "m1-aaa.png"},
    )


@pytest.fixture
def asset_store(storage_settings):
    """Local asset store holding two assets of m1 and one of another mailing."""
    store = LocalAssetStore(storage_settings.local_root, chunk_size=storage_settings.chunk_size)
    for name, data in {"m1-aaa.png": b"AAA", "m1-bbb.gif": b"BBB", "m2-ccc.png": b"CCC"}.items():
        (Path(store.root) / name).write_bytes(data)
    return store


@pytest.fixture
def mailing_store(mailing_store_settings, seeded_mailing):
    json.write_atomic(
        Path(mailing_store_settings.path),
        {"mailings": {seeded_mailing.id: seeded_mailing.model_dump(mode="json")}},
    )
    return JsonMailingStore(mailing_store_settings)


@pytest.fixture
def remote_images() -> Dict[str, httpx.Response]:
    """Responses served to the export pipeline, keyed by URL."""
    return {
        "http://cdn.test/logo.png": httpx.Response(200, content=b"LOGO"),
        "http://cdn.test/broken.png": httpx.Response(500),
    }


# ============================================================================
# Client
# ============================================================================

@pytest.fixture
def client(
    asset_store,
    mailing_store,
    remote_images,
    storage_settings,
    export_settings,
    mail_settings,
    user_headers,
):
    """
    TestClient with every service dependency pointed at per-test resources.

    The client is not entered as a context manager so the startup hook never
    builds the configured asset store.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        return remote_images.get(str(request.url), httpx.Response(404))

    app.dependency_overrides[get_asset_store] = lambda: asset_store
    app.dependency_overrides[get_upload_pipeline] = lambda: UploadPipeline(asset_store, storage_settings)
    app.dependency_overrides[get_mailing_store] = lambda: mailing_store
    app.dependency_overrides[get_export_pipeline] = lambda: ExportPipeline(
        export_settings, transport=httpx.MockTransport(handler)
    )
    app.dependency_overrides[get_mail_dispatcher] = lambda: MailDispatcher(mail_settings)
    try:
        yield TestClient(app, headers=user_headers)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(client):
    """Same wiring as ``client`` without identity headers."""
    return TestClient(app)
