"""FastAPI router handling mailing asset uploads and image delivery."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from config import config
from core.security import CurrentUser, get_client_ip, get_current_user
from services.asset_store import AssetStore, build_asset_store
from services.errors import (
    NotFoundError,
    StorageError,
    UnknownMimeType,
    UploadTooLargeError,
    ValidationError,
)
from services.name_normalizer import mime_for_name, validate_prefix
from services.upload_pipeline import Formatter, UploadPipeline, format_editor_file

logger = logging.getLogger(__name__)

MAX_FORM_PARTS = 200

router = APIRouter(prefix="/filemanager", tags=["filemanager"])

_asset_store: Optional[AssetStore] = None


def get_asset_store() -> AssetStore:
    """Resolve or initialize the process-wide asset store."""
    global _asset_store
    if _asset_store is None:
        _asset_store = build_asset_store(config.STORAGE)
    return _asset_store


def get_upload_pipeline(store: AssetStore = Depends(get_asset_store)) -> UploadPipeline:
    return UploadPipeline(store, config.STORAGE, verbose=config.LOG_LEVEL == "DEBUG")


@router.post("")
async def upload_assets(
    request: Request,
    prefix: str = Query(..., description="Namespace of the stored names, usually the mailing id"),
    formatter: Formatter = Query(Formatter.GROUPS, description="Response shape: editor or groups"),
    user: CurrentUser = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> Dict[str, Any]:
    """Store every file of a multipart submission and report the stored names."""
    logger.info("Upload for prefix %s by %s from %s", prefix, user.user_id, get_client_ip(request))
    try:
        async with request.form(max_files=MAX_FORM_PARTS, max_fields=MAX_FORM_PARTS) as form:
            return await pipeline.process(form, prefix=prefix, formatter=formatter)
    except UploadTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    except UnknownMimeType as exc:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageError as exc:
        logger.error("Upload for prefix %s failed: %s", prefix, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error storing assets", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to store assets") from exc


@router.get("/img/{name}")
async def get_image(
    name: str,
    store: AssetStore = Depends(get_asset_store),
) -> StreamingResponse:
    """Stream a stored asset back to the browser."""
    try:
        chunks = await store.read(name)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return StreamingResponse(chunks, media_type=mime_for_name(name) or "application/octet-stream")


@router.get("/images/{prefix}")
async def list_images(
    prefix: str,
    user: CurrentUser = Depends(get_current_user),
    store: AssetStore = Depends(get_asset_store),
) -> Dict[str, Any]:
    """List the assets stored under ``prefix`` in the upload widget shape."""
    try:
        validate_prefix(prefix)
        names = await store.list(f"{prefix}-")
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return {"files": [format_editor_file(name, None, mime_for_name(name)) for name in names]}
