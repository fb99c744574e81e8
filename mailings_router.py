"""FastAPI router for mailing show, duplication, zip export and test sends."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, status
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from config import config
from core.security import CurrentUser, get_current_user
from filemanager_router import get_asset_store
from services.asset_store import AssetStore
from services.errors import MailDeliveryFailed, NotFoundError, StorageError, ValidationError
from services.export_pipeline import ExportPipeline
from services.mail_dispatch import MailDispatcher
from services.mailing_store import JsonMailingStore, Mailing, MailingStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mailings", tags=["mailings"])

_mailing_store: Optional[MailingStore] = None
_mail_dispatcher: Optional[MailDispatcher] = None


def get_mailing_store() -> MailingStore:
    """Resolve or initialize the shared mailing store."""
    global _mailing_store
    if _mailing_store is None:
        _mailing_store = JsonMailingStore(config.MAILINGS)
    return _mailing_store


def get_export_pipeline() -> ExportPipeline:
    return ExportPipeline(config.EXPORT, verbose=config.LOG_LEVEL == "DEBUG")


def get_mail_dispatcher() -> MailDispatcher:
    """Provide the process-wide SMTP dispatcher."""
    global _mail_dispatcher
    if _mail_dispatcher is None:
        _mail_dispatcher = MailDispatcher(config.MAIL)
    return _mail_dispatcher


class SendTestRequest(BaseModel):
    """Payload for a test send of a mailing."""

    rcpt: str = Field(..., description="Recipient address")
    html: str = Field(..., description="Rendered mailing HTML")


async def _find_mailing(store: MailingStore, mailing_id: str, user: CurrentUser) -> Mailing:
    try:
        return await store.find_one(mailing_id, user)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        logger.error("Mailing store unavailable: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.get("/{mailing_id}")
async def show_mailing(
    mailing_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: MailingStore = Depends(get_mailing_store),
) -> Dict[str, Any]:
    mailing = await _find_mailing(store, mailing_id, user)
    return mailing.model_dump(mode="json")


@router.post("/{mailing_id}/duplicate")
async def duplicate_mailing(
    mailing_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: MailingStore = Depends(get_mailing_store),
    assets: AssetStore = Depends(get_asset_store),
) -> Dict[str, Any]:
    """Copy a mailing together with its asset set.

    The copy is only saved once every asset was duplicated; otherwise the
    request fails and lists the assets that could not be copied.
    """
    mailing = await _find_mailing(store, mailing_id, user)
    duplicate = store.duplicate(mailing, user)

    try:
        report = await assets.copy(mailing.asset_prefix, duplicate.asset_prefix)
    except (StorageError, ValidationError) as exc:
        logger.error("Asset copy for mailing %s failed: %s", mailing_id, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    if not report.ok:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": f"{len(report.failed)} asset(s) could not be copied, mailing not duplicated",
                "failed": sorted(report.failed),
            },
        )

    try:
        saved = await store.save(duplicate)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    logger.info("Duplicated mailing %s as %s (%d assets)", mailing_id, saved.id, len(report.copied))
    return {"mailing": saved.model_dump(mode="json"), "assets": report.to_dict()}


@router.post("/{mailing_id}/zip")
async def export_mailing(
    mailing_id: str,
    html: str = Form(..., description="Rendered mailing HTML"),
    user: CurrentUser = Depends(get_current_user),
    store: MailingStore = Depends(get_mailing_store),
    pipeline: ExportPipeline = Depends(get_export_pipeline),
) -> StreamingResponse:
    """Stream the mailing and its remote images as a zip archive."""
    mailing = await _find_mailing(store, mailing_id, user)
    try:
        prepared = pipeline.prepare(html, mailing.name)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return StreamingResponse(
        pipeline.stream(prepared),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{prepared.filename}"'},
    )


@router.post("/{mailing_id}/send", response_class=PlainTextResponse)
async def send_test_mailing(
    mailing_id: str,
    payload: SendTestRequest,
    user: CurrentUser = Depends(get_current_user),
    store: MailingStore = Depends(get_mailing_store),
    dispatcher: MailDispatcher = Depends(get_mail_dispatcher),
) -> PlainTextResponse:
    """Send the rendered mailing to one address for proofreading."""
    mailing = await _find_mailing(store, mailing_id, user)
    subject = f"{config.MAIL.test_subject_prefix}{mailing.name}"
    try:
        mail_status = await dispatcher.send(payload.rcpt, user.email, subject, payload.html)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except MailDeliveryFailed as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error sending mailing %s", mailing_id, exc_info=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to send mailing") from exc

    return PlainTextResponse(mail_status.summary())
