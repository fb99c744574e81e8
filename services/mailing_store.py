"""Minimal mailing persistence so the service runs without an external database."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field

import json_utils as json
from config import MailingStoreSettings
from core.security import CurrentUser
from services.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

COPY_SUFFIX = " copy"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class Mailing(BaseModel):
    """One email document built from a template."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    template_id: Optional[str] = None
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def asset_prefix(self) -> str:
        """Start of every stored asset name that belongs to this mailing."""
        return f"{self.id}-"


class MailingStore(Protocol):
    async def find_one(self, mailing_id: str, user: CurrentUser) -> Mailing:
        ...

    async def save(self, mailing: Mailing) -> Mailing:
        ...

    def duplicate(self, mailing: Mailing, user: CurrentUser) -> Mailing:
        ...


class JsonMailingStore:
    """Keeps every mailing in one JSON document on disk."""

    def __init__(self, settings: MailingStoreSettings) -> None:
        self.path = Path(settings.path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        try:
            document = json.load_path(self.path, fallback={})
        except json.JSONDecodeError as exc:
            raise StorageError(f"Mailing store {self.path} is not valid JSON") from exc
        return document.get("mailings", {}) if isinstance(document, dict) else {}

    async def find_one(self, mailing_id: str, user: CurrentUser) -> Mailing:
        """Return the mailing if it exists and the caller's group may see it."""
        async with self._lock:
            records = await asyncio.to_thread(self._read_all)
        raw = records.get(mailing_id)
        if raw is None:
            raise NotFoundError(f"Mailing {mailing_id} not found")
        mailing = Mailing.model_validate(raw)
        if not user.can_access_group(mailing.group_id):
            # Same answer as a missing mailing, other groups stay invisible.
            raise NotFoundError(f"Mailing {mailing_id} not found")
        return mailing

    async def save(self, mailing: Mailing) -> Mailing:
        mailing.updated_at = _utcnow()
        async with self._lock:
            records = await asyncio.to_thread(self._read_all)
            records[mailing.id] = mailing.model_dump(mode="json")
            try:
                await asyncio.to_thread(json.write_atomic, self.path, {"mailings": records})
            except OSError as exc:
                raise StorageError(f"Unable to write mailing store {self.path}") from exc
        logger.info("Saved mailing %s (%s)", mailing.id, mailing.name)
        return mailing

    def duplicate(self, mailing: Mailing, user: CurrentUser) -> Mailing:
        """Build an unsaved copy owned by ``user`` (admins keep the source owner)."""
        now = _utcnow()
        return Mailing(
            name=f"{mailing.name}{COPY_SUFFIX}",
            template_id=mailing.template_id,
            user_id=mailing.user_id if user.is_admin else user.user_id,
            group_id=mailing.group_id if user.is_admin else user.group_id,
            data=dict(mailing.data),
            created_at=now,
            updated_at=now,
        )
