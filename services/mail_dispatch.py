"""HTML sanitization and SMTP delivery of test sends."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from html.entities import codepoint2name
from typing import Dict, Optional

import aiosmtplib

from config import MailSettings
from logging_utils import Phase, PhaseLogger
from services.errors import MailDeliveryFailed, ValidationError

logger = logging.getLogger(__name__)

_PASS_THROUGH = {"\n", "\r"}


def _encode_char(ch: str) -> str:
    if ch in _PASS_THROUGH or " " <= ch <= "~":
        return ch
    codepoint = ord(ch)
    name = codepoint2name.get(codepoint)
    if name:
        return f"&{name};"
    return f"&#x{codepoint:X};"


def sanitize(html: Optional[str]) -> str:
    """Make mailing HTML safe for transport and archiving.

    Tabs become single spaces, then every character outside printable
    ASCII is written as a named entity (numeric when no name exists).
    Markup characters (``& < > " '``) pass through untouched so the
    document structure is preserved. The output is pure ASCII, which
    makes the function idempotent.
    """
    text = (html or "").replace("\t", " ")
    return "".join(_encode_char(ch) for ch in text)


@dataclass
class MailStatus:
    """Transport level summary of one delivery."""

    response: str
    refused: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> str:
        return f"OK: {self.response}"


class MailDispatcher:
    """Sends sanitized HTML through the configured SMTP server."""

    def __init__(self, settings: MailSettings) -> None:
        self.settings = settings

    def build_message(self, to_address: str, reply_to: Optional[str], subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.from_address
        message["To"] = to_address
        if reply_to:
            message["Reply-To"] = reply_to
        message["Subject"] = subject
        message.set_content(sanitize(html), subtype="html")
        return message

    async def send(self, to_address: str, reply_to: Optional[str], subject: str, html: str) -> MailStatus:
        if not to_address:
            raise ValidationError("A recipient address is required")

        phase_logger = PhaseLogger(request_id=f"mail-{to_address}", logger=logger)
        with phase_logger.phase(Phase.MAIL_DISPATCH):
            try:
                message = self.build_message(to_address, reply_to, subject, html)
            except ValueError as exc:
                raise ValidationError(f"Invalid message headers: {exc}") from exc

            try:
                refused, response = await aiosmtplib.send(
                    message,
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=self.settings.password,
                    use_tls=self.settings.use_tls,
                    start_tls=self.settings.start_tls and not self.settings.use_tls,
                    timeout=self.settings.timeout_seconds,
                )
            except (aiosmtplib.SMTPException, OSError) as exc:
                phase_logger.error(f"Delivery to {to_address} failed: {exc}")
                raise MailDeliveryFailed(str(exc) or exc.__class__.__name__) from exc

            status = MailStatus(
                response=response,
                refused={address: str(reason) for address, reason in (refused or {}).items()},
            )
            phase_logger.info(f"Delivered test send to {to_address}: {response}")
            return status
