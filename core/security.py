"""
Caller identity for the Mailing Workshop service.
=================================================

Authentication happens upstream: the gateway in front of this service
authenticates the user and forwards identity headers. This module turns
those headers into a ``CurrentUser`` and resolves the real client IP for
request logging.

Usage:
    from core.security import CurrentUser, get_current_user

    @router.get("/mailings/{mailing_id}")
    async def show(mailing_id: str, user: CurrentUser = Depends(get_current_user)):
        ...
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_GROUP_HEADER = "X-User-Group"
USER_EMAIL_HEADER = "X-User-Email"
USER_ADMIN_HEADER = "X-User-Admin"

TRUTHY_HEADER_VALUES = {"1", "true", "yes", "on"}

# Trusted proxies file (one CIDR per line).
TRUSTED_PROXIES_PATH = Path(__file__).with_name("trusted_proxies.txt")
DEFAULT_TRUSTED_PROXY_NETWORKS: List[ipaddress.IPv4Network | ipaddress.IPv6Network] = [
    ipaddress.ip_network("127.0.0.1/32"),
    ipaddress.ip_network("::1/128"),
]

FORWARDED_SINGLE_IP_HEADERS: tuple[str, ...] = (
    "CF-Connecting-IP",
    "X-Real-IP",
)
FORWARDED_CHAIN_HEADER = "X-Forwarded-For"


@dataclass(frozen=True)
class CurrentUser:
    """Identity of the caller as forwarded by the gateway."""

    user_id: Optional[str]
    group_id: Optional[str]
    email: Optional[str] = None
    is_admin: bool = False

    def can_access_group(self, group_id: Optional[str]) -> bool:
        """Admins see every group, everybody else only their own."""
        if self.is_admin:
            return True
        return bool(self.group_id) and self.group_id == group_id


def get_current_user(request: Request) -> CurrentUser:
    """
    FastAPI dependency building the caller identity from gateway headers.

    Identity headers are only honoured when the direct peer is a trusted
    proxy (the gateway); anything else could forge them.

    Raises:
        HTTPException: 401 for untrusted peers, or when neither a user id
            nor the admin flag is present
    """
    peer_ip = request.client.host if request.client else None
    if not is_trusted_proxy(peer_ip):
        logger.warning("Rejected identity headers from untrusted peer %s", peer_ip)
        raise HTTPException(status_code=401, detail="Identity headers are only accepted from the gateway")

    headers = request.headers
    user_id = (headers.get(USER_ID_HEADER) or "").strip() or None
    is_admin = (headers.get(USER_ADMIN_HEADER) or "").strip().lower() in TRUTHY_HEADER_VALUES

    if not user_id and not is_admin:
        logger.warning("Rejected request without identity from %s", get_client_ip(request))
        raise HTTPException(status_code=401, detail="Missing user identity")

    return CurrentUser(
        user_id=user_id,
        group_id=(headers.get(USER_GROUP_HEADER) or "").strip() or None,
        email=(headers.get(USER_EMAIL_HEADER) or "").strip() or None,
        is_admin=is_admin,
    )


def _load_trusted_proxy_networks() -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks: List[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
    if TRUSTED_PROXIES_PATH.exists():
        for line in TRUSTED_PROXIES_PATH.read_text(encoding="utf-8").splitlines():
            entry = line.strip()
            if not entry or entry.startswith("#"):
                continue
            try:
                networks.append(ipaddress.ip_network(entry))
            except ValueError:
                logger.warning("Invalid trusted proxy CIDR ignored: %s", entry)
    return networks or list(DEFAULT_TRUSTED_PROXY_NETWORKS)


TRUSTED_PROXY_NETWORKS = _load_trusted_proxy_networks()


def is_trusted_proxy(client_ip: str | None) -> bool:
    """Return True when the request source is a trusted proxy."""
    if not client_ip:
        return False
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        logger.warning("Invalid proxy IP address format: %s", client_ip)
        return False
    return any(ip in network for network in TRUSTED_PROXY_NETWORKS)


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def get_client_ip(request: Request) -> str | None:
    """
    Extract the client IP from a request.

    Forwarded headers are only honoured when the direct peer is a trusted
    proxy; the X-Forwarded-For chain is walked right to left skipping
    trusted hops.
    """
    client_ip = request.client.host if request.client else None
    if not client_ip or not is_trusted_proxy(client_ip):
        return client_ip

    for header in FORWARDED_SINGLE_IP_HEADERS:
        forwarded = request.headers.get(header)
        if forwarded and _is_valid_ip(forwarded):
            return forwarded

    chain = [item.strip() for item in request.headers.get(FORWARDED_CHAIN_HEADER, "").split(",") if item.strip()]
    if chain:
        chain.append(client_ip)
        while chain and is_trusted_proxy(chain[-1]):
            chain.pop()
        for ip in reversed(chain):
            if _is_valid_ip(ip):
                return ip

    return client_ip
