from __future__ import annotations

import hashlib
from typing import Iterable, Optional

from fastapi import Request

from taskauth.storage.models import DeviceInfo

UNKNOWN = "Unknown"


def peer_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN


def client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Socket peer, or the first ``X-Forwarded-For`` hop when the peer is a trusted proxy."""
    peer = peer_ip(request)
    if peer not in set(trusted_proxies):
        return peer
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer


def fingerprint(user_agent: str, ip: str) -> str:
    return hashlib.sha256(f"{user_agent}-{ip}".encode("utf-8")).hexdigest()


def device_info_from_request(
    request: Optional[Request], trusted_proxies: Iterable[str] = ()
) -> DeviceInfo:
    if request is None:
        return DeviceInfo()
    user_agent = request.headers.get("user-agent") or UNKNOWN
    ip = client_ip(request, trusted_proxies)
    return DeviceInfo(
        user_agent=user_agent,
        ip=ip,
        fingerprint=fingerprint(user_agent, ip),
        location=request.headers.get("cf-ipcountry") or UNKNOWN,
    )
