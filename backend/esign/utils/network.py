from __future__ import annotations

from fastapi import Request


def extract_ip_address(request: Request) -> str | None:
    """Client address, honoring reverse proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def extract_user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")
