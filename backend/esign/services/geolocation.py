from __future__ import annotations

import ipaddress

import httpx

from esign.core.config import settings
from esign.core.logging_setup import logger


def is_public_ip(ip_address: str | None) -> bool:
    if not ip_address:
        return False
    try:
        parsed = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return False
    return not (
        parsed.is_private
        or parsed.is_loopback
        or parsed.is_link_local
        or parsed.is_reserved
        or parsed.is_multicast
        or parsed.is_unspecified
    )


def lookup_timeout(budget: float) -> httpx.Timeout:
    """Split one overall budget across the httpx phases so a lookup cannot outlast it."""
    return httpx.Timeout(budget * 0.4, connect=budget * 0.3, write=budget * 0.1, pool=budget * 0.2)


def lookup_geolocation(
    ip_address: str | None,
    client: httpx.Client | None = None,
    timeout: float | None = None,
) -> dict | None:
    """Best-effort city/country lookup for a signer IP. Never raises."""
    if not settings.geolocation_enabled or not is_public_ip(ip_address):
        return None
    url = settings.geolocation_url.format(ip=ip_address)
    limits = lookup_timeout(timeout or settings.geolocation_timeout_seconds)
    try:
        if client is not None:
            response = client.get(url, timeout=limits)
        else:
            response = httpx.get(url, timeout=limits)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.info("Geolocation lookup for %s skipped: %s", ip_address, exc)
        return None
    if not isinstance(data, dict) or data.get("status") == "fail":
        return None
    return {
        "country": data.get("country"),
        "country_code": data.get("countryCode"),
        "region": data.get("regionName"),
        "city": data.get("city"),
        "latitude": data.get("lat"),
        "longitude": data.get("lon"),
        "timezone": data.get("timezone"),
    }
