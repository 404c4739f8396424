"""
Client address extraction for proxied requests.
"""

import ipaddress
from typing import Dict, Optional

from fastapi import Request


# Checked in order; the first valid address wins.
FORWARDING_HEADERS = (
    "X-Forwarded-For",
    "X-Real-IP",
    "X-Client-IP",
    "CF-Connecting-IP",
    "X-Forwarded",
    "Forwarded-For",
)

FALLBACK_IP = "127.0.0.1"


def _clean(value: str) -> Optional[str]:
    candidate = value.split(",")[0].strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass
    # IPv4 with a port suffix
    host = candidate.rsplit(":", 1)[0]
    try:
        return str(ipaddress.IPv4Address(host))
    except ValueError:
        return None


def get_client_ip(request: Request) -> str:
    """Extract the caller IP from standard proxy headers."""
    for header in FORWARDING_HEADERS:
        value = request.headers.get(header)
        if value:
            ip = _clean(value)
            if ip:
                return ip

    if request.client and request.client.host:
        ip = _clean(request.client.host)
        if ip:
            return ip
    return FALLBACK_IP


def is_local_ip(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return address.is_private or address.is_loopback


def get_client_info(request: Request) -> Dict[str, object]:
    ip = get_client_ip(request)
    return {
        "request_ip": ip,
        "is_local": is_local_ip(ip),
        "user_agent": request.headers.get("User-Agent"),
    }
