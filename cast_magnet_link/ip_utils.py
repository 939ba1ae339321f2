"""
Client IP helpers.
Real-Debrid routes unrestricted downloads near the IP passed with the request,
so only a public IPv4 address of the end user is ever forwarded.
"""

import ipaddress
import logging
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)


def get_user_ip(request: Request) -> str:
    """
    Best guess at the end user's IP.

    Order: cf-connecting-ip, socket peer (IPv4-mapped prefix stripped),
    first x-forwarded-for entry, x-real-ip.
    """
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    if request.client and request.client.host:
        host = request.client.host
        if host.startswith("::ffff:"):
            host = host[len("::ffff:"):]
        return host

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return "unknown"


def is_public_ip(ip: Optional[str]) -> bool:
    """True only for globally routable IPv4 addresses."""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False

    if address.version != 4:
        return False

    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    )


def get_public_ip(request: Request) -> Optional[str]:
    """The user's IP if it is public, otherwise None."""
    ip = get_user_ip(request)
    if is_public_ip(ip):
        return ip
    logger.debug(f"Not forwarding non-public IP {ip}")
    return None
