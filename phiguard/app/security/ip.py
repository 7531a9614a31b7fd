"""
Client address extraction for audit records.

Proxies put the original client first in X-Forwarded-For; X-Real-IP is the
single-value fallback used by nginx. IPv6 loopback and IPv4-mapped forms are
normalised so the same client always logs the same address.
"""

from typing import Optional

from fastapi import Request

UNKNOWN_IP = "unknown"


def normalize_ip(ip: Optional[str]) -> str:
    if not ip:
        return UNKNOWN_IP

    ip = ip.strip()
    if ip in ("::1", "::ffff:127.0.0.1"):
        return "127.0.0.1"
    if ip.startswith("::ffff:"):
        return ip[len("::ffff:"):]
    return ip


def client_ip(request: Request) -> str:
    """Best-effort origin address of the request."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return normalize_ip(first)

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return normalize_ip(real_ip)

    if request.client and request.client.host:
        return normalize_ip(request.client.host)

    return UNKNOWN_IP
