"""
Client identity.

The client key buckets ban decisions, cooldowns and abuse counters. Behind a
hosting platform or reverse proxy the TCP peer is the proxy, so the leftmost
X-Forwarded-For hop is used when present.
"""

from typing import Mapping, Optional

from starlette.requests import Request


UNKNOWN_CLIENT = "unknown-ip"


def client_key_from_headers(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Derive the client key from request headers, falling back to the peer address."""
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        # X-Forwarded-For: client, proxy1, proxy2 - take the leftmost (client)
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer or UNKNOWN_CLIENT


def extract_client_key(request: Request) -> str:
    """Client key for a Starlette/FastAPI request."""
    peer = request.client.host if request.client else None
    return client_key_from_headers(request.headers, peer)
