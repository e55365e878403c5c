"""
Header transformation for proxied requests and responses.

Upstream-bound requests get the resolved secret injected as a bearer token,
Host rewritten to the upstream authority and hop-by-hop headers removed.
Every response leaving the gateway (success, denial, error, preflight) carries
the same CORS headers for the route.
"""

import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from ..config import CORSConfig, RouteConfig

logger = logging.getLogger("llm-relay.relay.headers")

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Recomputed by httpx from the forwarded body
_REQUEST_RECOMPUTED = frozenset({"content-length"})

BEARER_PREFIX = "bearer "


def strip_hop_by_hop(headers: Iterable[Tuple[str, str]], extra: Iterable[str] = ()) -> httpx.Headers:
    """Copy headers, dropping hop-by-hop names and anything in `extra`."""
    drop = HOP_BY_HOP_HEADERS | {name.lower() for name in extra}
    return httpx.Headers([(k, v) for k, v in headers if k.lower() not in drop])


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    """Bearer token from an Authorization header, if any."""
    value = headers.get("authorization")
    if not value or not value.lower().startswith(BEARER_PREFIX):
        return None
    token = value[len(BEARER_PREFIX):].strip()
    return token or None


class CORSPolicy:
    """
    CORS headers for one route.

    The request Origin is reflected when an allow-list is enforced or when
    credentials are allowed, since browsers reject a wildcard origin on
    credentialed responses. Otherwise the wildcard is used.
    """

    def __init__(
        self,
        allow_methods: Iterable[str],
        allow_headers: Iterable[str],
        allow_credentials: bool = True,
        reflect_origin: bool = False,
    ):
        self.allow_methods = ", ".join(allow_methods)
        self.allow_headers = ", ".join(allow_headers)
        self.allow_credentials = allow_credentials
        self.reflect_origin = reflect_origin

    @classmethod
    def from_config(cls, config: CORSConfig, reflect_origin: bool = False) -> "CORSPolicy":
        return cls(
            allow_methods=config.allow_methods,
            allow_headers=config.allow_headers,
            allow_credentials=config.allow_credentials,
            reflect_origin=reflect_origin,
        )

    def headers_for(self, origin: Optional[str]) -> Dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": self.allow_methods,
            "Access-Control-Allow-Headers": self.allow_headers,
        }

        if origin and (self.reflect_origin or self.allow_credentials):
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
            if self.allow_credentials:
                headers["Access-Control-Allow-Credentials"] = "true"
        else:
            headers["Access-Control-Allow-Origin"] = "*"

        return headers


class HeaderTransform:
    """Builds upstream request headers and client response headers for a route."""

    def __init__(
        self,
        upstream_url: str,
        cors: CORSPolicy,
        default_secret: Optional[str] = None,
        allow_client_secret: bool = False,
        force_json: bool = True,
    ):
        self.upstream_host = urlsplit(upstream_url).netloc
        self.cors = cors
        self.default_secret = default_secret
        self.allow_client_secret = allow_client_secret
        self.force_json = force_json

    @classmethod
    def from_route(cls, route: RouteConfig) -> "HeaderTransform":
        cors = CORSPolicy.from_config(route.cors, reflect_origin=bool(route.access.allowed_origins))
        return cls(
            upstream_url=route.upstream_url,
            cors=cors,
            default_secret=route.default_secret,
            allow_client_secret=route.allow_client_secret,
            force_json=route.force_json,
        )

    def resolve_secret(self, inbound: Mapping[str, str]) -> Optional[str]:
        """Caller's bearer token when the route accepts client keys, else the default secret."""
        if self.allow_client_secret:
            token = bearer_token(inbound)
            if token:
                return token
        return self.default_secret or None

    def build_upstream_headers(self, inbound: Iterable[Tuple[str, str]], secret: str) -> httpx.Headers:
        headers = strip_hop_by_hop(inbound, extra=_REQUEST_RECOMPUTED)
        headers["Authorization"] = f"Bearer {secret}"
        headers["Host"] = self.upstream_host
        if self.force_json:
            headers["Content-Type"] = "application/json"
        return headers

    def cors_headers(self, origin: Optional[str]) -> Dict[str, str]:
        return self.cors.headers_for(origin)

    def build_response_headers(
        self,
        upstream: Iterable[Tuple[str, str]],
        cors_headers: Mapping[str, str],
        extra_strip: Iterable[str] = (),
    ) -> Dict[str, str]:
        """Upstream response headers minus hop-by-hop, with CORS merged over them."""
        headers = strip_hop_by_hop(upstream, extra=extra_strip)
        for name, value in cors_headers.items():
            headers[name] = value
        return dict(headers.items())
