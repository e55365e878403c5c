"""
Upstream dispatch.

Issues the forwarded request to the route's upstream with the method, body
and query string preserved. Nothing is retried here: transport failures are
raised as UpstreamFailure, and any status the upstream returns (including
non-2xx) is handed back for relaying as-is.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..errors import InvalidRequest, UpstreamFailure

logger = logging.getLogger("llm-relay.relay.dispatch")


@dataclass(frozen=True)
class ForwardSpec:
    """A fully resolved upstream request. Built once per request."""
    method: str
    target_url: str
    headers: httpx.Headers
    body: bytes = b""


def build_target_url(upstream_base: str, route_prefix: str, request_path: str, query_string: str = "") -> str:
    """
    Join the upstream base with everything after the route prefix.

    `request_path` should be the raw (still percent-encoded) path so that
    encoded segments reach the upstream untouched.
    """
    prefix = "/" + route_prefix.strip("/")
    if request_path != prefix and not request_path.startswith(prefix + "/"):
        raise InvalidRequest(
            InvalidRequest.UNRESOLVABLE_PATH,
            cause=f"Path {request_path!r} is outside route prefix {prefix!r}",
        )

    remainder = request_path[len(prefix):].lstrip("/")
    target = f"{upstream_base.rstrip('/')}/{remainder}"
    if query_string:
        target = f"{target}?{query_string}"
    return target


class UpstreamDispatcher:
    """
    Sends ForwardSpecs over a shared httpx.AsyncClient.

    Responses are opened in streaming mode; the caller owns closing them.
    """

    def __init__(self, client: httpx.AsyncClient, timeout: Optional[float] = None, connect_timeout: float = 10.0):
        self._client = client
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout) if timeout else None

    async def dispatch(self, spec: ForwardSpec) -> httpx.Response:
        request_kwargs = {}
        if self.timeout is not None:
            request_kwargs["timeout"] = self.timeout

        request = self._client.build_request(
            spec.method,
            spec.target_url,
            headers=spec.headers,
            content=spec.body if spec.body else None,
            **request_kwargs,
        )

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error(f"Upstream timeout: {spec.method} {spec.target_url}: {e!r}")
            raise UpstreamFailure(UpstreamFailure.TIMEOUT, cause=f"Upstream timeout: {e!r}") from e
        except httpx.HTTPError as e:
            logger.error(f"Upstream request failed: {spec.method} {spec.target_url}: {e!r}")
            raise UpstreamFailure(UpstreamFailure.NETWORK, cause=f"Upstream error: {e!r}") from e

        logger.info(f"{spec.method} {spec.target_url} -> {response.status_code}")
        return response
