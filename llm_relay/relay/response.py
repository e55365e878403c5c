"""
Response relay.

An upstream response is treated as a stream when its Content-Type contains
the token "stream" (text/event-stream and friends). This is a heuristic: an
upstream that streams under another content type is buffered instead.

Streamed bodies are passed through chunk by chunk as raw bytes, untouched.
Buffered bodies are read fully, so they can be captured for the audit trail,
and are delivered as one body.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

import httpx
from fastapi.responses import Response, StreamingResponse

from ..errors import RelayFailure, UpstreamFailure
from .headers import HeaderTransform

logger = logging.getLogger("llm-relay.relay.response")

STREAMING_MARKER = "[Streaming Response]"

# httpx decodes buffered bodies, so these no longer describe what is sent
_DECODED_BODY_HEADERS = ("content-encoding", "content-length")


def is_streaming(content_type: Optional[str]) -> bool:
    return bool(content_type) and "stream" in content_type.lower()


@dataclass
class RelayedResponse:
    """
    Response ready for delivery.

    Exactly one of `body` (buffered) and `stream` (live) is set.
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    # Open upstream behind `stream`, closed once delivery ends however it ends
    upstream: Optional[httpx.Response] = field(default=None, repr=False)

    def __post_init__(self):
        if (self.body is None) == (self.stream is None):
            raise ValueError("RelayedResponse needs exactly one of body or stream")

    @property
    def streaming(self) -> bool:
        return self.stream is not None

    def audit_body(self) -> str:
        if self.streaming:
            return STREAMING_MARKER
        return self.body.decode("utf-8", errors="replace")

    def to_response(self) -> Response:
        if self.streaming:
            return UpstreamStreamingResponse(
                self.stream, upstream=self.upstream, status_code=self.status, headers=self.headers
            )
        return Response(content=self.body, status_code=self.status, headers=self.headers)


class UpstreamStreamingResponse(StreamingResponse):
    """
    StreamingResponse that owns the upstream response it relays.

    The upstream is closed when the ASGI call returns or raises, including
    when the client is gone before the first chunk is pulled and the body
    generator never starts.
    """

    def __init__(self, content: AsyncIterator[bytes], upstream: Optional[httpx.Response] = None, **kwargs: Any):
        super().__init__(content, **kwargs)
        self.upstream = upstream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
            if self.upstream is not None:
                await self.upstream.aclose()


async def _raw_chunks(upstream: httpx.Response) -> AsyncIterator[bytes]:
    # A transport may hand back a response whose body was read up front
    if upstream.is_stream_consumed:
        yield _buffered_content(upstream)
        return
    async for chunk in upstream.aiter_raw():
        yield chunk


def _buffered_content(upstream: httpx.Response) -> bytes:
    try:
        return upstream.content
    except httpx.ResponseNotRead as e:
        raise RelayFailure(RelayFailure.NO_BODY) from e


async def iter_upstream(
    upstream: httpx.Response,
    on_close: Optional[Callable[[int, Optional[BaseException]], None]] = None,
) -> AsyncIterator[bytes]:
    """
    Yield raw upstream chunks in arrival order.

    Closing the generator closes the upstream response, which aborts the
    upstream read. UpstreamStreamingResponse closes it on client disconnect.
    """
    sent = 0
    error: Optional[BaseException] = None
    try:
        async for chunk in _raw_chunks(upstream):
            if chunk:
                sent += len(chunk)
                yield chunk
    except httpx.HTTPError as e:
        error = e
        logger.error(f"Upstream stream broke after {sent} bytes: {e!r}")
        raise
    finally:
        await upstream.aclose()
        if on_close is not None:
            on_close(sent, error)


class ResponseRelay:
    """Turns an open upstream response into a RelayedResponse."""

    def __init__(self, transform: HeaderTransform):
        self.transform = transform

    async def relay(
        self,
        upstream: httpx.Response,
        cors_headers: Mapping[str, str],
        on_stream_close: Optional[Callable[[int, Optional[BaseException]], None]] = None,
    ) -> RelayedResponse:
        if upstream.is_stream_consumed:
            try:
                _buffered_content(upstream)
            except RelayFailure:
                await upstream.aclose()
                raise

        if is_streaming(upstream.headers.get("content-type")):
            headers = self.transform.build_response_headers(upstream.headers.multi_items(), cors_headers)
            return RelayedResponse(
                status=upstream.status_code,
                headers=headers,
                stream=iter_upstream(upstream, on_close=on_stream_close),
                upstream=upstream,
            )

        try:
            body = await upstream.aread()
        except httpx.TimeoutException as e:
            raise UpstreamFailure(UpstreamFailure.TIMEOUT, cause=f"Upstream body timeout: {e!r}") from e
        except httpx.HTTPError as e:
            raise UpstreamFailure(UpstreamFailure.NETWORK, cause=f"Upstream body read failed: {e!r}") from e
        finally:
            await upstream.aclose()

        headers = self.transform.build_response_headers(
            upstream.headers.multi_items(),
            cors_headers,
            extra_strip=_DECODED_BODY_HEADERS,
        )
        return RelayedResponse(status=upstream.status_code, headers=headers, body=body)
