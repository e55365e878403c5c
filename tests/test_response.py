"""Tests for streaming and buffered response relay."""

import asyncio

import httpx
import pytest

from llm_relay.config import RouteConfig
from llm_relay.errors import UpstreamFailure
from llm_relay.relay import (
    HeaderTransform,
    RelayedResponse,
    ResponseRelay,
    STREAMING_MARKER,
    UpstreamStreamingResponse,
    is_streaming,
)

CHUNKS = [b"data: one\n\n", b"data: two\n\n", b"data: [DONE]\n\n"]


@pytest.fixture
def relay():
    route = RouteConfig(name="p", upstream_url="https://up.test", default_secret="s")
    return ResponseRelay(HeaderTransform.from_route(route))


def _event_stream():
    async def chunks():
        for chunk in CHUNKS:
            yield chunk

    return chunks()


def _open(handler):
    """Open an upstream response the way the dispatcher does."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def open_response():
        request = client.build_request("POST", "https://up.test/chat")
        return await client.send(request, stream=True)

    return client, open_response


def test_is_streaming():
    assert is_streaming("text/event-stream")
    assert is_streaming("application/x-ndjson-stream; charset=utf-8")
    assert not is_streaming("application/json")
    assert not is_streaming(None)


def test_relayed_response_needs_exactly_one_body():
    with pytest.raises(ValueError):
        RelayedResponse(status=200)
    with pytest.raises(ValueError):
        RelayedResponse(status=200, body=b"x", stream=_event_stream())


def test_stream_delivers_chunks_in_order(relay):
    closed = []

    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=_event_stream())

    client, open_response = _open(handler)

    async def scenario():
        upstream = await open_response()
        relayed = await relay.relay(
            upstream,
            {"Access-Control-Allow-Origin": "*"},
            on_stream_close=lambda sent, error: closed.append((sent, error)),
        )
        received = [chunk async for chunk in relayed.stream]
        await client.aclose()
        return relayed, received, upstream

    relayed, received, upstream = asyncio.run(scenario())

    assert relayed.streaming
    assert received == CHUNKS
    assert relayed.audit_body() == STREAMING_MARKER
    assert relayed.headers["access-control-allow-origin"] == "*"
    assert "transfer-encoding" not in relayed.headers
    assert upstream.is_closed
    assert closed == [(sum(len(c) for c in CHUNKS), None)]


def test_closing_stream_closes_upstream(relay):
    """A client disconnect closes the relay generator, which aborts the upstream read."""
    closed = []

    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=_event_stream())

    client, open_response = _open(handler)

    async def scenario():
        upstream = await open_response()
        relayed = await relay.relay(upstream, {}, on_stream_close=lambda sent, error: closed.append(sent))
        first = await relayed.stream.__anext__()
        await relayed.stream.aclose()
        await client.aclose()
        return first, upstream

    first, upstream = asyncio.run(scenario())

    assert first == CHUNKS[0]
    assert upstream.is_closed
    assert closed == [len(CHUNKS[0])]


def test_response_closes_upstream_when_client_leaves_before_first_chunk(relay):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=_event_stream())

    client, open_response = _open(handler)
    scope = {"type": "http", "asgi": {"version": "3.0", "spec_version": "2.4"}, "method": "POST"}

    async def receive():
        await asyncio.Event().wait()

    async def send(message):
        raise OSError("client went away")

    async def scenario():
        upstream = await open_response()
        relayed = await relay.relay(upstream, {})
        response = relayed.to_response()
        assert isinstance(response, UpstreamStreamingResponse)
        with pytest.raises(Exception):
            await response(scope, receive, send)
        await client.aclose()
        return upstream

    upstream = asyncio.run(scenario())

    assert upstream.is_closed


def test_buffered_body_is_relayed_verbatim(relay):
    body = b'{"id":"cmpl-1","choices":[]}'

    def handler(request):
        return httpx.Response(200, headers={"content-type": "application/json"}, content=body)

    client, open_response = _open(handler)

    async def scenario():
        upstream = await open_response()
        relayed = await relay.relay(upstream, {"Access-Control-Allow-Origin": "*"})
        await client.aclose()
        return relayed

    relayed = asyncio.run(scenario())

    assert not relayed.streaming
    assert relayed.body == body
    assert relayed.audit_body() == body.decode()
    assert "content-length" not in relayed.headers
    assert relayed.headers["access-control-allow-origin"] == "*"


def test_buffered_non_success_status_passthrough(relay):
    def handler(request):
        return httpx.Response(401, headers={"content-type": "application/json"}, content=b'{"error":"bad key"}')

    client, open_response = _open(handler)

    async def scenario():
        upstream = await open_response()
        relayed = await relay.relay(upstream, {})
        await client.aclose()
        return relayed

    relayed = asyncio.run(scenario())

    assert relayed.status == 401
    assert relayed.body == b'{"error":"bad key"}'


def test_buffered_read_failure_is_upstream_failure(relay):
    async def broken():
        yield b'{"partial":'
        raise httpx.ReadError("connection reset")

    def handler(request):
        return httpx.Response(200, headers={"content-type": "application/json"}, content=broken())

    client, open_response = _open(handler)

    async def scenario():
        upstream = await open_response()
        try:
            await relay.relay(upstream, {})
        finally:
            await client.aclose()

    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(scenario())

    assert exc.value.kind == UpstreamFailure.NETWORK
