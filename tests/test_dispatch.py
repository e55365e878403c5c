"""Tests for target URL construction and upstream dispatch."""

import asyncio

import httpx
import pytest

from llm_relay.errors import InvalidRequest, UpstreamFailure
from llm_relay.relay import ForwardSpec, UpstreamDispatcher, build_target_url


def test_target_url_keeps_remainder_and_query():
    url = build_target_url(
        "https://api.together.xyz/v1",
        "/api/together",
        "/api/together/chat/completions",
        "stream=true&n=2",
    )
    assert url == "https://api.together.xyz/v1/chat/completions?stream=true&n=2"


def test_target_url_for_bare_prefix():
    assert build_target_url("https://up.test/v1/", "/api/p", "/api/p") == "https://up.test/v1/"


def test_target_url_keeps_percent_encoding():
    url = build_target_url("https://up.test", "/api/p", "/api/p/files/a%2Fb")
    assert url == "https://up.test/files/a%2Fb"


@pytest.mark.parametrize("path", ["/api/other/chat", "/api/pp/chat", "/chat"])
def test_target_url_outside_prefix_is_unresolvable(path):
    with pytest.raises(InvalidRequest) as exc:
        build_target_url("https://up.test", "/api/p", path)

    assert exc.value.kind == InvalidRequest.UNRESOLVABLE_PATH
    assert exc.value.status_code == 400


def _spec(method="POST", body=b'{"model": "m"}'):
    return ForwardSpec(
        method=method,
        target_url="https://up.test/v1/chat/completions?x=1",
        headers=httpx.Headers({"authorization": "Bearer sk", "content-type": "application/json"}),
        body=body,
    )


def _dispatch(handler, spec):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = UpstreamDispatcher(client, timeout=5)
            response = await dispatcher.dispatch(spec)
            body = await response.aread()
            await response.aclose()
            return response, body

    return asyncio.run(scenario())


def test_dispatch_forwards_method_body_and_query():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = request.content
        seen["authorization"] = request.headers["authorization"]
        return httpx.Response(200, content=b'{"ok":true}')

    response, body = _dispatch(handler, _spec())

    assert response.status_code == 200
    assert body == b'{"ok":true}'
    assert seen == {
        "method": "POST",
        "url": "https://up.test/v1/chat/completions?x=1",
        "body": b'{"model": "m"}',
        "authorization": "Bearer sk",
    }


def test_dispatch_passes_non_success_status_through():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, content=b'{"error":"slow down"}')

    response, body = _dispatch(handler, _spec())

    assert response.status_code == 429
    assert body == b'{"error":"slow down"}'


def test_dispatch_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamFailure) as exc:
        _dispatch(handler, _spec())

    assert exc.value.kind == UpstreamFailure.NETWORK
    assert exc.value.status_code == 500
    assert "ConnectError" in exc.value.cause
    assert exc.value.message == "Internal Server Error"


def test_dispatch_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(UpstreamFailure) as exc:
        _dispatch(handler, _spec())

    assert exc.value.kind == UpstreamFailure.TIMEOUT


def test_dispatch_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(UpstreamFailure):
        _dispatch(handler, _spec())

    assert len(calls) == 1
