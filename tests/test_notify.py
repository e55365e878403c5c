"""Tests for operator notification sinks."""

import asyncio
import json
import logging

import httpx
import pytest

from llm_relay.config import NotifyConfig
from llm_relay.errors import SinkFailure
from llm_relay.notify import LogNotifier, WebhookNotifier, create_notifier


def test_log_notifier(caplog):
    with caplog.at_level(logging.WARNING, logger="llm-relay.notify"):
        asyncio.run(LogNotifier().notify("Client 1.2.3.4 is hammering", route="p"))

    assert "ALERT: Client 1.2.3.4 is hammering" in caplog.text


def test_webhook_payload():
    notifier = WebhookNotifier(url="https://hooks.test/alert")

    payload = notifier.build_payload("too many requests", title="Possible API abuse", route="p", count=11)

    assert payload["title"] == "Possible API abuse"
    assert payload["text"] == "too many requests"
    assert payload["source"] == "llm-relay"
    assert payload["route"] == "p"
    assert payload["count"] == 11
    assert "timestamp" in payload


def test_webhook_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier(
                url="https://hooks.test/alert",
                headers={"X-Token": "t"},
                client=client,
            )
            await notifier.notify("abuse", client_key="1.2.3.4")

    asyncio.run(scenario())

    assert len(seen) == 1
    assert seen[0].method == "POST"
    assert seen[0].headers["x-token"] == "t"
    body = json.loads(seen[0].content)
    assert body["text"] == "abuse"
    assert body["client_key"] == "1.2.3.4"


def _notify_through(handler):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await WebhookNotifier(url="https://hooks.test/alert", client=client).notify("abuse")

    asyncio.run(scenario())


def test_webhook_error_status_raises_sink_failure():
    with pytest.raises(SinkFailure) as exc:
        _notify_through(lambda request: httpx.Response(500))

    assert exc.value.kind == SinkFailure.NOTIFY


def test_webhook_unreachable_raises_sink_failure():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(SinkFailure):
        _notify_through(handler)


def test_create_notifier():
    assert isinstance(create_notifier(NotifyConfig()), LogNotifier)

    webhook = create_notifier(NotifyConfig(kind="webhook", webhook_url="https://hooks.test/a"))
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.url == "https://hooks.test/a"

    with pytest.raises(ValueError):
        create_notifier(NotifyConfig(kind="webhook"))
    with pytest.raises(ValueError):
        create_notifier(NotifyConfig(kind="pager"))
