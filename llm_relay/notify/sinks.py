"""
Operator notification sinks.

Sinks are best effort: they raise SinkFailure on delivery problems and are
always invoked through the SinkDispatcher, which logs and drops the failure.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..config import NotifyConfig
from ..errors import SinkFailure

logger = logging.getLogger("llm-relay.notify")


class LogNotifier:
    """Writes alerts to the application log."""

    kind = "log"

    async def notify(self, message: str, **context: Any) -> None:
        logger.warning(f"ALERT: {message}")


class WebhookNotifier:
    """
    POSTs alerts as JSON to a webhook.

    The payload carries a `text` field so Slack- and Discord-style incoming
    webhooks render it without further mapping.
    """

    kind = "webhook"

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client

    def build_payload(self, message: str, **context: Any) -> Dict[str, Any]:
        payload = {
            "title": context.pop("title", "LLM Relay alert"),
            "text": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "llm-relay",
        }
        payload.update(context)
        return payload

    async def notify(self, message: str, **context: Any) -> None:
        payload = self.build_payload(message, **context)
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json=payload, headers=self.headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SinkFailure(SinkFailure.NOTIFY, f"webhook delivery failed: {e!r}") from e


def create_notifier(config: NotifyConfig, client: Optional[httpx.AsyncClient] = None):
    """Build the notifier selected by config."""
    if config.kind == "webhook":
        if not config.webhook_url:
            raise ValueError("notify.kind is 'webhook' but notify.webhook_url is not set")
        return WebhookNotifier(
            url=config.webhook_url,
            headers=config.headers,
            timeout=config.timeout,
            client=client,
        )
    if config.kind == "log":
        return LogNotifier()
    raise ValueError(f"Unknown notifier kind: {config.kind}")
