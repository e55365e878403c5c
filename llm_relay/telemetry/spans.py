"""
Relay-specific span helpers.

Creates structured spans for each pipeline stage and links them to the audit
trail through the trace id stored on every AuditRecord.
"""

from enum import Enum
from typing import Optional
from contextlib import contextmanager

from opentelemetry import trace

from .tracer import get_tracer


class SpanKind(Enum):
    """Types of relay spans."""

    REQUEST = "request"
    ADMISSION = "admission"
    DISPATCH = "dispatch"


class RelaySpan:
    """
    Helpers for creating pipeline spans.

    Usage:
        with RelaySpan.request(route="together", client_key="1.2.3.4", method="POST") as span:
            span.set_attribute("custom", "value")
    """

    @staticmethod
    @contextmanager
    def request(route: str, client_key: str, method: str):
        """Span covering a whole proxied request."""
        with get_tracer().start_as_current_span(
            f"relay.request.{route}",
            kind=trace.SpanKind.SERVER,
            attributes={
                "relay.span_kind": SpanKind.REQUEST.value,
                "relay.route": route,
                "relay.client_key": client_key,
                "http.request.method": method,
            },
        ) as span:
            yield span

    @staticmethod
    @contextmanager
    def admission(route: str, client_key: str):
        """Span for access control and the cooldown wait."""
        with get_tracer().start_as_current_span(
            "relay.admission",
            attributes={
                "relay.span_kind": SpanKind.ADMISSION.value,
                "relay.route": route,
                "relay.client_key": client_key,
            },
        ) as span:
            yield span

    @staticmethod
    @contextmanager
    def dispatch(route: str, method: str, target_url: str):
        """Span for the upstream round-trip up to response headers."""
        with get_tracer().start_as_current_span(
            "relay.dispatch",
            kind=trace.SpanKind.CLIENT,
            attributes={
                "relay.span_kind": SpanKind.DISPATCH.value,
                "relay.route": route,
                "http.request.method": method,
                "url.full": target_url,
            },
        ) as span:
            yield span


def get_trace_id() -> Optional[str]:
    """Hex trace id of the current span, None when not tracing."""
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None
    return format(ctx.trace_id, '032x')
