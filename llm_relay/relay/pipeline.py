"""
Relay pipeline

One pipeline per configured route, sharing the upstream HTTP client and the
sink dispatcher:

    client key -> access control -> rate limiter -> header transform
        -> upstream dispatch -> response relay

Audit records are emitted at every exit (forwarded, denied, error) and
abuse alerts when the counter trips, both through the SinkDispatcher so the
response never waits on a sink.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, Optional

import httpx
from starlette.requests import Request
from fastapi.responses import Response

from ..access import AccessControl, GeoResolver, UNKNOWN_COUNTRY, extract_client_key
from ..audit import AuditLogger, AuditRecord, EventType, SinkDispatcher, redact_headers
from ..config import RouteConfig
from ..errors import GatewayError, InvalidRequest
from ..ratelimit import AbuseWindow, RateLimiter
from ..telemetry import RelaySpan, get_trace_id
from .dispatch import ForwardSpec, UpstreamDispatcher, build_target_url
from .headers import HeaderTransform
from .response import RelayedResponse, ResponseRelay

logger = logging.getLogger("llm-relay.relay")


@dataclass
class RouteStats:
    """Counters for one route."""
    requests_total: int = 0
    preflight_total: int = 0
    forwarded_total: int = 0
    streamed_total: int = 0
    denied_total: int = 0
    errors_total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class _Exchange:
    """What is known about a request so far, for its audit record."""
    request: Request
    client_key: str
    started: float
    target_url: Optional[str] = None
    body: Optional[bytes] = None

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def raw_request_path(request: Request) -> str:
    """Path as received on the wire, percent-encoding intact."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


def raw_query_string(request: Request) -> str:
    return request.scope.get("query_string", b"").decode("latin-1")


class RoutePipeline:
    """
    Admission and forwarding for a single upstream route.

    Usage:
        pipeline = RoutePipeline(route, prefix="/api", client=http_client, dispatcher=sinks)
        response = await pipeline.handle(request)
    """

    def __init__(
        self,
        route: RouteConfig,
        prefix: str,
        client: httpx.AsyncClient,
        dispatcher: SinkDispatcher,
        audit: Optional[AuditLogger] = None,
        notifier=None,
        geo: Optional[GeoResolver] = None,
        capture_bodies: bool = True,
        default_timeout: float = 120.0,
        connect_timeout: float = 10.0,
        limiter: Optional[RateLimiter] = None,
    ):
        self.route = route
        self.name = route.name
        self.route_prefix = f"/{prefix.strip('/')}/{route.name}" if prefix.strip("/") else f"/{route.name}"

        self.access = AccessControl.from_config(route.access)
        self.limiter = limiter or RateLimiter.from_config(route.rate_limit)
        self.headers = HeaderTransform.from_route(route)
        self.upstream = UpstreamDispatcher(
            client,
            timeout=route.timeout or default_timeout,
            connect_timeout=connect_timeout,
        )
        self.relay = ResponseRelay(self.headers)

        self.dispatcher = dispatcher
        self.audit = audit
        self.notifier = notifier
        self.geo = geo
        self.capture_bodies = capture_bodies

        self.stats = RouteStats()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def handle(self, request: Request) -> Response:
        cors = self.headers.cors_headers(request.headers.get("origin"))

        # Preflight never reaches admission, limiting or the upstream
        if request.method == "OPTIONS":
            self.stats.preflight_total += 1
            logger.debug(f"[{self.name}] preflight from {request.headers.get('origin')}")
            return Response(status_code=204, headers=cors)

        self.stats.requests_total += 1
        exchange = _Exchange(
            request=request,
            client_key=extract_client_key(request),
            started=time.monotonic(),
        )

        with RelaySpan.request(self.name, exchange.client_key, request.method) as span:
            try:
                relayed = await self._forward(exchange, cors)
            except GatewayError as e:
                span.set_attribute("relay.error_kind", e.kind)
                return self._fail(exchange, e, cors)
            except Exception as e:
                logger.exception(f"[{self.name}] relay error for {exchange.client_key}")
                span.record_exception(e)
                return self._fail(exchange, GatewayError(cause=f"{type(e).__name__}: {e}"), cors)

            span.set_attribute("http.response.status_code", relayed.status)
            span.set_attribute("relay.streaming", relayed.streaming)

            self.stats.forwarded_total += 1
            if relayed.streaming:
                self.stats.streamed_total += 1

            self._record(
                exchange,
                EventType.FORWARD,
                status=relayed.status,
                response_headers=relayed.headers,
                response_body=relayed.audit_body() if (self.capture_bodies or relayed.streaming) else None,
            )
        return relayed.to_response()

    # -------------------------------------------------------------------------
    # Pipeline stages
    # -------------------------------------------------------------------------

    async def _forward(self, exchange: _Exchange, cors: Dict[str, str]) -> RelayedResponse:
        request = exchange.request
        client_key = exchange.client_key

        with RelaySpan.admission(self.name, client_key) as span:
            decision = self.access.evaluate(
                client_key,
                request.headers.get("origin"),
                request.headers.get("referer"),
            )
            span.set_attribute("relay.decision", decision.label)
            if not decision.allowed:
                raise decision.to_error()

            window = self.limiter.observe(client_key)
            if window is not None:
                self._alert(client_key, window, request)

            waited = await self.limiter.admit(client_key)
            span.set_attribute("relay.cooldown_wait_ms", int(waited * 1000))

        secret = self.headers.resolve_secret(request.headers)
        if not secret:
            raise InvalidRequest(InvalidRequest.MISSING_SECRET)

        exchange.target_url = build_target_url(
            self.route.upstream_url,
            self.route_prefix,
            raw_request_path(request),
            raw_query_string(request),
        )
        exchange.body = await request.body()

        spec = ForwardSpec(
            method=request.method,
            target_url=exchange.target_url,
            headers=self.headers.build_upstream_headers(request.headers.items(), secret),
            body=exchange.body,
        )

        with RelaySpan.dispatch(self.name, spec.method, spec.target_url) as span:
            upstream = await self.upstream.dispatch(spec)
            span.set_attribute("http.response.status_code", upstream.status_code)

        return await self.relay.relay(upstream, cors, on_stream_close=self._stream_closed)

    def _fail(self, exchange: _Exchange, error: GatewayError, cors: Dict[str, str]) -> Response:
        if error.status_code in (400, 401, 403, 429):
            self.stats.denied_total += 1
            event_type = EventType.DENIED
            logger.warning(f"[{self.name}] {exchange.client_key} rejected: {error.kind}")
        else:
            self.stats.errors_total += 1
            event_type = EventType.ERROR
            logger.error(f"[{self.name}] {exchange.client_key} failed: {error.cause}")

        response = error.to_response(cors)
        self._record(
            exchange,
            event_type,
            status=response.status_code,
            response_headers=dict(response.headers),
            response_body=error.message,
            error=error.cause,
        )
        return response

    def _stream_closed(self, sent: int, error: Optional[BaseException]):
        if error is not None:
            self.stats.errors_total += 1
        logger.debug(f"[{self.name}] stream closed after {sent} bytes")

    # -------------------------------------------------------------------------
    # Sinks
    # -------------------------------------------------------------------------

    def _record(
        self,
        exchange: _Exchange,
        event_type: str,
        status: int,
        response_headers: Dict[str, str],
        response_body: Optional[str],
        error: Optional[str] = None,
    ):
        if self.audit is None:
            return

        request = exchange.request
        request_body = None
        if self.capture_bodies and exchange.body:
            request_body = exchange.body.decode("utf-8", errors="replace")

        record = AuditRecord(
            event_type=event_type,
            route=self.name,
            client_key=exchange.client_key,
            method=request.method,
            request_url=str(request.url),
            target_url=exchange.target_url,
            request_headers=redact_headers(dict(request.headers)),
            request_body=request_body,
            response_status=status,
            response_headers=dict(response_headers),
            response_body=response_body,
            error=error,
            duration_ms=exchange.duration_ms,
            trace_id=get_trace_id(),
        )
        inbound_headers = dict(request.headers)
        audit = self.audit
        geo = self.geo

        async def write():
            if geo is not None:
                record.country = await geo.country_of(record.client_key, inbound_headers)
            await asyncio.to_thread(audit.record, record)

        self.dispatcher.submit("audit", write)

    def _alert(self, client_key: str, window: AbuseWindow, request: Request):
        if self.notifier is None:
            return

        count = window.count
        period = self.limiter.abuse.window
        inbound_headers = dict(request.headers)
        notifier = self.notifier
        geo = self.geo
        route = self.name

        async def send():
            country = UNKNOWN_COUNTRY
            if geo is not None:
                country = await geo.country_of(client_key, inbound_headers)
            message = (
                f"Client {client_key} ({country}) sent {count} requests to route "
                f"'{route}' within {period:.0f}s"
            )
            await notifier.notify(
                message,
                title="Possible API abuse",
                client_key=client_key,
                country=country,
                route=route,
                count=count,
            )

        self.dispatcher.submit("notify", send)
