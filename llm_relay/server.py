"""
LLM Relay Server

FastAPI application for the LLM Relay gateway.
"""

import os
import asyncio
import logging
from typing import Optional, Dict
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from . import __version__
from .config import ProxyConfig, load_config, config_from_env
from .access import GeoResolver
from .audit import AuditLogger, SinkDispatcher
from .notify import create_notifier
from .relay import RoutePipeline
from .telemetry import init_telemetry

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("llm-relay")

CONFIG_ENV_VAR = "LLM_RELAY_CONFIG"

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


# =============================================================================
# Pydantic Models
# =============================================================================

class ServiceInfo(BaseModel):
    """Service summary returned by the root endpoint."""
    service: str = "LLM Relay"
    version: str
    status: str = "running"
    routes: int = Field(..., description="Number of proxied routes")
    audit_enabled: bool
    notifier: str = Field(..., description="Notification sink kind")


class ChainStatus(BaseModel):
    """Result of an audit chain verification."""
    valid: bool
    entries_checked: int
    first_invalid: Optional[str] = None
    error: Optional[str] = None


def _proxy_endpoint(pipeline: RoutePipeline):
    async def proxy(request: Request) -> Response:
        return await pipeline.handle(request)

    proxy.__name__ = f"proxy_{pipeline.name}"
    return proxy


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    config: ProxyConfig = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Create FastAPI application.

    `transport` replaces the network transport of the shared upstream client
    (tests pass an httpx.MockTransport).
    """
    config = config or config_from_env()

    init_telemetry()

    # Initialize components
    audit_logger = None
    if config.audit.enabled:
        audit_logger = AuditLogger(
            storage=config.audit.storage,
            path=config.audit.path,
            mongodb_uri=config.audit.mongodb_uri,
        )

    dispatcher = SinkDispatcher(timeout=config.audit.sink_timeout)

    http_client = httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(config.proxy.timeout, connect=config.proxy.connect_timeout),
        follow_redirects=False,
    )

    notifier = create_notifier(config.notify, client=http_client)

    geo = None
    if config.geo.enabled:
        geo = GeoResolver.from_config(config.geo, client=http_client)

    pipelines: Dict[str, RoutePipeline] = {}
    for route in config.routes:
        pipelines[route.name] = RoutePipeline(
            route,
            prefix=config.proxy.prefix,
            client=http_client,
            dispatcher=dispatcher,
            audit=audit_logger,
            notifier=notifier,
            geo=geo,
            capture_bodies=config.audit.capture_bodies,
            default_timeout=config.proxy.timeout,
            connect_timeout=config.proxy.connect_timeout,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info("LLM Relay starting...")
        for pipeline in pipelines.values():
            logger.info(f"  {pipeline.route_prefix}/** -> {pipeline.route.upstream_url}")

        yield

        logger.info("LLM Relay shutting down...")
        await dispatcher.drain()
        await http_client.aclose()
        if audit_logger:
            audit_logger.close()

    app = FastAPI(
        title="LLM Relay",
        description="Reverse proxy for LLM provider APIs with admission control and audit trail",
        version=__version__,
        lifespan=lifespan
    )

    # Store components in app state
    app.state.config = config
    app.state.pipelines = pipelines
    app.state.audit_logger = audit_logger
    app.state.dispatcher = dispatcher
    app.state.http_client = http_client

    # CORS is handled per route by the relay pipeline, so no CORSMiddleware here

    # =========================================================================
    # Routes
    # =========================================================================

    @app.get("/", response_model=ServiceInfo)
    async def root():
        """Health check and service info."""
        return ServiceInfo(
            version=__version__,
            routes=len(pipelines),
            audit_enabled=audit_logger is not None,
            notifier=notifier.kind,
        )

    @app.get("/health")
    async def health():
        """Health check."""
        return {"status": "healthy"}

    @app.get("/routes")
    async def list_routes():
        """List configured routes with their counters."""
        return {
            "routes": [
                {
                    "name": name,
                    "prefix": pipeline.route_prefix,
                    "upstream": pipeline.route.upstream_url,
                    "origin_check": pipeline.access.origin_check_enabled,
                    "banned_ips": len(pipeline.access.banned_ips),
                    "client_secrets": pipeline.route.allow_client_secret,
                    "stats": pipeline.stats.to_dict(),
                    "rate_limit": pipeline.limiter.stats,
                }
                for name, pipeline in pipelines.items()
            ],
            "sinks": dispatcher.stats,
        }

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def require_audit() -> AuditLogger:
        if not audit_logger:
            raise HTTPException(status_code=503, detail="Audit logging not enabled")
        return audit_logger

    @app.get("/audit")
    async def query_audit(
        route: Optional[str] = None,
        client_key: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100
    ):
        """Query audit log."""
        audit = require_audit()
        entries = await asyncio.to_thread(
            audit.query,
            route=route,
            client_key=client_key,
            event_type=event_type,
            limit=limit,
        )

        return {
            "count": len(entries),
            "entries": [e.to_dict() for e in entries]
        }

    @app.get("/audit/verify", response_model=ChainStatus)
    async def verify_audit():
        """Verify audit chain integrity."""
        audit = require_audit()
        result = await asyncio.to_thread(audit.verify_chain)
        return ChainStatus(
            valid=result.valid,
            entries_checked=result.entries_checked,
            first_invalid=result.first_invalid,
            error=result.error,
        )

    @app.get("/audit/stats")
    async def audit_stats():
        """Get audit statistics."""
        return require_audit().stats

    # -------------------------------------------------------------------------
    # Proxied routes
    # -------------------------------------------------------------------------

    for pipeline in pipelines.values():
        endpoint = _proxy_endpoint(pipeline)
        for path in (pipeline.route_prefix, f"{pipeline.route_prefix}/{{path:path}}"):
            app.add_api_route(path, endpoint, methods=PROXY_METHODS, include_in_schema=False)

    return app


def create_app_from_env() -> FastAPI:
    """App factory for uvicorn --factory; reads LLM_RELAY_CONFIG or plain env vars."""
    config_path = os.environ.get(CONFIG_ENV_VAR)
    config = load_config(config_path) if config_path else config_from_env()
    return create_app(config)


# =============================================================================
# Main
# =============================================================================

def main(config_path: str = None, config: ProxyConfig = None):
    """Run the LLM Relay server."""
    import uvicorn

    if config is None:
        config = load_config(config_path) if config_path else config_from_env()

    server = config.server

    if server.workers > 1 or server.reload:
        # Multiple workers and reload need an import string; each worker builds its own app
        if config_path:
            os.environ[CONFIG_ENV_VAR] = str(config_path)
        uvicorn.run(
            "llm_relay.server:create_app_from_env",
            factory=True,
            host=server.host,
            port=server.port,
            workers=server.workers,
            reload=server.reload,
            log_level=server.log_level,
        )
        return

    uvicorn.run(
        create_app(config),
        host=server.host,
        port=server.port,
        log_level=server.log_level,
    )


if __name__ == "__main__":
    main(os.environ.get(CONFIG_ENV_VAR))
