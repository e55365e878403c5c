"""
Tracer setup.

Tracing is off (the API's no-op provider) unless an exporter is asked for
through the standard OTEL_* environment variables or LLM_RELAY_TRACE_CONSOLE.
"""

import os
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION

from .. import __version__

logger = logging.getLogger("llm-relay.telemetry")

TRACER_NAME = "llm-relay"

_provider: Optional[TracerProvider] = None


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass
class TracingConfig:
    """Where relay spans go and how many are kept."""

    service_name: str = TRACER_NAME
    otlp_endpoint: Optional[str] = None
    otlp_insecure: bool = True
    # Fraction of new traces sampled; child spans follow their parent
    sample_ratio: float = 1.0
    console: bool = False

    @classmethod
    def from_env(cls) -> "TracingConfig":
        return cls(
            service_name=os.getenv("OTEL_SERVICE_NAME", TRACER_NAME),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
            otlp_insecure=_env_flag("OTEL_EXPORTER_OTLP_INSECURE", "true"),
            sample_ratio=float(os.getenv("OTEL_TRACES_SAMPLER_ARG", "1.0")),
            console=_env_flag("LLM_RELAY_TRACE_CONSOLE"),
        )

    @property
    def exporting(self) -> bool:
        return bool(self.otlp_endpoint) or self.console


def _span_exporters(config: TracingConfig) -> Iterator[SpanExporter]:
    if config.otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTEL: OTLP endpoint set but exporter missing (pip install 'llm-relay[otlp]')")
        else:
            logger.info(f"OTEL: exporting spans to {config.otlp_endpoint}")
            yield OTLPSpanExporter(endpoint=config.otlp_endpoint, insecure=config.otlp_insecure)

    if config.console:
        logger.info("OTEL: printing spans to stdout")
        yield ConsoleSpanExporter()


def init_telemetry(config: Optional[TracingConfig] = None) -> bool:
    """
    Install a tracer provider if an exporter is configured.

    Safe to call once per app; later calls are no-ops. Returns True when a
    provider is active.
    """
    global _provider

    if _provider is not None:
        return True

    config = config or TracingConfig.from_env()
    if not config.exporting:
        logger.debug("OTEL: no exporter configured, tracing stays no-op")
        return False

    provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: config.service_name,
            SERVICE_VERSION: __version__,
        }),
        sampler=ParentBased(TraceIdRatioBased(config.sample_ratio)),
    )
    for exporter in _span_exporters(config):
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _provider = provider
    return True


def get_tracer():
    """Tracer for relay spans (no-op until a provider is installed)."""
    return trace.get_tracer(TRACER_NAME)
