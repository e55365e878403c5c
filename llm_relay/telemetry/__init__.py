"""
LLM Relay Telemetry Module

OpenTelemetry integration for distributed tracing.
Trace ids are copied onto audit records so traces and audit rows line up.
"""

from .tracer import init_telemetry, get_tracer, TracingConfig
from .spans import RelaySpan, SpanKind, get_trace_id

__all__ = [
    "init_telemetry",
    "get_tracer",
    "TracingConfig",
    "RelaySpan",
    "SpanKind",
    "get_trace_id",
]
