"""
Relay

HTTP reverse proxy pipeline for LLM provider APIs:
- Header transformation and CORS
- Upstream dispatch over a shared httpx client
- Streaming and buffered response relay
"""

from .headers import HeaderTransform, CORSPolicy, HOP_BY_HOP_HEADERS, strip_hop_by_hop, bearer_token
from .dispatch import ForwardSpec, UpstreamDispatcher, build_target_url
from .response import ResponseRelay, RelayedResponse, UpstreamStreamingResponse, STREAMING_MARKER, is_streaming
from .pipeline import RoutePipeline, RouteStats

__all__ = [
    "HeaderTransform",
    "CORSPolicy",
    "HOP_BY_HOP_HEADERS",
    "strip_hop_by_hop",
    "bearer_token",
    "ForwardSpec",
    "UpstreamDispatcher",
    "build_target_url",
    "ResponseRelay",
    "RelayedResponse",
    "UpstreamStreamingResponse",
    "STREAMING_MARKER",
    "is_streaming",
    "RoutePipeline",
    "RouteStats",
]
