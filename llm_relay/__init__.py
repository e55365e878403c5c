"""
LLM Relay - Reverse proxy for LLM provider APIs

Forwards client requests to upstream chat/completions providers with:
- Ban list and origin allow-list
- Per-client cooldown and abuse alerts
- Secret injection and hop-by-hop header stripping
- Streaming passthrough
- Hash-chained audit trail
"""

__version__ = "0.1.0"

from .config import ProxyConfig, load_config, config_from_env
from .server import create_app

__all__ = [
    "__version__",
    "ProxyConfig",
    "load_config",
    "config_from_env",
    "create_app",
]
