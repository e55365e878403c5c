"""
Configuration management for LLM Relay.

Supports YAML configuration with environment variable expansion, and a
single-route configuration built purely from environment variables for
platform deployments that ship no config file.
"""

import os
import re
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any

import yaml


logger = logging.getLogger("llm-relay.config")

# ${VAR} or $VAR
_ENV_REF = re.compile(r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)')

DEFAULT_ALLOW_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
DEFAULT_ALLOW_HEADERS = ["Content-Type", "Authorization"]


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = "0.0.0.0"
    port: int = 8766
    workers: int = 1
    reload: bool = False
    log_level: str = "info"


@dataclass
class ProxySettings:
    """Settings shared by every proxied route."""
    prefix: str = "/api"
    timeout: float = 120.0
    connect_timeout: float = 10.0


@dataclass
class AuditConfig:
    """Audit trail configuration."""
    enabled: bool = True
    storage: str = "sqlite"  # sqlite | jsonl | memory | mongodb
    path: str = "./relay-audit.db"
    mongodb_uri: Optional[str] = None
    capture_bodies: bool = True
    # Upper bound for a single sink write before it is abandoned
    sink_timeout: float = 5.0


@dataclass
class NotifyConfig:
    """Operator notification configuration."""
    kind: str = "log"  # log | webhook
    webhook_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0


@dataclass
class GeoConfig:
    """IP-to-country resolution."""
    enabled: bool = False
    country_header: Optional[str] = "cf-ipcountry"
    # e.g. "https://ipapi.co/{ip}/country_name/"
    lookup_url: Optional[str] = None
    timeout: float = 2.0


@dataclass
class AccessConfig:
    """Ban list and origin allow-list for a route."""
    # Empty list disables the origin check
    allowed_origins: List[str] = field(default_factory=list)
    banned_ips: List[str] = field(default_factory=list)


@dataclass
class RateLimitConfig:
    """Cooldown gate and abuse counter settings for a route."""
    cooldown_ms: int = 1000
    abuse_threshold: int = 10
    abuse_window_s: float = 300.0


@dataclass
class CORSConfig:
    """CORS response headers applied to every response of a route."""
    allow_methods: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_METHODS))
    allow_headers: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_HEADERS))
    allow_credentials: bool = True


@dataclass
class RouteConfig:
    """Configuration for a single upstream provider route."""
    name: str
    upstream_url: str
    default_secret: Optional[str] = None
    # Use the caller's own bearer token when it sends one
    allow_client_secret: bool = False
    force_json: bool = True
    timeout: Optional[float] = None
    access: AccessConfig = field(default_factory=AccessConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cors: CORSConfig = field(default_factory=CORSConfig)


@dataclass
class ProxyConfig:
    """Root configuration for LLM Relay."""
    server: ServerConfig = field(default_factory=ServerConfig)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    audit: AuditConfig = field(default_factory=AuditConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    geo: GeoConfig = field(default_factory=GeoConfig)
    routes: List[RouteConfig] = field(default_factory=list)

    def get_route(self, name: str) -> Optional[RouteConfig]:
        for route in self.routes:
            if route.name == name:
                return route
        return None


def expand_env_vars(value: Any) -> Any:
    """Recursively expand environment variables in config values."""
    if isinstance(value, str):
        def replace(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return _ENV_REF.sub(replace, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    return value


def _as_list(value: Any) -> List[str]:
    """Accept either a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _resolved_secret(name: str, value: Any) -> Optional[str]:
    """A secret still holding an unexpanded env reference counts as unset."""
    if not value:
        return None
    secret = str(value)
    if _ENV_REF.search(secret):
        logger.warning(f"Route '{name}': default_secret {secret} is not set in the environment")
        return None
    return secret


def parse_route_config(name: str, data: Dict[str, Any]) -> RouteConfig:
    """Parse a route configuration from dict."""
    upstream_url = data.get("upstream_url")
    if not upstream_url:
        raise ValueError(f"Route '{name}' is missing upstream_url")

    access_data = data.get("access") or {}
    access = AccessConfig(
        allowed_origins=_as_list(access_data.get("allowed_origins")),
        banned_ips=_as_list(access_data.get("banned_ips")),
    )

    rl_data = data.get("rate_limit") or {}
    rate_limit = RateLimitConfig(
        cooldown_ms=int(rl_data.get("cooldown_ms", 1000)),
        abuse_threshold=int(rl_data.get("abuse_threshold", 10)),
        abuse_window_s=float(rl_data.get("abuse_window_s", 300.0)),
    )

    cors_data = data.get("cors") or {}
    cors = CORSConfig(
        allow_methods=_as_list(cors_data.get("allow_methods")) or list(DEFAULT_ALLOW_METHODS),
        allow_headers=_as_list(cors_data.get("allow_headers")) or list(DEFAULT_ALLOW_HEADERS),
        allow_credentials=_as_bool(cors_data.get("allow_credentials"), True),
    )

    timeout = data.get("timeout")

    return RouteConfig(
        name=name,
        upstream_url=str(upstream_url).rstrip("/"),
        default_secret=_resolved_secret(name, data.get("default_secret")),
        allow_client_secret=_as_bool(data.get("allow_client_secret"), False),
        force_json=_as_bool(data.get("force_json"), True),
        timeout=float(timeout) if timeout is not None else None,
        access=access,
        rate_limit=rate_limit,
        cors=cors,
    )


def parse_config(data: Dict[str, Any]) -> ProxyConfig:
    """Build a ProxyConfig from an already env-expanded mapping."""
    server_data = data.get("server") or {}
    server = ServerConfig(
        host=server_data.get("host", "0.0.0.0"),
        port=int(server_data.get("port", 8766)),
        workers=int(server_data.get("workers", 1)),
        reload=_as_bool(server_data.get("reload"), False),
        log_level=server_data.get("log_level", "info"),
    )

    proxy_data = data.get("proxy") or {}
    prefix = "/" + str(proxy_data.get("prefix", "/api")).strip("/")
    proxy = ProxySettings(
        prefix=prefix,
        timeout=float(proxy_data.get("timeout", 120.0)),
        connect_timeout=float(proxy_data.get("connect_timeout", 10.0)),
    )

    audit_data = data.get("audit") or {}
    audit = AuditConfig(
        enabled=_as_bool(audit_data.get("enabled"), True),
        storage=audit_data.get("storage", "sqlite"),
        path=audit_data.get("path", "./relay-audit.db"),
        mongodb_uri=audit_data.get("mongodb_uri"),
        capture_bodies=_as_bool(audit_data.get("capture_bodies"), True),
        sink_timeout=float(audit_data.get("sink_timeout", 5.0)),
    )

    notify_data = data.get("notify") or {}
    notify = NotifyConfig(
        kind=notify_data.get("kind", "log"),
        webhook_url=notify_data.get("webhook_url"),
        headers=notify_data.get("headers") or {},
        timeout=float(notify_data.get("timeout", 10.0)),
    )

    geo_data = data.get("geo") or {}
    geo = GeoConfig(
        enabled=_as_bool(geo_data.get("enabled"), False),
        country_header=geo_data.get("country_header", "cf-ipcountry"),
        lookup_url=geo_data.get("lookup_url"),
        timeout=float(geo_data.get("timeout", 2.0)),
    )

    routes = []
    for name, route_data in (data.get("routes") or {}).items():
        routes.append(parse_route_config(name, route_data or {}))

    return ProxyConfig(
        server=server,
        proxy=proxy,
        audit=audit,
        notify=notify,
        geo=geo,
        routes=routes,
    )


def load_config(path: str | Path) -> ProxyConfig:
    """Load configuration from YAML file."""
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    # Expand environment variables
    data = expand_env_vars(raw)

    return parse_config(data)


def config_from_env(environ: Optional[Dict[str, str]] = None) -> ProxyConfig:
    """
    Build a single-route configuration from environment variables.

    Used when the relay is deployed without a config file.
    """
    env = os.environ if environ is None else environ

    upstream = env.get("UPSTREAM_URL")
    route_name = env.get("RELAY_ROUTE", "default")

    data: Dict[str, Any] = {
        "server": {
            "host": env.get("HOST", "0.0.0.0"),
            "port": env.get("PORT", 8766),
        },
        "proxy": {
            "prefix": env.get("RELAY_PREFIX", "/api"),
            "timeout": env.get("UPSTREAM_TIMEOUT", 120.0),
        },
        "audit": {
            "enabled": env.get("AUDIT_ENABLED", "true"),
            "storage": env.get("AUDIT_STORAGE", "sqlite"),
            "path": env.get("AUDIT_PATH", "./relay-audit.db"),
            "mongodb_uri": env.get("AUDIT_MONGODB_URI"),
        },
        "notify": {
            "kind": "webhook" if env.get("NOTIFY_WEBHOOK_URL") else "log",
            "webhook_url": env.get("NOTIFY_WEBHOOK_URL"),
        },
        "geo": {
            "enabled": env.get("GEO_ENABLED", "false"),
            "lookup_url": env.get("GEO_LOOKUP_URL"),
        },
        "routes": {},
    }

    if upstream:
        data["routes"][route_name] = {
            "upstream_url": upstream,
            "default_secret": env.get("UPSTREAM_API_KEY"),
            "allow_client_secret": env.get("ALLOW_CLIENT_SECRET", "false"),
            "access": {
                "allowed_origins": env.get("ALLOWED_ORIGINS"),
                "banned_ips": env.get("BANNED_IPS"),
            },
            "rate_limit": {
                "cooldown_ms": env.get("COOLDOWN_MS", 1000),
                "abuse_threshold": env.get("ABUSE_THRESHOLD", 10),
                "abuse_window_s": env.get("ABUSE_WINDOW_S", 300),
            },
        }

    return parse_config(data)


def create_default_config() -> str:
    """Generate default configuration YAML."""
    return """# LLM Relay Configuration

server:
  host: 0.0.0.0
  port: 8766
  workers: 1

# Requests to {prefix}/{route}/** are forwarded to the route's upstream
proxy:
  prefix: /api
  timeout: 120

# Audit trail (hash-chained)
audit:
  enabled: true
  storage: sqlite   # sqlite | jsonl | memory | mongodb
  path: ./relay-audit.db

# Abuse alerts
notify:
  kind: log          # log | webhook
  # webhook_url: ${RELAY_ALERT_WEBHOOK}

geo:
  enabled: false
  country_header: cf-ipcountry

routes:
  # Server-side key, open CORS policy
  together:
    upstream_url: https://api.together.xyz/v1
    default_secret: ${TOGETHER_API_KEY}
    rate_limit:
      cooldown_ms: 10000

  # Client keys accepted, server key as fallback
  # mistral:
  #   upstream_url: https://api.mistral.ai/v1
  #   default_secret: ${MISTRAL_API_KEY}
  #   allow_client_secret: true
  #   cors:
  #     allow_headers: [Authorization, Content-Type, OpenAI-Beta, OpenAI-Organization]

  # Locked to one front-end
  # cerebras:
  #   upstream_url: https://api.cerebras.ai/v1
  #   default_secret: ${CEREBRAS_API_KEY}
  #   access:
  #     allowed_origins: [chat.example.com]
  #     banned_ips: []
  #   rate_limit:
  #     cooldown_ms: 1000
  #     abuse_threshold: 10
  #     abuse_window_s: 300
"""
