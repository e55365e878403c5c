"""
Access Control

Terminal allow/deny decision for a caller:
- Ban list (exact client key match)
- Origin allow-list (substring match on Origin, falling back to Referer)

A banned key is rejected before the origin is looked at. An empty allow-list
disables the origin check entirely.
"""

import logging
from enum import Enum
from typing import Iterable, Optional, Tuple

from ..config import AccessConfig
from ..errors import AccessDenied, GatewayError

logger = logging.getLogger("llm-relay.access")


class AccessDecision(Enum):
    """Outcome of admission checks, with the HTTP status a denial maps to."""

    ALLOW = ("allow", 200, "")
    DENIED_BANNED = ("denied_banned", 403, AccessDenied.MESSAGES[AccessDenied.BANNED])
    DENIED_ORIGIN = ("denied_origin", 403, AccessDenied.MESSAGES[AccessDenied.ORIGIN])
    # Reserved: the cooldown gate delays instead of rejecting, so no error maps to it
    DENIED_RATE_LIMITED = ("denied_rate_limited", 429, "Too Many Requests")

    def __init__(self, label: str, status_code: int, message: str):
        self.label = label
        self.status_code = status_code
        self.message = message

    @property
    def allowed(self) -> bool:
        return self is AccessDecision.ALLOW

    def to_error(self) -> Optional[GatewayError]:
        """Error to raise for a denial; None when allowed or reserved."""
        if self is AccessDecision.DENIED_BANNED:
            return AccessDenied(AccessDenied.BANNED)
        if self is AccessDecision.DENIED_ORIGIN:
            return AccessDenied(AccessDenied.ORIGIN)
        return None


class AccessControl:
    """
    Ban list and origin allow-list evaluation for one route.

    Usage:
        access = AccessControl(banned_ips=["1.2.3.4"], allowed_origins=["chat.example.com"])
        decision = access.evaluate(client_key, origin, referer)
    """

    def __init__(
        self,
        banned_ips: Optional[Iterable[str]] = None,
        allowed_origins: Optional[Iterable[str]] = None,
    ):
        self.banned_ips = frozenset(ip.strip() for ip in (banned_ips or []) if ip.strip())
        self.allowed_origins: Tuple[str, ...] = tuple(o for o in (allowed_origins or []) if o)

    @classmethod
    def from_config(cls, config: AccessConfig) -> "AccessControl":
        return cls(banned_ips=config.banned_ips, allowed_origins=config.allowed_origins)

    @property
    def origin_check_enabled(self) -> bool:
        return bool(self.allowed_origins)

    def is_banned(self, client_key: str) -> bool:
        return client_key in self.banned_ips

    def is_origin_allowed(self, origin: Optional[str], referer: Optional[str]) -> bool:
        if not self.origin_check_enabled:
            return True

        source = origin or referer
        if not source:
            return False

        return any(allowed in source for allowed in self.allowed_origins)

    def evaluate(
        self,
        client_key: str,
        origin: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> AccessDecision:
        """Evaluate a caller. Ban check runs first."""
        if self.is_banned(client_key):
            logger.warning(f"Denied banned client {client_key}")
            return AccessDecision.DENIED_BANNED

        if not self.is_origin_allowed(origin, referer):
            logger.warning(
                f"Denied client {client_key}: origin={origin!r} referer={referer!r} not allow-listed"
            )
            return AccessDecision.DENIED_ORIGIN

        return AccessDecision.ALLOW
