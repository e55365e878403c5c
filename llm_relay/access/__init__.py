"""
Access Control

Caller identity and admission policy:
- Client key extraction (X-Forwarded-For aware)
- Ban list and origin allow-list
- Optional IP-to-country lookup for audit rows and alerts
"""

from .client import extract_client_key, client_key_from_headers, UNKNOWN_CLIENT
from .policy import AccessControl, AccessDecision
from .geo import GeoResolver, UNKNOWN_COUNTRY

__all__ = [
    "extract_client_key",
    "client_key_from_headers",
    "UNKNOWN_CLIENT",
    "AccessControl",
    "AccessDecision",
    "GeoResolver",
    "UNKNOWN_COUNTRY",
]
