"""
IP-to-country resolution.

Best effort only: every failure degrades to "Unknown" and never fails the
request. The country comes from a platform-supplied header when available,
otherwise from an optional HTTP lookup service.
"""

import logging
from typing import Dict, Mapping, Optional

import httpx

from ..config import GeoConfig

logger = logging.getLogger("llm-relay.access.geo")

UNKNOWN_COUNTRY = "Unknown"

# Values some platforms send when they cannot place the address
_PLACEHOLDER_COUNTRIES = {"", "xx", "t1", "unknown"}


class GeoResolver:
    """Resolve a client IP to a country name or code."""

    def __init__(
        self,
        country_header: Optional[str] = "cf-ipcountry",
        lookup_url: Optional[str] = None,
        timeout: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.country_header = country_header.lower() if country_header else None
        self.lookup_url = lookup_url
        self.timeout = timeout
        self._client = client
        self._cache: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config: GeoConfig, client: Optional[httpx.AsyncClient] = None) -> "GeoResolver":
        return cls(
            country_header=config.country_header,
            lookup_url=config.lookup_url,
            timeout=config.timeout,
            client=client,
        )

    def from_headers(self, headers: Optional[Mapping[str, str]]) -> Optional[str]:
        if not headers or not self.country_header:
            return None
        value = headers.get(self.country_header)
        if value is None or value.strip().lower() in _PLACEHOLDER_COUNTRIES:
            return None
        return value.strip()

    async def country_of(self, ip: str, headers: Optional[Mapping[str, str]] = None) -> str:
        """Country for `ip`, or "Unknown"."""
        country = self.from_headers(headers)
        if country:
            return country

        if not self.lookup_url:
            return UNKNOWN_COUNTRY

        if ip in self._cache:
            return self._cache[ip]

        try:
            country = await self._lookup(ip)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Geo lookup failed for {ip}: {e}")
            return UNKNOWN_COUNTRY

        country = country or UNKNOWN_COUNTRY
        if country != UNKNOWN_COUNTRY:
            self._cache[ip] = country
        return country

    async def _lookup(self, ip: str) -> Optional[str]:
        url = self.lookup_url.format(ip=ip)
        if self._client is not None:
            response = await self._client.get(url, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)

        response.raise_for_status()

        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            data = response.json()
            if not isinstance(data, dict):
                return None
            for key in ("country_name", "country", "countryCode", "country_code"):
                if data.get(key):
                    return str(data[key])
            return None

        text = response.text.strip()
        return text if text and text.lower() not in _PLACEHOLDER_COUNTRIES else None
