"""
Nominatim (OpenStreetMap) geocoding.

Resolves free-text addresses to [longitude, latitude]. No API key needed,
just a user agent string. Lookups happen before any database write, and
a failed lookup returns None instead of raising.
"""

import logging
from typing import Optional

import httpx

from ..config import GEOCODING_TIMEOUT_SECONDS, NOMINATIM_BASE_URL, NOMINATIM_USER_AGENT

logger = logging.getLogger(__name__)


class GeocodingProvider:
    def __init__(
        self,
        base_url: str = NOMINATIM_BASE_URL,
        user_agent: str = NOMINATIM_USER_AGENT,
        timeout: float = GEOCODING_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport = transport

    async def geocode(self, address: str) -> Optional[dict]:
        """
        Look up an address.

        Returns:
            {"coordinates": [longitude, latitude], "formattedAddress": str}, or
            None when the address is empty, unknown, or the lookup failed
        """
        address = (address or "").strip()
        if not address:
            return None

        params = {"q": address, "format": "json", "limit": "1"}
        headers = {"User-Agent": self.user_agent}

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                resp = await client.get(
                    f"{self.base_url}/search", params=params, headers=headers, timeout=self.timeout
                )
            if resp.status_code >= 400:
                logger.warning(f"Nominatim API error {resp.status_code}: {resp.text[:200]}")
                return None

            results = resp.json()
            if not results:
                logger.info(f"📍 No geocoding match for '{address}'")
                return None

            top = results[0]
            return {
                "coordinates": [float(top["lon"]), float(top["lat"])],
                "formattedAddress": top.get("display_name", address),
            }
        except httpx.TimeoutException:
            logger.error(f"Nominatim API timeout for '{address}'")
            return None
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Nominatim lookup failed for '{address}': {e}")
            return None


geocoding_provider = GeocodingProvider()
