"""
Geocoding Service

Address text to coordinates through the Base Adresse Nationale search API.
Returns None on any failure; callers treat that as "address not found".
"""

import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from carpool.config import settings

logger = logging.getLogger(__name__)


class GeocodeResult(BaseModel):
    latitude: float
    longitude: float
    label: str
    city: Optional[str] = None
    postcode: Optional[str] = None


class GeocodingService:
    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.geocoder_base_url).rstrip("/")
        self.timeout = settings.geocode_timeout_seconds
        self._transport = transport

    async def geocode(self, address: str) -> Optional[GeocodeResult]:
        """Best match for an address, or None."""
        if not address or not address.strip():
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/search/",
                    params={"q": address.strip(), "limit": 1},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Geocoding failed for '{address}': {e}")
            return None
        except ValueError:
            logger.warning(f"Geocoder returned invalid JSON for '{address}'")
            return None

        features = data.get("features") or []
        if not features:
            logger.info(f"No geocoding result for '{address}'")
            return None

        feature = features[0]
        try:
            # GeoJSON order is [lon, lat]
            lng, lat = feature["geometry"]["coordinates"][:2]
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Geocoder returned a feature without coordinates for '{address}'")
            return None
        properties = feature.get("properties") or {}

        return GeocodeResult(
            latitude=float(lat),
            longitude=float(lng),
            label=properties.get("label") or address,
            city=properties.get("city"),
            postcode=properties.get("postcode"),
        )
