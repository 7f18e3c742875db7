"""
Mapbox forward geocoding of delivery addresses. Best effort: any failure leaves
the address with geocoding_status=failed and checkout carries on.
"""
import logging

import httpx

from brandmart.config import settings
from brandmart.models import Address, GeocodingStatus

logger = logging.getLogger(__name__)


class MapboxGeocoder:
    def __init__(
        self,
        access_token: str | None,
        base_url: str = "https://api.mapbox.com/search/geocode/v6",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        if not access_token:
            logger.warning("MAPBOX_ACCESS_TOKEN is not set, addresses will not be geocoded")

    @classmethod
    def from_settings(cls) -> "MapboxGeocoder":
        return cls(settings.mapbox_access_token, settings.mapbox_base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def lookup(self, address: Address) -> tuple[str, str] | None:
        """Return (latitude, longitude) as strings, or None."""
        if not self.access_token:
            return None
        query = ", ".join(
            p for p in (
                address.address_line1,
                address.address_line2,
                address.city,
                address.state,
                address.postal_code,
                address.country or "India",
            ) if p
        )
        params = {"q": query, "access_token": self.access_token, "limit": 1}
        if address.country in ("India", None, ""):
            params["country"] = "in"
        try:
            resp = await self._client.get(f"{self.base_url}/forward", params=params)
            resp.raise_for_status()
            features = resp.json().get("features") or []
            if not features:
                logger.info("No geocoding results for %r", query)
                return None
            longitude, latitude = features[0]["geometry"]["coordinates"][:2]
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geocoding failed for %r: %s", query, e)
            return None
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("Unexpected geocoding response for %r: %r", query, e)
            return None
        return str(latitude), str(longitude)

    async def geocode(self, address: Address) -> Address:
        """Return a copy of address with coordinates and geocoding status filled in."""
        coords = await self.lookup(address)
        if coords is None:
            return address.model_copy(update={
                "geocoding_status": GeocodingStatus.FAILED,
                "geocoding_error": "Unable to geocode address",
            })
        latitude, longitude = coords
        return address.model_copy(update={
            "latitude": latitude,
            "longitude": longitude,
            "geocoding_status": GeocodingStatus.SUCCESS,
            "geocoding_error": None,
        })
