"""Google Places (New) adapter: text search and place details."""

import math
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from concierge.logging_config import get_logger
from concierge.models import Coordinates

logger = get_logger(__name__)

PLACES_BASE_URL = "https://places.googleapis.com/v1"

EARTH_RADIUS_MILES = 3959

SEARCH_FIELD_MASK = ",".join([
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.location",
    "places.rating",
    "places.userRatingCount",
    "places.businessStatus",
    "places.googleMapsUri",
    "nextPageToken",
])

DETAILS_FIELD_MASK = ",".join([
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "rating",
    "userRatingCount",
    "businessStatus",
    "nationalPhoneNumber",
    "internationalPhoneNumber",
    "regularOpeningHours",
    "currentOpeningHours",
    "websiteUri",
])

_DAY_ABBREVIATIONS = {
    "Monday": "Mon",
    "Tuesday": "Tue",
    "Wednesday": "Wed",
    "Thursday": "Thu",
    "Friday": "Fri",
    "Saturday": "Sat",
    "Sunday": "Sun",
}


class PlaceSummary(BaseModel):
    place_id: str
    name: str = ""
    address: str = ""
    rating: Optional[float] = None
    review_count: Optional[int] = None
    location: Optional[Coordinates] = None
    business_status: Optional[str] = None


class PlaceDetails(PlaceSummary):
    phone: Optional[str] = None
    international_phone: Optional[str] = None
    open_now: Optional[bool] = None
    weekday_text: list[str] = Field(default_factory=list)
    website: Optional[str] = None


def parse_opening_hours(weekday_descriptions: list[str]) -> list[str]:
    """Abbreviate day names and normalize dashes, e.g. 'Mon: 8:00 AM - 6:00 PM'."""
    formatted = []
    for desc in weekday_descriptions or []:
        for full, abbr in _DAY_ABBREVIATIONS.items():
            desc = desc.replace(full, abbr)
        formatted.append(desc.replace("–", "-"))
    return formatted


def calculate_distance(origin: Coordinates, target: Coordinates) -> float:
    """Great-circle (haversine) distance in miles, rounded to 0.1."""
    d_lat = math.radians(target.latitude - origin.latitude)
    d_lon = math.radians(target.longitude - origin.longitude)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(origin.latitude))
        * math.cos(math.radians(target.latitude))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_MILES * c, 1)


def _location(place: dict) -> Optional[Coordinates]:
    loc = place.get("location")
    if not loc:
        return None
    return Coordinates(latitude=loc.get("latitude", 0.0), longitude=loc.get("longitude", 0.0))


class PlacesClient:
    """Async Google Places client. One API key per instance."""

    def __init__(
        self,
        api_key: str,
        base_url: str = PLACES_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self, field_mask: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"X-Goog-Api-Key": self.api_key, "X-Goog-FieldMask": field_mask},
            transport=self._transport,
        )

    async def text_search(
        self,
        query: str,
        coordinates: Optional[Coordinates] = None,
        radius_meters: float = 50000,
        max_results: int = 20,
    ) -> list[PlaceSummary]:
        """Free-text place search. Raises httpx.HTTPError on failure."""
        body: dict = {"textQuery": query, "maxResultCount": max_results}
        if coordinates:
            body["locationBias"] = {
                "circle": {
                    "center": {"latitude": coordinates.latitude, "longitude": coordinates.longitude},
                    "radius": radius_meters,
                }
            }

        async with self._client(SEARCH_FIELD_MASK) as client:
            resp = await client.post("/places:searchText", json=body)
            resp.raise_for_status()
            data = resp.json()

        return [
            PlaceSummary(
                place_id=place["id"],
                name=(place.get("displayName") or {}).get("text", ""),
                address=place.get("formattedAddress", ""),
                rating=place.get("rating"),
                review_count=place.get("userRatingCount"),
                location=_location(place),
                business_status=place.get("businessStatus"),
            )
            for place in data.get("places", [])
            if place.get("id")
        ]

    async def get_details(self, place_id: str) -> Optional[PlaceDetails]:
        """Look up one place. Returns None on any lookup failure."""
        try:
            async with self._client(DETAILS_FIELD_MASK) as client:
                resp = await client.get(f"/places/{place_id}")
                resp.raise_for_status()
                place = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("place_details_failed", place_id=place_id, error=str(e))
            return None

        hours = place.get("currentOpeningHours") or place.get("regularOpeningHours") or {}
        return PlaceDetails(
            place_id=place.get("id", place_id),
            name=(place.get("displayName") or {}).get("text", ""),
            address=place.get("formattedAddress", ""),
            rating=place.get("rating"),
            review_count=place.get("userRatingCount"),
            location=_location(place),
            business_status=place.get("businessStatus"),
            phone=place.get("nationalPhoneNumber"),
            international_phone=place.get("internationalPhoneNumber"),
            open_now=hours.get("openNow"),
            weekday_text=parse_opening_hours(hours.get("weekdayDescriptions", [])),
            website=place.get("websiteUri"),
        )
