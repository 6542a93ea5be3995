"""Places API client and response parsing."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

from . import config
from .errors import NotFound
from .http import HttpClient, RequestMetrics
from .records import EntitySummary, RichDetails

_PRICE_LEVELS = {
    "PRICE_LEVEL_FREE": 0,
    "PRICE_LEVEL_INEXPENSIVE": 1,
    "PRICE_LEVEL_MODERATE": 2,
    "PRICE_LEVEL_EXPENSIVE": 3,
    "PRICE_LEVEL_VERY_EXPENSIVE": 4,
}


class PlacesProvider(Protocol):
    def search_nearby(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        category: Optional[str] = None,
        keyword: Optional[str] = None,
    ) -> List[Dict[str, Any]]: ...

    def fetch_details(self, place_id: str) -> Dict[str, Any]: ...


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        metrics: Optional[RequestMetrics] = None,
        search_field_mask: str = config.PLACES_SEARCH_FIELD_MASK,
        details_field_mask: str = config.PLACES_DETAILS_FIELD_MASK,
        language: str = config.PLACES_LANGUAGE,
    ) -> None:
        self.http = http_client
        self.metrics = metrics
        self.search_field_mask = search_field_mask
        self.details_field_mask = details_field_mask
        self.language = language

    def search_nearby(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        category: Optional[str] = None,
        keyword: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if keyword:
            url = config.PLACES_TEXT_SEARCH_URL
            body = build_text_search_body(keyword, lat, lng, radius_m, category)
        else:
            url = config.PLACES_NEARBY_SEARCH_URL
            body = build_nearby_search_body(lat, lng, radius_m, category)
        if self.metrics is not None:
            self.metrics.inc_network("search")
        response = self.http.post_json(url, body, self.search_field_mask)
        return [p for p in (response.get("places") or []) if place_identity(p)]

    def fetch_details(self, place_id: str) -> Dict[str, Any]:
        if not place_id:
            raise ValueError("place_id is required")
        if self.metrics is not None:
            self.metrics.inc_network("details")
        try:
            data = self.http.get_json(
                details_url(place_id),
                self.details_field_mask,
                extra_headers={"Accept-Language": self.language},
            )
        except NotFound as exc:
            raise NotFound(place_id) from exc
        if not isinstance(data, dict) or not place_identity(data):
            raise NotFound(place_id)
        return data


def details_url(place_id: str) -> str:
    return config.PLACES_DETAILS_URL_TEMPLATE.format(place_id=quote(place_id, safe=""))


def _circle(lat: float, lng: float, radius_m: int) -> Dict[str, Any]:
    return {
        "circle": {
            "center": {"latitude": lat, "longitude": lng},
            "radius": float(radius_m),
        }
    }


def build_nearby_search_body(
    lat: float, lng: float, radius_m: int, category: Optional[str]
) -> Dict[str, Any]:
    return {
        "includedTypes": [category or config.PLACES_DEFAULT_CATEGORY],
        "locationRestriction": _circle(lat, lng, radius_m),
        "maxResultCount": config.PLACES_MAX_RESULT_COUNT,
    }


def build_text_search_body(
    keyword: str, lat: float, lng: float, radius_m: int, category: Optional[str]
) -> Dict[str, Any]:
    return {
        "textQuery": f"{keyword} {category or config.PLACES_DEFAULT_CATEGORY}".strip(),
        "locationBias": _circle(lat, lng, radius_m),
        "pageSize": config.PLACES_MAX_RESULT_COUNT,
    }


# Adapter/mapper for Places response fields

def place_identity(p: Dict[str, Any]) -> Optional[str]:
    return p.get("id") or p.get("placeId") or p.get("place_id")


def map_price_level(level: Any) -> Optional[int]:
    if level is None or level == "":
        return None
    if isinstance(level, int):
        return level
    return _PRICE_LEVELS.get(str(level))


def parse_summary(p: Dict[str, Any]) -> EntitySummary:
    display = p.get("displayName")
    if isinstance(display, dict):
        name = display.get("text") or display.get("value")
    else:
        name = display
    location = p.get("location") or p.get("latLng") or {}
    lat = location.get("latitude", location.get("lat"))
    lng = location.get("longitude", location.get("lng"))
    user_rating_count = p.get("userRatingCount") or p.get("user_ratings_total")
    hours = p.get("regularOpeningHours") or p.get("currentOpeningHours")
    opening_hours = None
    if isinstance(hours, dict):
        opening_hours = {
            "open_now": bool(hours.get("openNow", False)),
            "weekday_text": list(hours.get("weekdayDescriptions") or []),
        }
    photos = [ph.get("name") for ph in (p.get("photos") or []) if isinstance(ph, dict) and ph.get("name")]
    return EntitySummary(
        name=name,
        lat=float(lat) if lat is not None else None,
        lng=float(lng) if lng is not None else None,
        address=p.get("formattedAddress") or p.get("shortFormattedAddress"),
        types=list(p.get("types") or []),
        rating=p.get("rating"),
        user_rating_count=int(user_rating_count) if user_rating_count is not None else None,
        price_level=map_price_level(p.get("priceLevel")),
        business_status=p.get("businessStatus") or p.get("business_status"),
        opening_hours=opening_hours,
        photos=photos,
    )


def parse_reviews(p: Dict[str, Any]) -> List[Dict[str, Any]]:
    reviews: List[Dict[str, Any]] = []
    for r in p.get("reviews") or []:
        if not isinstance(r, dict):
            continue
        author = r.get("authorAttribution") or {}
        text = r.get("text")
        if isinstance(text, dict):
            text = text.get("text")
        reviews.append(
            {
                "author_name": author.get("displayName") or "Anonymous",
                "rating": r.get("rating"),
                "text": text or "",
                "relative_time_description": r.get("relativePublishTimeDescription"),
                "publish_time": r.get("publishTime"),
            }
        )
    return reviews


def parse_rich(p: Dict[str, Any]) -> RichDetails:
    hours = p.get("regularOpeningHours")
    schedule = None
    if isinstance(hours, dict) and (hours.get("periods") or hours.get("weekdayDescriptions")):
        schedule = {
            "periods": list(hours.get("periods") or []),
            "weekday_text": list(hours.get("weekdayDescriptions") or []),
        }
    editorial = p.get("editorialSummary")
    if isinstance(editorial, dict):
        editorial = editorial.get("text")
    return RichDetails(
        reviews=parse_reviews(p),
        opening_hours_schedule=schedule,
        editorial_summary=editorial or None,
        website=p.get("websiteUri"),
        phone=p.get("nationalPhoneNumber") or p.get("internationalPhoneNumber"),
    )
