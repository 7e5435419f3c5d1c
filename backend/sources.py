"""Place sources: the capability the scanner queries for raw places.

- GooglePlacesSource talks to the Google Places API (legacy Nearby Search).
  One request per category, `type=` or `keyword=` from config.CATEGORY_QUERIES.
- MockPlaceSource returns a fixed, reproducible layout around the origin for
  demos and local development.

Sources are not trusted to pre-filter: they may return places outside the
radius, closed places or places without coordinates. The scanner handles
all of that.
"""

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Protocol

import httpx

import config
from geo import Coordinate, project_coordinate

logger = logging.getLogger(__name__)

NEARBY_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"


@dataclass(frozen=True)
class RawPlace:
    id: str
    name: str
    coordinate: Coordinate | None
    tags: tuple[str, ...]
    closes_at: time | None = None
    open_now: bool | None = None


class PlaceSourceError(Exception):
    """A query against a place source failed. Always recoverable for the scanner."""


class TransientSourceError(PlaceSourceError):
    """Network failure, timeout or 5xx from the provider."""


class QuotaExceededError(PlaceSourceError):
    """Provider quota or rate limit still exhausted after retries."""


class PlaceSource(Protocol):
    name: str

    def query(self, origin: Coordinate, radius_m: float, categories: set[str]) -> AsyncIterator[RawPlace]:
        ...


# ---------- Google Places ----------

def _parse_coordinate(result: dict) -> Coordinate | None:
    location = result.get("geometry", {}).get("location", {})
    lat, lon = location.get("lat"), location.get("lng")
    if lat is None or lon is None:
        return None
    try:
        return Coordinate(float(lat), float(lon))
    except (TypeError, ValueError):
        return None


def _parse_closing_time(opening_hours: dict, now: datetime, utc_offset_min: int | None = None) -> time | None:
    """Today's closing time from Google `periods` (day 0 = Sunday, time 'HHMM').

    Periods are in the place's local time. With the place's `utc_offset`
    (minutes) the result is converted to the zone of `now`; without it the
    place is assumed to share that zone.
    """
    shift = timedelta(0)
    if utc_offset_min is not None:
        shift = timedelta(minutes=utc_offset_min) - (now.astimezone().utcoffset() or timedelta(0))
    place_now = now + shift
    google_day = (place_now.weekday() + 1) % 7
    for period in opening_hours.get("periods", []):
        close = period.get("close")
        if not close or close.get("day") != google_day:
            continue
        raw = str(close.get("time", ""))
        if len(raw) == 4 and raw.isdigit():
            hour, minute = int(raw[:2]), int(raw[2:])
            if hour < 24 and minute < 60:
                close_local = datetime.combine(place_now.date(), time(hour, minute))
                return (close_local - shift).time()
    return None


def _parse_place(result: dict, now: datetime, inject_type: str | None = None) -> RawPlace:
    types = list(result.get("types", []))
    if inject_type and inject_type not in types:
        types = [inject_type] + types
    opening_hours = result.get("opening_hours") or {}
    return RawPlace(
        id=result.get("place_id", ""),
        name=result.get("name", ""),
        coordinate=_parse_coordinate(result),
        tags=tuple(types),
        closes_at=_parse_closing_time(opening_hours, now, result.get("utc_offset")),
        open_now=opening_hours.get("open_now"),
    )


class GooglePlacesSource:
    """Google Places legacy Nearby Search.

    Closing times are returned in the zone of `clock` (naive local time by
    default). Results carrying `utc_offset` are converted from the place's
    zone; results without it are assumed to be in the clock's zone.
    """

    name = "google"

    def __init__(
        self,
        api_key: str = config.GOOGLE_MAPS_API_KEY,
        client: httpx.AsyncClient | None = None,
        retry_max: int = config.SOURCE_RETRY_MAX,
        backoff_s: float = 1.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=config.SOURCE_HTTP_TIMEOUT_S)
        self._owns_client = client is None
        self.retry_max = retry_max
        self.backoff_s = backoff_s
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def query(self, origin: Coordinate, radius_m: float, categories: set[str]) -> AsyncIterator[RawPlace]:
        for category in sorted(categories):
            for place in await self._fetch_category(origin, radius_m, category):
                yield place

    async def _fetch_category(self, origin: Coordinate, radius_m: float, category: str) -> list[RawPlace]:
        search = config.CATEGORY_QUERIES.get(category, {"keyword": category.replace("_", " ")})
        params = {
            "key": self.api_key,
            "location": f"{origin.lat},{origin.lon}",
            "radius": radius_m,
            **search,
        }
        inject_type = category if "keyword" in search else None

        retries = 0
        while True:
            try:
                resp = await self._client.get(NEARBY_SEARCH_URL, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if retries >= self.retry_max:
                    raise TransientSourceError(f"{category}: {exc!r}") from exc
                logger.warning("Network error for %s (%r), retrying", category, exc)
                retries += 1
                await asyncio.sleep(self.backoff_s)
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                if retries >= self.retry_max:
                    raise TransientSourceError(f"{category}: HTTP {resp.status_code}")
                logger.warning("HTTP %d for %s, retrying", resp.status_code, category)
                retries += 1
                await asyncio.sleep(self.backoff_s)
                continue
            if resp.status_code != 200:
                raise PlaceSourceError(f"{category}: HTTP {resp.status_code}")

            data = resp.json()
            status = data.get("status", "")
            if status == "OK":
                now = self._clock()
                return [_parse_place(p, now, inject_type) for p in data.get("results", [])]
            elif status == "ZERO_RESULTS":
                return []
            elif status == "OVER_QUERY_LIMIT":
                if retries >= self.retry_max:
                    raise QuotaExceededError(f"{category}: {data.get('error_message', status)}")
                wait = self.backoff_s * 2 ** retries
                logger.warning("Rate limited on %s, waiting %.1fs", category, wait)
                await asyncio.sleep(wait)
                retries += 1
            else:
                raise PlaceSourceError(f"{category}: API status={status} {data.get('error_message', '')}".rstrip())


# ---------- Mock ----------

# (category, name, distance_m, bearing_deg, closes_in_minutes)
# closes_in_minutes: None = no hours info, negative = already closed
MOCK_PLACES = [
    ("restaurant", "Bistro Central", 120, 10, 240),
    ("restaurant", "Harbor Grill", 640, 200, 45),
    ("restaurant", "Spice Kitchen", 1450, 95, 180),
    ("restaurant", "The Good Fork", 2100, 300, 120),
    ("cafe", "Morning Brew", 80, 130, 60),
    ("cafe", "Blue Bottle Coffee", 910, 45, 61),
    ("bakery", "Golden Crust", 350, 270, -15),
    ("bakery", "Daily Bread", 1020, 160, 300),
    ("gas_station", "Shell Station", 500, 80, 600),
    ("gas_station", "Chevron", 1300, 330, None),
    ("pharmacy", "Walgreens", 260, 15, 30),
    ("pharmacy", "Local Pharmacy", 1790, 110, 200),
    ("convenience_store", "7-Eleven", 430, 240, 900),
    ("convenience_store", "Corner Store", 760, 350, 20),
    ("grocery", "Trader Joe's", 1180, 60, 150),
    ("grocery", "Local Market", 220, 185, 90),
    ("food_truck", "Taco Truck", 300, 300, 75),
    ("food_truck", "Noodle Cart", 980, 20, None),
]

# Extra tags for places that carry more than one venue type
MOCK_EXTRA_TAGS = {
    "Shell Station": ("convenience_store", "restaurant"),
    "Walgreens": ("convenience_store",),
    "Local Market": ("restaurant",),
}


class MockPlaceSource:
    name = "mock"

    def __init__(self, delay_s: float = 0.0, clock: Callable[[], datetime] = datetime.now):
        self.delay_s = delay_s
        self._clock = clock

    async def query(self, origin: Coordinate, radius_m: float, categories: set[str]) -> AsyncIterator[RawPlace]:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        now = self._clock()
        for category, name, distance, bearing, closes_in in MOCK_PLACES:
            if category not in categories:
                continue
            closes_at = None
            open_now = None
            if closes_in is not None:
                closes_at = (now + timedelta(minutes=closes_in)).time().replace(second=0, microsecond=0)
                open_now = closes_in > 0
            yield RawPlace(
                id=f"mock_{name.lower().replace(' ', '_')}",
                name=name,
                coordinate=project_coordinate(origin, distance, math.radians(bearing)),
                tags=(category,) + MOCK_EXTRA_TAGS.get(name, ()),
                closes_at=closes_at,
                open_now=open_now,
            )
        if "restaurant" in categories:
            # provider rows without geometry do happen
            yield RawPlace(id="mock_unplaced_deli", name="Unplaced Deli", coordinate=None, tags=("deli",))


def build_sources() -> list[PlaceSource]:
    names = config.PLACE_SOURCES or (["google"] if config.GOOGLE_MAPS_API_KEY else ["mock"])
    sources: list[PlaceSource] = []
    for name in names:
        if name == "google":
            sources.append(GooglePlacesSource())
        elif name == "mock":
            sources.append(MockPlaceSource())
        else:
            raise ValueError(f"Unknown place source: {name}")
    logger.info("Place sources: %s", ", ".join(s.name for s in sources))
    return sources
