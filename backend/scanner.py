"""Scanner: one fan-out / filter / classify / sort cycle around an observer.

Each (source, category) pair is queried concurrently. Every sub-task builds
its own list and results are merged only after all of them have finished,
in declaration order, so the output never depends on which query returned
first. Failed or timed-out queries are dropped from the merge; the scan
only fails when none of the queries succeeded.
"""

import asyncio
import logging
import time as time_mod
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

import config
from geo import Coordinate, distance_meters
from lines import Line, classify
from sources import PlaceSource, PlaceSourceError, RawPlace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Station:
    id: str
    name: str
    distance_m: float
    line: Line
    line_color: str
    open_until: str | None
    closing_soon: bool
    coordinate: Coordinate


@dataclass(frozen=True)
class ScanResult:
    origin: Coordinate
    radius_m: float
    stations: tuple[Station, ...]
    failed_queries: tuple[str, ...] = ()
    dropped_malformed: int = 0
    scanned_at: datetime = field(default_factory=datetime.now)

    def __iter__(self) -> Iterator[Station]:
        return iter(self.stations)

    def __len__(self) -> int:
        return len(self.stations)


class SourceUnavailableError(Exception):
    """Every query of a scan failed: the search itself is broken, not empty."""

    def __init__(self, failures: Sequence[str]):
        self.failures = list(failures)
        super().__init__(f"All {len(self.failures)} place queries failed: {'; '.join(self.failures)}")


def cap_radius(radius_m: float) -> float:
    if radius_m <= 0:
        raise ValueError(f"radius must be positive, got {radius_m}")
    return min(radius_m, config.MAX_RADIUS_M)


def minutes_until_close(closes_at: time, now: datetime, open_now: bool | None = None) -> float:
    """Minutes from now until closes_at today.

    When the provider says the place is open and the time of day has already
    passed, it closes after midnight.
    """
    close_dt = datetime.combine(now.date(), closes_at)
    if close_dt <= now and open_now is True:
        close_dt += timedelta(days=1)
    return (close_dt - now).total_seconds() / 60.0


def format_closing_time(closes_at: time) -> str:
    """time(21, 0) -> '9:00 PM', independent of the process locale."""
    hour = closes_at.hour % 12 or 12
    suffix = "AM" if closes_at.hour < 12 else "PM"
    return f"{hour}:{closes_at.minute:02d} {suffix}"


def _station_id(place: RawPlace) -> str:
    if place.id:
        return place.id
    return f"{place.name}_{place.coordinate.lat}_{place.coordinate.lon}"


class ScanCoordinator:
    def __init__(
        self,
        sources: PlaceSource | Sequence[PlaceSource],
        categories: Sequence[str] = tuple(config.SCAN_CATEGORIES),
        query_timeout_s: float = config.QUERY_TIMEOUT_S,
        assume_open_when_unknown: bool = config.ASSUME_OPEN_WHEN_UNKNOWN,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if hasattr(sources, "query"):
            sources = [sources]
        self.sources = list(sources)
        if not self.sources:
            raise ValueError("At least one place source is required")
        self.categories = list(categories)
        self.query_timeout_s = query_timeout_s
        self.assume_open_when_unknown = assume_open_when_unknown
        self._clock = clock

    async def scan(self, origin: Coordinate, radius_m: float = config.MAX_RADIUS_M) -> ScanResult:
        radius = cap_radius(radius_m)
        queries = [(source, category) for source in self.sources for category in self.categories]
        start = time_mod.monotonic()

        # Cancelling scan() cancels every pending sub-task through gather.
        outcomes = await asyncio.gather(
            *(self._query(source, category, origin, radius) for source, category in queries),
            return_exceptions=True,
        )

        now = self._clock()
        failures: list[str] = []
        seen: set[str] = set()
        stations: list[Station] = []
        dropped_malformed = 0
        for (source, category), outcome in zip(queries, outcomes):
            label = f"{source.name}:{category}"
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                failures.append(f"{label} ({type(outcome).__name__}: {outcome})")
                if isinstance(outcome, (PlaceSourceError, asyncio.TimeoutError)):
                    logger.warning("Query %s failed: %r", label, outcome)
                else:
                    logger.error("Query %s raised unexpectedly", label, exc_info=outcome)
                continue

            for place in outcome:
                if place.coordinate is None:
                    dropped_malformed += 1
                    logger.debug("Dropping %s from %s: no coordinate", place.id or place.name, label)
                    continue
                station = self._to_station(place, category, origin, radius, now)
                if station is None or station.id in seen:
                    continue
                seen.add(station.id)
                stations.append(station)

        if len(failures) == len(queries):
            raise SourceUnavailableError(failures)

        stations.sort(key=lambda s: (s.distance_m, s.id))
        logger.info(
            "Scan at (%.5f, %.5f) r=%.0fm: %d stations, %d/%d queries failed, %d malformed dropped in %.2fs",
            origin.lat, origin.lon, radius, len(stations), len(failures), len(queries),
            dropped_malformed, time_mod.monotonic() - start,
        )
        return ScanResult(
            origin=origin,
            radius_m=radius,
            stations=tuple(stations),
            failed_queries=tuple(failures),
            dropped_malformed=dropped_malformed,
            scanned_at=now,
        )

    async def _query(self, source: PlaceSource, category: str, origin: Coordinate, radius: float) -> list[RawPlace]:
        async def collect() -> list[RawPlace]:
            return [place async for place in source.query(origin, radius, {category})]

        return await asyncio.wait_for(collect(), timeout=self.query_timeout_s)

    def is_open(self, place: RawPlace, now: datetime) -> bool:
        if place.open_now is False:
            return False
        if place.closes_at is not None:
            return minutes_until_close(place.closes_at, now, place.open_now) > 0
        if place.open_now is None:
            return self.assume_open_when_unknown
        return True

    def _to_station(
        self, place: RawPlace, category: str, origin: Coordinate, radius: float, now: datetime,
    ) -> Station | None:
        distance = distance_meters(origin, place.coordinate)
        if distance > radius:
            return None
        if not self.is_open(place, now):
            return None

        tags = place.tags or (category,)
        line = classify(tags[0], tags)

        open_until = None
        closing_soon = False
        if place.closes_at is not None:
            open_until = format_closing_time(place.closes_at)
            closing_soon = 0 < minutes_until_close(place.closes_at, now, place.open_now) <= config.CLOSING_SOON_MINUTES

        return Station(
            id=_station_id(place),
            name=place.name,
            distance_m=distance,
            line=line,
            line_color=line.color,
            open_until=open_until,
            closing_soon=closing_soon,
            coordinate=place.coordinate,
        )
