"""Geo math: coordinates, haversine distance and small-offset projection."""

import math
from dataclasses import dataclass

R = 6_371_000.0  # mean Earth radius in meters


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def __post_init__(self):
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"latitude out of range: {self.lat}")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"longitude out of range: {self.lon}")


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two coordinates (haversine formula)."""
    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlam = math.radians(b.lon - a.lon)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return 2 * R * math.asin(math.sqrt(min(1.0, h)))


def project_coordinate(origin: Coordinate, distance_m: float, bearing_rad: float) -> Coordinate:
    """Shift origin by distance_m along bearing_rad (0 = north, pi/2 = east).

    Equirectangular approximation, only valid for distances that are small
    relative to the Earth's radius.
    """
    d = distance_m / R
    new_lat = origin.lat + math.degrees(d * math.cos(bearing_rad))
    new_lon = origin.lon + math.degrees(d * math.sin(bearing_rad) / math.cos(math.radians(origin.lat)))
    return Coordinate(new_lat, new_lon)
