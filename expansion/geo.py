"""
Small geodesy helpers shared by the aggregator, generator and loaders.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Optional

import numpy as np

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE_LAT = 111000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_many(lat: float, lng: float, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
    """Vectorized distance from one point to many points, in meters."""
    lats = np.radians(np.asarray(lats, dtype=float))
    lngs = np.radians(np.asarray(lngs, dtype=float))
    phi = math.radians(lat)
    dphi = lats - phi
    dlmb = lngs - math.radians(lng)
    a = np.sin(dphi / 2) ** 2 + math.cos(phi) * np.cos(lats) * np.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def is_valid_coordinate(lat, lng) -> bool:
    """True when lat/lng are finite numbers inside WGS84 ranges."""
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


@dataclass(frozen=True)
class BoundingBox:
    """
    Geographic bounding box for a region.

    All coordinates are in decimal degrees (WGS84).
    """
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    @property
    def center_latitude(self) -> float:
        return (self.min_latitude + self.max_latitude) / 2

    @property
    def center_longitude(self) -> float:
        return (self.min_longitude + self.max_longitude) / 2

    def contains(self, lat: float, lng: float) -> bool:
        """Check if a point is inside this bounding box."""
        return (self.min_latitude <= lat <= self.max_latitude and
                self.min_longitude <= lng <= self.max_longitude)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["BoundingBox"]:
        if not data:
            return None
        return cls(**data)
