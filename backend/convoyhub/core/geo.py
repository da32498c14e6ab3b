"""Geographic helpers for proximity search."""
import math
from typing import NamedTuple

KM_PER_DEGREE_LAT = 111.0
EARTH_RADIUS_KM = 6371.0


class BoundingBox(NamedTuple):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def bounding_box(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """Box approximating a circle of ``radius_km`` around (lat, lng).

    Longitude degrees shrink with cos(latitude), so the longitude half-width
    is widened accordingly. Corners of the box lie outside the circle; callers
    that need exact distances should post-filter with :func:`haversine_km`.
    """
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    lng_delta = radius_km / (KM_PER_DEGREE_LAT * math.cos(lat * math.pi / 180))
    return BoundingBox(
        min_lat=lat - lat_delta,
        max_lat=lat + lat_delta,
        min_lng=lng - abs(lng_delta),
        max_lng=lng + abs(lng_delta),
    )


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))
