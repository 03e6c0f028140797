from __future__ import annotations

import math

# Flat-earth approximation used for bounding boxes and grid lattices.
KM_PER_DEGREE_LAT = 111.0


def degree_offsets(lat: float, km: float) -> tuple[float, float]:
    """Return (lat_degrees, lng_degrees) spanned by `km` around latitude `lat`."""
    cos_lat = max(abs(math.cos(math.radians(lat))), 1e-9)
    return km / KM_PER_DEGREE_LAT, km / (KM_PER_DEGREE_LAT * cos_lat)


def bounding_box(lat: float, lng: float, radius_km: float) -> tuple[float, float, float, float]:
    """(min_lng, min_lat, max_lng, max_lat) around a point."""
    lat_r, lng_r = degree_offsets(lat, radius_km)
    return lng - lng_r, lat - lat_r, lng + lng_r, lat + lat_r
