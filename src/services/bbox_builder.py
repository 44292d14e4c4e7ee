from __future__ import annotations

import math
from typing import Tuple

# matches the sphere used by utils.haversine_meters
METERS_PER_DEGREE = 2 * math.pi * 6371000.0 / 360.0
# small slack so the box always contains the exact distance circle
BBOX_SLACK = 1.01


def expand_bbox_from_center(lon: float, lat: float, meters: float) -> Tuple[float, float, float, float]:
    """Create a rectangular bbox around (lon,lat) by ±meters in both axes.

    Coarse store-side prefilter only; callers still apply an exact distance check.
    Returns (min_lon, min_lat, max_lon, max_lat)
    """
    meters = max(meters, 0.0) * BBOX_SLACK
    dlat = meters / METERS_PER_DEGREE
    cos_lat = math.cos(math.radians(lat))
    # near the poles the longitude span degenerates; take the whole band
    dlon = meters / (METERS_PER_DEGREE * cos_lat) if abs(cos_lat) > 1e-6 else 180.0
    min_lon = max(lon - dlon, -180.0)
    max_lon = min(lon + dlon, 180.0)
    min_lat = max(lat - dlat, -90.0)
    max_lat = min(lat + dlat, 90.0)
    return (min_lon, min_lat, max_lon, max_lat)
