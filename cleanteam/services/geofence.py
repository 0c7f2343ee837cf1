"""
Geofence classification service.
Uses Haversine formula to calculate distance between points.
"""
import math
from typing import Optional

from ..config import settings
from ..schemas.tasks import LiveStatus, PositionSample, PropertySnapshot

# mean Earth radius, 6371 km
EARTH_RADIUS_M = 6371000


def haversine_distance(
    lat1: float, lon1: float, lat2: float, lon2: float, radius_m: float = EARTH_RADIUS_M
) -> float:
    """
    Great-circle distance between two WGS84 points, on a sphere of
    6371 km unless another radius is given.

    Returns:
        Distance in the unit of `radius_m` (meters by default)
    """
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lon2 - lon1)
    h = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    return 2 * radius_m * math.asin(min(1.0, math.sqrt(h)))


def distance_to_property(prop: Optional[PropertySnapshot], sample: Optional[PositionSample]) -> Optional[float]:
    """Distance in meters, or None when either side has no coordinates."""
    if prop is None or not prop.has_coordinates or sample is None:
        return None
    return haversine_distance(prop.lat, prop.lng, sample.latitude, sample.longitude)


def classify_position(distance_m: float, radius_m: Optional[float] = None) -> LiveStatus:
    """On-site strictly inside the radius, away on or beyond it."""
    if radius_m is None:
        radius_m = settings.geofence_radius_m
    return LiveStatus.on_site if distance_m < radius_m else LiveStatus.away


def is_deviation(distance_m: Optional[float], threshold_m: Optional[float] = None) -> bool:
    if distance_m is None:
        return False
    if threshold_m is None:
        threshold_m = settings.worklog_deviation_m
    return distance_m > threshold_m
