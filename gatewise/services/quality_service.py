"""
GPS Quality Service - scores scan locations by reported accuracy

Every check-in is stamped with a quality weight at ingestion:
- <= 10 m  -> 1.0
- <= 20 m  -> 0.9
- <= 30 m  -> 0.8
- <= 50 m  -> 0.6
- > 50 m   -> 0.4
- missing or invalid location -> 0.0

Scans below the session's minimum weight never reach clustering or centroid
computation, but they are kept in the store.
"""
import math
from typing import Optional

EARTH_RADIUS_M = 6371000.0

# (max accuracy in meters, weight), checked in order
ACCURACY_BANDS = [
    (10.0, 1.0),
    (20.0, 0.9),
    (30.0, 0.8),
    (50.0, 0.6),
]
FALLBACK_WEIGHT = 0.4

# Beyond this the reading is treated as no fix at all
MAX_REPORTED_ACCURACY_M = 10000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters"""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def is_valid_location(
    latitude: Optional[float],
    longitude: Optional[float],
    accuracy_m: Optional[float]
) -> bool:
    """True when the fix is usable: in range, not null island, sane accuracy"""
    if latitude is None or longitude is None or accuracy_m is None:
        return False
    if any(math.isnan(v) for v in (latitude, longitude, accuracy_m)):
        return False
    if not (-90.0 <= latitude <= 90.0) or not (-180.0 <= longitude <= 180.0):
        return False
    if latitude == 0.0 and longitude == 0.0:
        return False
    if accuracy_m <= 0 or accuracy_m > MAX_REPORTED_ACCURACY_M:
        return False
    return True


def quality_weight(
    latitude: Optional[float],
    longitude: Optional[float],
    accuracy_m: Optional[float]
) -> float:
    """Map a scan's location fix to its clustering weight"""
    if not is_valid_location(latitude, longitude, accuracy_m):
        return 0.0

    for max_accuracy, weight in ACCURACY_BANDS:
        if accuracy_m <= max_accuracy:
            return weight
    return FALLBACK_WEIGHT


def accuracy_label(avg_accuracy_m: Optional[float]) -> str:
    """Human label for a session's average GPS accuracy"""
    if avg_accuracy_m is None:
        return "unknown"
    if avg_accuracy_m <= 10:
        return "excellent"
    if avg_accuracy_m <= 20:
        return "good"
    if avg_accuracy_m <= 50:
        return "fair"
    return "poor"
