import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

EARTH_RADIUS_KM = 6371
DEFAULT_SPEED_KMH = 40


def haversine(lat1, lon1, lat2, lon2):
    """Great-circle distance in km."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat/2)**2 + math.cos(math.radians(lat1)) * \
        math.cos(math.radians(lat2)) * math.sin(dlon/2)**2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def calculate_eta(distance_m: float, speed_kmh: float = DEFAULT_SPEED_KMH,
                  now: Optional[datetime] = None) -> datetime:
    hours = distance_m / 1000 / speed_kmh
    return (now or datetime.now()) + timedelta(hours=hours)


def lerp_point(a: Sequence[float], b: Sequence[float], t: float) -> List[float]:
    """Point a fraction t of the way from a to b (both [lng, lat])."""
    return [a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t]


def path_lengths(coordinates: Sequence[Sequence[float]]) -> List[float]:
    """Cumulative km along a [lng, lat] polyline, starting at 0."""
    totals = [0.0]
    for prev, cur in zip(coordinates, coordinates[1:]):
        totals.append(totals[-1] + haversine(prev[1], prev[0], cur[1], cur[0]))
    return totals
