import math

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def straight_line_route(
    lat1: float, lon1: float, lat2: float, lon2: float, *, road_factor: float = 1.4, speed_kmph: float = 25.0
) -> tuple[float, float]:
    """Approximate road distance (km) and duration (min) from the straight-line distance."""
    dist = haversine_km(lat1, lon1, lat2, lon2) * road_factor
    minutes = dist / max(1e-3, speed_kmph) * 60.0
    return dist, minutes
