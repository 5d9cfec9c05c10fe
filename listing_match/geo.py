from __future__ import annotations
import math
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .models import Coordinate

EARTH_RADIUS_M = 6371000.0

T = TypeVar("T")


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi/2)**2 + math.cos(phi1)*math.cos(phi2)*math.sin(dl/2)**2
    # rounding can push a marginally past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))
    return EARTH_RADIUS_M * c


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two coordinates."""
    return haversine_m(a.lat, a.lng, b.lat, b.lng)


def point_in_polygon(p: Coordinate, polygon: Sequence[Coordinate]) -> bool:
    """Ray casting on (lng, lat) as planar x/y.

    Polygons with fewer than three vertices contain nothing. Points exactly on
    an edge may land on either side.
    """
    if polygon is None or len(polygon) < 3:
        return False
    x, y = p.lng, p.lat
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i].lng, polygon[i].lat
        xj, yj = polygon[j].lng, polygon[j].lat
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def bounding_box(points: Iterable[Coordinate]) -> Optional[Tuple[Coordinate, Coordinate]]:
    """(south-west, north-east) corners, or None for no points."""
    pts = list(points)
    if not pts:
        return None
    lats = [p.lat for p in pts]
    lngs = [p.lng for p in pts]
    return Coordinate(min(lats), min(lngs)), Coordinate(max(lats), max(lngs))


def centroid(points: Iterable[Coordinate]) -> Optional[Coordinate]:
    # arithmetic mean; fine for the city-scale clusters this is used on
    pts = list(points)
    if not pts:
        return None
    return Coordinate(sum(p.lat for p in pts) / len(pts), sum(p.lng for p in pts) / len(pts))


def within_radius(center: Coordinate, items: Iterable[T], radius_m: float,
                  key: Callable[[T], Coordinate]) -> List[T]:
    return [it for it in items if distance_meters(center, key(it)) <= radius_m]
