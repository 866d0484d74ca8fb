"""Geofence and patrol-point proximity checks.

Great-circle (Haversine) distances on a sphere of radius EARTH_RADIUS_M, WGS84
degrees in, meters out. Accurate enough for the tens-to-hundreds of meters a
patrol route spans; no ellipsoidal correction.
"""
import math
import numbers
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from patrolface.errors import InvalidCoordinateError, InvalidRadiusError
from patrolface.settings import DEFAULT_PATROL_RADIUS_M, EARTH_RADIUS_M


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Position(GeoPoint):
    """A GPS fix. ``accuracy`` is the reported horizontal accuracy in meters."""
    accuracy: Optional[float] = None
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class PatrolPoint(GeoPoint):
    id: str = ""
    name: str = ""
    radius_meters: float = DEFAULT_PATROL_RADIUS_M
    order: int = 0
    site_id: Optional[str] = None


@dataclass(frozen=True)
class ProximityResult:
    within_range: bool
    distance_meters: float
    nearest_point: Optional[PatrolPoint]

    def to_dict(self) -> dict:
        return {
            "within_range": self.within_range,
            "distance_meters": self.distance_meters if math.isfinite(self.distance_meters) else None,
            "nearest_point": patrol_point_to_dict(self.nearest_point) if self.nearest_point else None,
        }


@dataclass(frozen=True)
class PatrolCheckIn:
    point: PatrolPoint
    within_radius: bool
    distance_meters: float

    @property
    def distance_from_point(self) -> int:
        return int(round(self.distance_meters))


# ----- validation -----

def validate_point(point: GeoPoint, argument: str = "point") -> GeoPoint:
    lat, lng = point.latitude, point.longitude
    for axis, value, bound in (("latitude", lat, 90.0), ("longitude", lng, 180.0)):
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise InvalidCoordinateError(argument, f"{axis} must be a number (got {value!r})")
        if not math.isfinite(value):
            raise InvalidCoordinateError(argument, f"{axis} must be finite (got {value!r})")
        if abs(value) > bound:
            raise InvalidCoordinateError(argument, f"{axis} {value} outside [-{bound:g}, {bound:g}]")
    return point


def validate_radius(radius_meters: float, argument: str = "radius_meters") -> float:
    if isinstance(radius_meters, bool) or not isinstance(radius_meters, numbers.Real):
        raise InvalidRadiusError(argument, radius_meters)
    if not math.isfinite(radius_meters) or radius_meters < 0:
        raise InvalidRadiusError(argument, radius_meters)
    return float(radius_meters)


# ----- distance / containment -----

def _haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    # rounding can push a just outside [0, 1] for near-antipodal pairs
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(a))


def distance_meters(p1: GeoPoint, p2: GeoPoint) -> float:
    validate_point(p1, "p1")
    validate_point(p2, "p2")
    return _haversine(p1.latitude, p1.longitude, p2.latitude, p2.longitude)


def is_within_geofence(position: GeoPoint, center: GeoPoint, radius_meters: float) -> bool:
    """Inclusive: a position exactly on the boundary is inside."""
    validate_point(position, "position")
    validate_point(center, "center")
    radius = validate_radius(radius_meters)
    return _haversine(position.latitude, position.longitude, center.latitude, center.longitude) <= radius


def nearest_patrol_point(position: GeoPoint, points: Sequence[PatrolPoint]) -> ProximityResult:
    """Nearest point and whether ``position`` is inside that point's own radius.

    Exact distance ties go to the earlier point. No points is a normal
    condition (route not configured) and yields ``nearest_point=None``,
    ``within_range=False``, ``distance_meters=inf``.
    """
    validate_point(position, "position")
    nearest, best = None, math.inf
    for i, p in enumerate(points):
        validate_point(p, f"points[{i}]")
        validate_radius(p.radius_meters, f"points[{i}].radius_meters")
        d = _haversine(position.latitude, position.longitude, p.latitude, p.longitude)
        if d < best:
            nearest, best = p, d
    within = nearest is not None and best <= nearest.radius_meters
    return ProximityResult(within_range=within, distance_meters=best, nearest_point=nearest)


def check_in_at_point(position: GeoPoint, point: PatrolPoint) -> PatrolCheckIn:
    """Check-in against a chosen point; recorded either way, flagged if outside."""
    validate_point(position, "position")
    validate_point(point, "point")
    radius = validate_radius(point.radius_meters, "point.radius_meters")
    d = _haversine(position.latitude, position.longitude, point.latitude, point.longitude)
    return PatrolCheckIn(point=point, within_radius=d <= radius, distance_meters=d)


def rank_patrol_points(
    position: GeoPoint,
    points: Sequence[PatrolPoint],
    completed: Iterable[str] = (),
) -> List[Tuple[PatrolPoint, float]]:
    """Incomplete points first, then nearest first. Stable for equal keys."""
    validate_point(position, "position")
    done = set(completed)
    ranked = []
    for i, p in enumerate(points):
        validate_point(p, f"points[{i}]")
        ranked.append((p, _haversine(position.latitude, position.longitude, p.latitude, p.longitude)))
    ranked.sort(key=lambda item: (item[0].id in done, item[1]))
    return ranked


# ----- (de)serialization of stored route checkpoints -----

def _pick(data: Mapping, *keys, default=None):
    for k in keys:
        if k in data and data[k] is not None:
            return data[k]
    return default


def patrol_point_from_mapping(data: Mapping, site_id: Optional[str] = None) -> PatrolPoint:
    """Build a PatrolPoint from a stored checkpoint (camelCase or snake_case keys)."""
    try:
        lat = float(_pick(data, "latitude", "lat"))
        lng = float(_pick(data, "longitude", "lng", "lon"))
    except (TypeError, ValueError) as e:
        raise InvalidCoordinateError("checkpoint", f"missing or non-numeric latitude/longitude in {dict(data)!r}") from e
    raw_radius = _pick(data, "radius_meters", "radiusMeters", default=0)
    try:
        radius = float(raw_radius)
    except (TypeError, ValueError) as e:
        raise InvalidRadiusError("checkpoint.radius_meters", raw_radius) from e
    raw_order = _pick(data, "order", default=0)
    try:
        order = int(raw_order)
    except (TypeError, ValueError) as e:
        raise InvalidCoordinateError("checkpoint.order", f"order must be an integer (got {raw_order!r})") from e
    point = PatrolPoint(
        latitude=lat,
        longitude=lng,
        id=str(_pick(data, "id", default="")),
        name=str(_pick(data, "name", default="")),
        # 0 means "not configured" in stored routes
        radius_meters=radius if radius != 0 else DEFAULT_PATROL_RADIUS_M,
        order=order,
        site_id=_pick(data, "site_id", "siteId", default=site_id),
    )
    validate_point(point, "checkpoint")
    validate_radius(point.radius_meters, "checkpoint.radius_meters")
    return point


def patrol_point_to_dict(point: PatrolPoint) -> dict:
    return {
        "id": point.id,
        "name": point.name,
        "latitude": point.latitude,
        "longitude": point.longitude,
        "radius_meters": point.radius_meters,
        "order": point.order,
        "site_id": point.site_id,
    }
