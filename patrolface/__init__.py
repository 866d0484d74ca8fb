"""Face-descriptor matching and geofence/patrol proximity checks for guard check-in."""
from patrolface.descriptor import (
    confidence_from_distance,
    descriptors_match,
    deserialize_descriptor,
    euclidean_distance,
    serialize_descriptor,
)
from patrolface.geo import (
    GeoPoint,
    PatrolPoint,
    Position,
    ProximityResult,
    check_in_at_point,
    distance_meters,
    is_within_geofence,
    nearest_patrol_point,
)
from patrolface.matcher import FaceMatch, FaceMatcher, LabeledDescriptors, best_match

__version__ = "1.0.0"
