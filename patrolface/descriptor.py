"""Face descriptors: fixed-length float32 vectors compared by Euclidean distance.

Lower distance = more similar faces. Descriptors are stored and transmitted as a
JSON array of floats.
"""
import json
import math
from typing import Iterable, Sequence, Union

import numpy as np

from patrolface.errors import DescriptorLengthError, InvalidDescriptorError, InvalidThresholdError
from patrolface.settings import MATCH_THRESHOLD

DescriptorLike = Union[np.ndarray, Sequence[float]]


def as_descriptor(values: DescriptorLike) -> np.ndarray:
    """Coerce a list/array of numbers into a 1-D float32 descriptor."""
    try:
        arr = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidDescriptorError(f"Descriptor must be a sequence of numbers: {e}") from e
    if arr.ndim != 1 or arr.size == 0:
        raise InvalidDescriptorError(f"Descriptor must be a non-empty 1-D vector, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InvalidDescriptorError("Descriptor contains NaN or infinite values")
    return arr


def check_same_length(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DescriptorLengthError(a.shape[0], b.shape[0])


def euclidean_distance(a: DescriptorLike, b: DescriptorLike) -> float:
    a = as_descriptor(a)
    b = as_descriptor(b)
    check_same_length(a, b)
    # float64 accumulation keeps distance(a, b) == distance(b, a) bit-for-bit
    diff = a.astype(np.float64) - b.astype(np.float64)
    return float(np.sqrt(np.dot(diff, diff)))


def validate_threshold(threshold: float) -> float:
    try:
        value = float(threshold)
    except (TypeError, ValueError) as e:
        raise InvalidThresholdError(threshold) from e
    if not math.isfinite(value) or value < 0:
        raise InvalidThresholdError(threshold)
    return value


def descriptors_match(a: DescriptorLike, b: DescriptorLike, threshold: float = MATCH_THRESHOLD) -> bool:
    threshold = validate_threshold(threshold)
    return euclidean_distance(a, b) < threshold


def confidence_from_distance(distance: float) -> float:
    """Display confidence ``1 - distance`` clamped to [0, 1]. Not a probability."""
    return float(min(1.0, max(0.0, 1.0 - distance)))


def serialize_descriptor(descriptor: DescriptorLike) -> str:
    arr = as_descriptor(descriptor)
    # float32 -> python float is exact, so the JSON text round-trips losslessly
    return json.dumps([float(v) for v in arr])


def deserialize_descriptor(text: str) -> np.ndarray:
    try:
        values = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise InvalidDescriptorError(f"Descriptor is not valid JSON: {e}") from e
    if not isinstance(values, list):
        raise InvalidDescriptorError("Serialized descriptor must be a JSON array")
    return as_descriptor(values)


def stack_descriptors(descriptors: Iterable[DescriptorLike]) -> np.ndarray:
    """Stack descriptors into an (N, D) matrix, enforcing one common length."""
    rows = [as_descriptor(d) for d in descriptors]
    if not rows:
        raise InvalidDescriptorError("At least one descriptor is required")
    for row in rows[1:]:
        check_same_length(rows[0], row)
    return np.stack(rows)
