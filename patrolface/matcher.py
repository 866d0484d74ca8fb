"""Best-match search of a probe descriptor over a labeled descriptor set."""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from patrolface.descriptor import (
    DescriptorLike,
    as_descriptor,
    confidence_from_distance,
    euclidean_distance,
    stack_descriptors,
    validate_threshold,
)
from patrolface.errors import DescriptorLengthError, InvalidDescriptorError
from patrolface.settings import MATCH_THRESHOLD

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabeledDescriptors:
    label: str
    descriptors: Tuple[np.ndarray, ...]

    @classmethod
    def create(cls, label: str, descriptors: Iterable[DescriptorLike]) -> "LabeledDescriptors":
        if not label:
            raise InvalidDescriptorError("Label must be a non-empty string")
        mat = stack_descriptors(descriptors)
        return cls(label=label, descriptors=tuple(mat))

    @property
    def dim(self) -> int:
        return int(self.descriptors[0].shape[0])


@dataclass(frozen=True)
class FaceMatch:
    label: str
    distance: float

    @property
    def confidence(self) -> float:
        return confidence_from_distance(self.distance)

    def to_dict(self) -> dict:
        return {"label": self.label, "distance": self.distance, "confidence": self.confidence}


LabeledSet = Union[Mapping[str, Sequence[DescriptorLike]], Sequence[LabeledDescriptors]]


def to_labeled(labeled: LabeledSet) -> List[LabeledDescriptors]:
    """Normalize a dict or a sequence of LabeledDescriptors, keeping iteration order."""
    if isinstance(labeled, Mapping):
        return [LabeledDescriptors.create(label, descs) for label, descs in labeled.items()]
    out = []
    for item in labeled:
        if not isinstance(item, LabeledDescriptors):
            raise InvalidDescriptorError(f"Expected LabeledDescriptors, got {type(item).__name__}")
        out.append(item)
    return out


class FaceMatcher:
    """Reusable matcher over a fixed labeled set.

    Ties on exactly equal minimum distance go to the label that comes first in
    the set's iteration order.
    """

    def __init__(self, labeled: LabeledSet, threshold: float = MATCH_THRESHOLD):
        self.labeled = to_labeled(labeled)
        if not self.labeled:
            raise InvalidDescriptorError("FaceMatcher needs at least one labeled descriptor")
        dim = self.labeled[0].dim
        for ld in self.labeled[1:]:
            if ld.dim != dim:
                raise DescriptorLengthError(dim, ld.dim)
        self.dim = dim
        self.threshold = validate_threshold(threshold)

    def label_distances(self, probe: DescriptorLike) -> Dict[str, float]:
        """Minimum distance from the probe to each label's descriptors."""
        probe = as_descriptor(probe)
        out: Dict[str, float] = {}
        for ld in self.labeled:
            d = min(euclidean_distance(probe, ref) for ref in ld.descriptors)
            if ld.label in out:
                d = min(d, out[ld.label])
            out[ld.label] = d
        return out

    def nearest(self, probe: DescriptorLike) -> FaceMatch:
        """Closest label regardless of threshold."""
        best_label, best_dist = None, float("inf")
        for label, d in self.label_distances(probe).items():
            if d < best_dist:
                best_label, best_dist = label, d
        return FaceMatch(label=best_label, distance=best_dist)

    def find_best_match(self, probe: DescriptorLike) -> Optional[FaceMatch]:
        m = self.nearest(probe)
        if not m.distance < self.threshold:
            logger.debug("No match: nearest=%s distance=%.4f threshold=%.2f", m.label, m.distance, self.threshold)
            return None
        logger.debug("Match: label=%s distance=%.4f threshold=%.2f", m.label, m.distance, self.threshold)
        return m


def best_match(probe: DescriptorLike, labeled: LabeledSet, threshold: float = MATCH_THRESHOLD) -> Optional[FaceMatch]:
    """One-shot match. An empty labeled set yields ``None`` (nobody to match)."""
    threshold = validate_threshold(threshold)
    items = to_labeled(labeled)
    if not items:
        return None
    return FaceMatcher(items, threshold).find_best_match(probe)
