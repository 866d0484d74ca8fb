"""Frame -> descriptor extraction on top of a loaded FaceModels handle."""
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from patrolface.errors import MultipleFacesError
from patrolface.models import FaceModels

logger = logging.getLogger(__name__)


@dataclass
class DetectedFace:
    bbox: Optional[List[int]]
    score: float
    descriptor: np.ndarray


def extract(models: FaceModels, bgr: np.ndarray, allow_multiple: bool = True) -> Optional[np.ndarray]:
    """Descriptor of the most prominent face, or None when no face is found.

    The winner is the highest detector score; equal scores go to the face the
    detector reported first. With ``allow_multiple=False`` a frame holding more
    than one face raises MultipleFacesError instead of picking one.
    """
    if allow_multiple:
        face = models.detector.detect_and_align(bgr)
    else:
        aligned, count = models.detector.detect_all(bgr)
        if count > 1:
            raise MultipleFacesError(count)
        face = aligned[0] if aligned else None
    if face is None:
        logger.debug("No face detected")
        return None
    return models.embedder.embed(face.chw)


def extract_all(models: FaceModels, bgr: np.ndarray) -> List[DetectedFace]:
    """Every face above the detection threshold, highest score first."""
    aligned, _ = models.detector.detect_all(bgr)
    return [DetectedFace(bbox=a.bbox, score=a.score, descriptor=models.embedder.embed(a.chw)) for a in aligned]
