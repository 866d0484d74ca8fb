"""RetinaFace detection + 5-pt landmark alignment via insightface."""
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
from skimage import transform as trans

from patrolface.errors import ModelLoadError
from patrolface.settings import (
    ALIGNED_FACE_SIZE,
    DETECTION_SCORE_THRESHOLD,
    INSIGHTFACE_DET_H,
    INSIGHTFACE_DET_W,
    INSIGHTFACE_NAME,
)

logger = logging.getLogger(__name__)

# Reference template for 5-point alignment (ArcFace)
# (x, y) for left-eye, right-eye, nose, left-mouth, right-mouth in 112x112 space
_ARCFACE_5PTS = np.array([
    [38.2946, 51.6963],
    [73.5318, 51.5014],
    [56.0252, 71.7366],
    [41.5493, 92.3655],
    [70.7299, 92.2041],
], dtype=np.float32)


@dataclass
class AlignedFace:
    bbox: Optional[List[int]]
    score: float
    chw: np.ndarray  # CHW float32 in [0, 1]


def _estimate_norm(lmk: np.ndarray, image_size: int = ALIGNED_FACE_SIZE) -> np.ndarray:
    if lmk.shape != (5, 2):
        raise ValueError(f"Expected (5, 2) landmarks, got {lmk.shape}")
    dst = _ARCFACE_5PTS.copy()
    if image_size != 112:
        dst *= (image_size / 112.0)
    tform = trans.SimilarityTransform()
    if not tform.estimate(lmk, dst):
        raise ValueError("Could not estimate similarity transform from landmarks")
    M = tform.params[0:2, :]
    return M.astype(np.float32)


def _landmarks(face) -> Optional[np.ndarray]:
    # InsightFace may expose 5-point landmarks as 'kps' or 'landmark'
    lmk = getattr(face, "kps", None)
    if lmk is None:
        lmk = getattr(face, "landmark", None)
    if lmk is None:
        return None
    lmk = np.array(lmk, dtype=np.float32).reshape(-1, 2)
    if lmk.shape[0] < 5:
        return None
    return lmk[:5]


def align_face(bgr: np.ndarray, lmk5: np.ndarray, image_size: int = ALIGNED_FACE_SIZE) -> np.ndarray:
    M = _estimate_norm(lmk5, image_size=image_size)
    aligned = cv2.warpAffine(bgr, M, (image_size, image_size))
    rgb = cv2.cvtColor(aligned, cv2.COLOR_BGR2RGB)
    return np.transpose(rgb, (2, 0, 1)).astype(np.float32) / 255.0


class FaceDetector:
    """Owned detector handle. ``app`` is anything with insightface's ``get(bgr) -> faces``."""

    def __init__(self, app, score_threshold: float = DETECTION_SCORE_THRESHOLD, image_size: int = ALIGNED_FACE_SIZE):
        self.app = app
        self.score_threshold = score_threshold
        self.image_size = image_size

    def faces(self, bgr: np.ndarray) -> list:
        """Raw detections above the score threshold, highest score first.

        Sorting is stable, so equal scores keep the detector's output order.
        """
        found = self.app.get(bgr) or []
        kept = [f for f in found if float(getattr(f, "det_score", 0.0)) >= self.score_threshold]
        return sorted(kept, key=lambda f: float(getattr(f, "det_score", 0.0)), reverse=True)

    def align(self, bgr: np.ndarray, face) -> Optional[AlignedFace]:
        bbox = getattr(face, "bbox", None)
        if bbox is not None:
            bbox = np.array(bbox, dtype=np.int32).tolist()
        lmk5 = _landmarks(face)
        if lmk5 is None:
            return None
        try:
            chw = align_face(bgr, lmk5, image_size=self.image_size)
        except ValueError as e:
            logger.debug("Alignment failed: %s", e)
            return None
        return AlignedFace(bbox=bbox, score=float(getattr(face, "det_score", 0.0)), chw=chw)

    def detect_and_align(self, bgr: np.ndarray) -> Optional[AlignedFace]:
        """Aligned highest-confidence face, or None if no face/landmarks found."""
        faces = self.faces(bgr)
        if not faces:
            return None
        return self.align(bgr, faces[0])

    def detect_all(self, bgr: np.ndarray) -> Tuple[List[AlignedFace], int]:
        """All alignable faces plus the count of faces that passed the score threshold."""
        faces = self.faces(bgr)
        aligned = [a for a in (self.align(bgr, f) for f in faces) if a is not None]
        return aligned, len(faces)


def load_detector(
    name: str = INSIGHTFACE_NAME,
    det_size: Tuple[int, int] = (INSIGHTFACE_DET_W, INSIGHTFACE_DET_H),
    score_threshold: float = DETECTION_SCORE_THRESHOLD,
) -> FaceDetector:
    try:
        import insightface
        import onnxruntime as ort
    except ImportError as e:
        raise ModelLoadError(f"insightface/onnxruntime not importable: {e}") from e

    avail = ort.get_available_providers()
    logger.info("InsightFace/ONNX providers available: %s", avail)
    if "CUDAExecutionProvider" in avail:
        providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        ctx_id = 0
    else:
        providers = ["CPUExecutionProvider"]
        ctx_id = -1

    try:
        app = insightface.app.FaceAnalysis(name=name, providers=providers)
        app.prepare(ctx_id=ctx_id, det_size=det_size)
    except Exception as e:
        raise ModelLoadError(f"Failed to prepare insightface model '{name}': {e}") from e
    logger.info("Detector ready: %s det_size=%s ctx_id=%s", name, det_size, ctx_id)
    return FaceDetector(app, score_threshold=score_threshold)
