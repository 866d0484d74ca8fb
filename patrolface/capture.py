"""OpenCV-backed frame source for scan sessions."""
import logging
from typing import Union

import cv2
import numpy as np

from patrolface.errors import CameraUnavailableError

logger = logging.getLogger(__name__)


class CameraFrameSource:
    """Single camera/stream handle; ``read()`` returns one BGR frame.

    ``source`` is a device index (0 = default webcam) or a file/RTSP URL.
    Opening is lazy so a session can report a camera failure as its own
    fatal outcome.
    """

    def __init__(self, source: Union[int, str] = 0, width: int = 640, height: int = 480, backend: int = cv2.CAP_ANY):
        self.source = source
        self.width = width
        self.height = height
        self.backend = backend
        self._cap = None

    def open(self) -> None:
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(self.source, self.backend)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(f"Failed to open camera source {self.source!r}")
        if isinstance(self.source, int):
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        logger.info("Camera opened: %r", self.source)
        self._cap = cap

    def read(self) -> np.ndarray:
        self.open()
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise CameraUnavailableError(f"Camera source {self.source!r} returned no frame (stream ended?)")
        return frame

    __call__ = read

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera released: %r", self.source)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.release()
        return False
