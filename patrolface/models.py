"""Load-once handle for the detector + embedder pair."""
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

from patrolface.detector import FaceDetector, load_detector
from patrolface.embedder import FaceEmbedder, load_embedder
from patrolface.errors import ModelLoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceModels:
    detector: FaceDetector
    embedder: FaceEmbedder

    def info(self) -> dict:
        return {
            "detector_score_threshold": self.detector.score_threshold,
            "aligned_size": self.detector.image_size,
            "embedder": self.embedder.info(),
        }


def _default_factory() -> FaceModels:
    return FaceModels(detector=load_detector(), embedder=load_embedder())


class ModelLoader:
    """Loads models on first ``get()`` and hands the same FaceModels to every caller.

    Concurrent callers wait on one shared future instead of triggering a second
    load. A failed load is reported to everyone waiting on it and then forgotten,
    so the next ``get()`` tries again.
    """

    def __init__(self, factory: Callable[[], FaceModels] = _default_factory):
        self._factory = factory
        self._lock = threading.Lock()
        self._future: Optional[Future] = None

    @property
    def loaded(self) -> bool:
        f = self._future
        return f is not None and f.done() and f.exception() is None

    def get(self, timeout: Optional[float] = None) -> FaceModels:
        with self._lock:
            future = self._future
            owner = future is None
            if owner:
                future = self._future = Future()
                future.set_running_or_notify_cancel()
        if owner:
            self._load(future)
        return future.result(timeout=timeout)

    def _load(self, future: Future) -> None:
        logger.info("Loading face models")
        try:
            models = self._factory()
        except Exception as e:
            logger.error("Failed to load face models: %s", e)
            with self._lock:
                self._future = None
            if not isinstance(e, ModelLoadError):
                e = ModelLoadError(f"Face models failed to load: {e}")
            future.set_exception(e)
            return
        logger.info("All face models loaded")
        future.set_result(models)

    def reset(self) -> None:
        with self._lock:
            self._future = None
