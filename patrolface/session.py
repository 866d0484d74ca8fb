"""Enrollment / verification scan session.

One session drives the capture -> extract -> match sequence for a single
enrollment or verification attempt:

    idle -> capturing -> extracting -> no_face_retry | matching
    matching -> success | no_match_retry
    any environment failure -> fatal_error (terminal, not retried)

Enrollment skips ``matching``: the extracted descriptor is the result.
Retries for no-face and no-match are governed by a RetryPolicy supplied by the
caller; the matcher itself never retries.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Union

import numpy as np

from patrolface.descriptor import DescriptorLike, as_descriptor, euclidean_distance, validate_threshold
from patrolface.errors import (
    CameraUnavailableError,
    ModelLoadError,
    ModelNotLoadedError,
    MultipleFacesError,
)
from patrolface.extract import extract
from patrolface.matcher import FaceMatch, FaceMatcher, LabeledSet, to_labeled
from patrolface.models import ModelLoader
from patrolface.settings import (
    MATCH_THRESHOLD,
    SCAN_EXTRACT_TIMEOUT,
    SCAN_MAX_ATTEMPTS,
    SCAN_RETRY_BACKOFF,
    SCAN_RETRY_DELAY,
)

logger = logging.getLogger(__name__)

Extractor = Callable[[np.ndarray], Optional[np.ndarray]]
FrameSource = Callable[[], np.ndarray]

_FATAL = (CameraUnavailableError, ModelLoadError, ModelNotLoadedError)

NO_FACE_MESSAGE = "No face detected. Please position your face in the frame and try again."
MULTIPLE_FACES_MESSAGE = "More than one face in frame. Make sure only you are in view and try again."
NO_MATCH_MESSAGE = "Face does not match registered profile. Please try again."


class ScanState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    EXTRACTING = "extracting"
    NO_FACE_RETRY = "no_face_retry"
    MATCHING = "matching"
    SUCCESS = "success"
    NO_MATCH_RETRY = "no_match_retry"
    FATAL_ERROR = "fatal_error"


TERMINAL_STATES = {ScanState.SUCCESS, ScanState.FATAL_ERROR}
RETRY_STATES = {ScanState.NO_FACE_RETRY, ScanState.NO_MATCH_RETRY}


# ----- scan modes -----

@dataclass(frozen=True)
class Enroll:
    pass


@dataclass(frozen=True, eq=False)
class VerifyAgainstOne:
    descriptor: DescriptorLike
    label: str = ""

    def __post_init__(self):
        object.__setattr__(self, "descriptor", as_descriptor(self.descriptor))


@dataclass(frozen=True)
class VerifyAgainstMany:
    labeled: LabeledSet


ScanMode = Union[Enroll, VerifyAgainstOne, VerifyAgainstMany]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = SCAN_MAX_ATTEMPTS
    delay_seconds: float = SCAN_RETRY_DELAY
    backoff: float = SCAN_RETRY_BACKOFF
    extract_timeout: Optional[float] = SCAN_EXTRACT_TIMEOUT

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0 (got {self.delay_seconds})")
        if self.backoff < 1:
            raise ValueError(f"backoff must be >= 1 (got {self.backoff})")
        if self.extract_timeout is not None and self.extract_timeout <= 0:
            raise ValueError(f"extract_timeout must be positive or None (got {self.extract_timeout})")

    def delay_before(self, attempt: int) -> float:
        """Pause before ``attempt`` (2-based; there is no pause before the first)."""
        if attempt <= 1:
            return 0.0
        return self.delay_seconds * (self.backoff ** (attempt - 2))


@dataclass
class ScanOutcome:
    state: ScanState
    descriptor: Optional[np.ndarray] = None
    match: Optional[FaceMatch] = None
    attempts: int = 0
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.state is ScanState.SUCCESS


def extractor_from_loader(loader: ModelLoader, load_timeout: Optional[float] = None, allow_multiple: bool = True) -> Extractor:
    """Extractor that resolves the shared models on each call (loads once).

    Models still loading after ``load_timeout`` seconds count as unavailable.
    """

    def _extract(frame: np.ndarray) -> Optional[np.ndarray]:
        try:
            models = loader.get(timeout=load_timeout)
        except FutureTimeout as e:
            raise ModelLoadError(f"Face models not ready after {load_timeout}s") from e
        return extract(models, frame, allow_multiple=allow_multiple)

    return _extract


class ScanSession:
    def __init__(
        self,
        extractor: Extractor,
        mode: ScanMode,
        threshold: float = MATCH_THRESHOLD,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not isinstance(mode, (Enroll, VerifyAgainstOne, VerifyAgainstMany)):
            raise TypeError(f"Unsupported scan mode: {mode!r}")
        self.extractor = extractor
        self.mode = mode
        self.threshold = validate_threshold(threshold)
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self._matcher: Optional[FaceMatcher] = None
        if isinstance(mode, VerifyAgainstMany):
            labeled = to_labeled(mode.labeled)
            if labeled:
                self._matcher = FaceMatcher(labeled, self.threshold)
        self.state = ScanState.IDLE
        self.history: List[ScanState] = [ScanState.IDLE]
        self.attempts = 0
        self._executor: Optional[ThreadPoolExecutor] = None

    def _to(self, state: ScanState) -> None:
        logger.debug("scan %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _fatal(self, exc: Exception) -> ScanOutcome:
        logger.error("Scan failed: %s", exc)
        self._to(ScanState.FATAL_ERROR)
        return ScanOutcome(ScanState.FATAL_ERROR, attempts=self.attempts, reason=str(exc))

    def _run_extractor(self, frame: np.ndarray) -> Optional[np.ndarray]:
        timeout = self.retry.extract_timeout
        if timeout is None:
            return self.extractor(frame)
        if self._executor is None:
            # One worker: a timed-out extraction finishes before the next starts
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan-extract")
        future = self._executor.submit(self.extractor, frame)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning("Extraction exceeded %.2fs; treating as no face", timeout)
            return None

    def _match(self, descriptor: np.ndarray) -> Optional[FaceMatch]:
        mode = self.mode
        if isinstance(mode, VerifyAgainstOne):
            d = euclidean_distance(descriptor, mode.descriptor)
            return FaceMatch(label=mode.label, distance=d) if d < self.threshold else None
        if self._matcher is None:
            return None
        return self._matcher.find_best_match(descriptor)

    def attempt(self, frame_source: FrameSource) -> ScanOutcome:
        """One pass: capture a frame, extract, and (in verify modes) match."""
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Scan session already finished in state {self.state.value}")
        self.attempts += 1
        self._to(ScanState.CAPTURING)
        try:
            frame = frame_source()
            self._to(ScanState.EXTRACTING)
            descriptor = self._run_extractor(frame)
        except _FATAL as e:
            return self._fatal(e)
        except MultipleFacesError:
            self._to(ScanState.NO_FACE_RETRY)
            return ScanOutcome(ScanState.NO_FACE_RETRY, attempts=self.attempts, reason=MULTIPLE_FACES_MESSAGE)

        if descriptor is None:
            self._to(ScanState.NO_FACE_RETRY)
            return ScanOutcome(ScanState.NO_FACE_RETRY, attempts=self.attempts, reason=NO_FACE_MESSAGE)

        if isinstance(self.mode, Enroll):
            self._to(ScanState.SUCCESS)
            logger.info("Enrollment captured after %d attempt(s)", self.attempts)
            return ScanOutcome(ScanState.SUCCESS, descriptor=descriptor, attempts=self.attempts)

        self._to(ScanState.MATCHING)
        match = self._match(descriptor)
        if match is None:
            self._to(ScanState.NO_MATCH_RETRY)
            return ScanOutcome(ScanState.NO_MATCH_RETRY, descriptor=descriptor, attempts=self.attempts, reason=NO_MATCH_MESSAGE)
        self._to(ScanState.SUCCESS)
        logger.info("Verified %r (distance=%.4f) after %d attempt(s)", match.label, match.distance, self.attempts)
        return ScanOutcome(ScanState.SUCCESS, descriptor=descriptor, match=match, attempts=self.attempts)

    def scan(self, frame_source: FrameSource) -> ScanOutcome:
        """Attempt until success, a fatal error, or the retry budget runs out."""
        try:
            while True:
                outcome = self.attempt(frame_source)
                if outcome.state in TERMINAL_STATES or self.attempts >= self.retry.max_attempts:
                    if outcome.state in RETRY_STATES:
                        logger.info("Scan gave up after %d attempt(s): %s", self.attempts, outcome.state.value)
                    return outcome
                pause = self.retry.delay_before(self.attempts + 1)
                if pause:
                    self._sleep(pause)
        finally:
            self.close()

    def close(self) -> None:
        """Release the extraction worker. ``scan()`` calls this on exit.

        A worker stuck in a timed-out extraction is not interrupted; it ends
        when that extraction returns.
        """
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def __enter__(self) -> "ScanSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
