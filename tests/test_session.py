"""Tests for the enrollment / verification scan state machine."""

import threading

import numpy as np
import pytest

from patrolface.errors import CameraUnavailableError, InvalidThresholdError, ModelLoadError, MultipleFacesError
from patrolface.matcher import LabeledDescriptors
from patrolface.models import ModelLoader
from patrolface.session import (
    Enroll,
    RetryPolicy,
    ScanSession,
    ScanState,
    VerifyAgainstMany,
    VerifyAgainstOne,
    extractor_from_loader,
)

from conftest import at_distance, fake_face

FRAME = np.zeros((8, 8, 3), dtype=np.uint8)
NO_WAIT = RetryPolicy(max_attempts=3, delay_seconds=0.0, backoff=1.0, extract_timeout=None)


def frames():
    return FRAME


def scripted(*results):
    """Extractor returning the given results in order (exceptions are raised)."""
    queue = list(results)

    def _extract(frame):
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return _extract


class TestEnroll:
    def test_captures_descriptor(self, d1) -> None:
        session = ScanSession(scripted(d1), Enroll(), retry=NO_WAIT)

        outcome = session.scan(frames)

        assert outcome.success
        np.testing.assert_array_equal(outcome.descriptor, d1)
        assert outcome.match is None
        assert session.history == [ScanState.IDLE, ScanState.CAPTURING, ScanState.EXTRACTING, ScanState.SUCCESS]

    def test_retries_when_no_face(self, d1) -> None:
        session = ScanSession(scripted(None, None, d1), Enroll(), retry=NO_WAIT)

        outcome = session.scan(frames)

        assert outcome.success
        assert outcome.attempts == 3
        assert session.history.count(ScanState.NO_FACE_RETRY) == 2

    def test_gives_up_after_max_attempts(self) -> None:
        session = ScanSession(scripted(None, None, None, None), Enroll(), retry=NO_WAIT)

        outcome = session.scan(frames)

        assert outcome.state is ScanState.NO_FACE_RETRY
        assert outcome.attempts == 3
        assert "No face detected" in outcome.reason


class TestVerify:
    def test_end_to_end_enroll_then_verify(self, rng, d1) -> None:
        enrolled = ScanSession(scripted(d1), Enroll(), retry=NO_WAIT).scan(frames).descriptor
        labeled = {"guard-1": [enrolled]}

        ok = ScanSession(scripted(at_distance(d1, 0.3, rng)), VerifyAgainstMany(labeled), threshold=0.6, retry=NO_WAIT).scan(frames)
        stranger = ScanSession(
            scripted(at_distance(d1, 0.9, rng)),
            VerifyAgainstMany(labeled),
            threshold=0.6,
            retry=RetryPolicy(max_attempts=1, delay_seconds=0, extract_timeout=None),
        ).scan(frames)

        assert ok.success
        assert ok.match.label == "guard-1"
        assert ok.match.distance == pytest.approx(0.3, abs=1e-5)
        assert stranger.state is ScanState.NO_MATCH_RETRY
        assert stranger.match is None

    def test_verify_against_one(self, rng, d1) -> None:
        session = ScanSession(scripted(at_distance(d1, 0.2, rng)), VerifyAgainstOne(d1, label="guard-9"), retry=NO_WAIT)

        outcome = session.scan(frames)

        assert outcome.success
        assert outcome.match.label == "guard-9"
        assert ScanState.MATCHING in session.history

    def test_no_match_then_match(self, rng, d1) -> None:
        session = ScanSession(
            scripted(at_distance(d1, 0.9, rng), at_distance(d1, 0.1, rng)),
            VerifyAgainstOne(d1),
            retry=NO_WAIT,
        )

        outcome = session.scan(frames)

        assert outcome.success
        assert outcome.attempts == 2
        assert ScanState.NO_MATCH_RETRY in session.history

    def test_empty_candidate_set_never_matches(self, d1) -> None:
        session = ScanSession(scripted(d1), VerifyAgainstMany([]), retry=RetryPolicy(max_attempts=1, extract_timeout=None))

        outcome = session.scan(frames)

        assert outcome.state is ScanState.NO_MATCH_RETRY
        assert outcome.descriptor is not None

    def test_labeled_descriptor_sequence_is_accepted(self, rng, d1) -> None:
        labeled = [LabeledDescriptors.create("guard-2", [d1])]
        outcome = ScanSession(scripted(at_distance(d1, 0.1, rng)), VerifyAgainstMany(labeled), retry=NO_WAIT).scan(frames)

        assert outcome.match.label == "guard-2"


class TestFailures:
    def test_camera_failure_is_fatal_and_not_retried(self, d1) -> None:
        calls = []

        def broken_camera():
            calls.append(1)
            raise CameraUnavailableError("Camera access denied")

        session = ScanSession(scripted(d1), Enroll(), retry=NO_WAIT)
        outcome = session.scan(broken_camera)

        assert outcome.state is ScanState.FATAL_ERROR
        assert outcome.reason == "Camera access denied"
        assert len(calls) == 1

    def test_model_load_failure_is_fatal(self) -> None:
        session = ScanSession(scripted(ModelLoadError("models missing")), Enroll(), retry=NO_WAIT)

        outcome = session.scan(frames)

        assert outcome.state is ScanState.FATAL_ERROR
        assert session.history[-1] is ScanState.FATAL_ERROR

    def test_multiple_faces_counts_as_retry(self, d1) -> None:
        session = ScanSession(scripted(MultipleFacesError(2), d1), Enroll(), retry=NO_WAIT)

        outcome = session.scan(frames)

        assert outcome.success
        assert session.history[3] is ScanState.NO_FACE_RETRY

    def test_programming_errors_propagate(self) -> None:
        session = ScanSession(scripted(KeyError("bug")), Enroll(), retry=NO_WAIT)

        with pytest.raises(KeyError):
            session.scan(frames)

    def test_finished_session_cannot_rescan(self, d1) -> None:
        session = ScanSession(scripted(d1), Enroll(), retry=NO_WAIT)
        session.scan(frames)

        with pytest.raises(RuntimeError):
            session.attempt(frames)

    def test_unknown_mode_rejected(self) -> None:
        with pytest.raises(TypeError):
            ScanSession(scripted(), "verify")


class TestRetryPolicy:
    def test_backoff_schedule(self) -> None:
        policy = RetryPolicy(max_attempts=4, delay_seconds=1.0, backoff=2.0, extract_timeout=None)

        assert [policy.delay_before(n) for n in (1, 2, 3, 4)] == [0.0, 1.0, 2.0, 4.0]

    def test_session_sleeps_between_attempts(self, d1) -> None:
        slept = []
        policy = RetryPolicy(max_attempts=3, delay_seconds=2.0, backoff=1.5, extract_timeout=None)
        session = ScanSession(scripted(None, None, d1), Enroll(), retry=policy, sleep=slept.append)

        session.scan(frames)

        assert slept == [2.0, 3.0]

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"delay_seconds": -1}, {"backoff": 0.5}, {"extract_timeout": 0}],
    )
    def test_invalid_policy_rejected(self, kwargs) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_extraction_timeout_counts_as_no_face(self, d1) -> None:
        release = threading.Event()
        calls = []
        captured = []

        def stuck_then_fast(frame):
            calls.append(1)
            if len(calls) == 1:
                release.wait(5)
            return d1

        def camera():
            captured.append(1)
            if len(captured) == 2:
                # unblock the timed-out extraction so the retry can run
                release.set()
            return FRAME

        policy = RetryPolicy(max_attempts=2, delay_seconds=0, extract_timeout=0.5)
        session = ScanSession(stuck_then_fast, Enroll(), retry=policy)

        outcome = session.scan(camera)

        assert outcome.success
        assert outcome.attempts == 2
        assert session.history[3] is ScanState.NO_FACE_RETRY


def test_extractor_from_loader_runs_real_pipeline(make_models, frame) -> None:
    loader = ModelLoader(lambda: make_models([fake_face(0.9)]))
    session = ScanSession(extractor_from_loader(loader), Enroll(), retry=NO_WAIT)

    outcome = session.scan(lambda: frame)

    assert outcome.success
    assert loader.loaded is True


def test_extractor_from_loader_reports_load_failure(frame) -> None:
    def failing():
        raise ModelLoadError("Face recognition models not loaded")

    session = ScanSession(extractor_from_loader(ModelLoader(failing)), Enroll(), retry=NO_WAIT)

    outcome = session.scan(lambda: frame)

    assert outcome.state is ScanState.FATAL_ERROR
    assert "not loaded" in outcome.reason


class TestLoadTimeout:
    @pytest.fixture
    def loading(self, make_models):
        """A loader whose first load is held open until the test releases it."""
        started, release = threading.Event(), threading.Event()

        def slow_factory():
            started.set()
            release.wait(5)
            return make_models([fake_face(0.9)])

        loader = ModelLoader(slow_factory)
        owner = threading.Thread(target=loader.get)
        owner.start()
        assert started.wait(5)
        yield loader
        release.set()
        owner.join(5)

    @pytest.mark.parametrize("extract_timeout", [None, 2.0])
    def test_models_not_ready_is_fatal(self, loading, frame, extract_timeout) -> None:
        policy = RetryPolicy(max_attempts=3, delay_seconds=0, extract_timeout=extract_timeout)
        session = ScanSession(extractor_from_loader(loading, load_timeout=0.05), Enroll(), retry=policy)

        outcome = session.scan(lambda: frame)

        assert outcome.state is ScanState.FATAL_ERROR
        assert outcome.attempts == 1
        assert "not ready" in outcome.reason


@pytest.mark.parametrize("threshold", [float("nan"), float("inf"), -0.1])
def test_invalid_threshold_rejected(threshold) -> None:
    with pytest.raises(InvalidThresholdError):
        ScanSession(scripted(), Enroll(), threshold=threshold)


def test_session_is_a_context_manager(d1) -> None:
    policy = RetryPolicy(max_attempts=1, delay_seconds=0, extract_timeout=1.0)
    with ScanSession(scripted(d1), Enroll(), retry=policy) as session:
        assert session.attempt(frames).success
        assert session._executor is not None

    assert session._executor is None
