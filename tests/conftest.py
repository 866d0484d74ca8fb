"""Shared fixtures: synthetic descriptors, a fake insightface app and a tiny embedder."""

from types import SimpleNamespace

import numpy as np
import pytest
import torch

from patrolface.detector import _ARCFACE_5PTS, FaceDetector
from patrolface.embedder import FaceEmbedder
from patrolface.models import FaceModels

DIM = 128


def unit(rng: np.random.Generator, dim: int = DIM) -> np.ndarray:
    v = rng.normal(size=dim)
    return v / np.linalg.norm(v)


def at_distance(base: np.ndarray, distance: float, rng: np.random.Generator) -> np.ndarray:
    """A float32 descriptor roughly ``distance`` away from ``base``."""
    return (base.astype(np.float64) + distance * unit(rng, base.shape[0])).astype(np.float32)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def d1(rng) -> np.ndarray:
    return unit(rng).astype(np.float32)


def fake_face(score: float, offset=(40.0, 30.0), scale: float = 1.0, with_landmarks: bool = True):
    kps = _ARCFACE_5PTS * scale + np.array(offset, dtype=np.float32)
    x0, y0 = offset
    return SimpleNamespace(
        det_score=score,
        bbox=[x0, y0, x0 + 112 * scale, y0 + 112 * scale],
        kps=kps if with_landmarks else None,
    )


class FakeFaceApp:
    """Stands in for insightface.app.FaceAnalysis: ``get`` returns canned faces."""

    def __init__(self, faces=()):
        self.faces = list(faces)
        self.calls = 0

    def get(self, bgr):
        self.calls += 1
        return list(self.faces)


@pytest.fixture
def frame() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 255, size=(240, 240, 3), dtype=np.uint8)


@pytest.fixture
def tiny_embedder() -> FaceEmbedder:
    torch.manual_seed(0)
    model = torch.nn.Sequential(
        torch.nn.AdaptiveAvgPool2d(8),
        torch.nn.Flatten(),
        torch.nn.Linear(3 * 8 * 8, DIM),
    ).eval()
    return FaceEmbedder(model, torch.device("cpu"), normalize=True, source="test")


@pytest.fixture
def make_models(tiny_embedder):
    def _make(faces=(), score_threshold: float = 0.5) -> FaceModels:
        return FaceModels(detector=FaceDetector(FakeFaceApp(faces), score_threshold=score_threshold), embedder=tiny_embedder)

    return _make
