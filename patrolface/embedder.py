"""
Embedder interface.

Two ways to load the recognition network:
- TorchScript model via EMBEDDER_TORCHSCRIPT (recommended for deploy)
- State dict + architecture (EMBEDDER_STATE_DICT / EMBEDDER_ARCH), needs a
  ``backbones`` module exposing ``get_model``

Model contract: input is CHW float32 [0..1], aligned face (112x112),
output is a 1D descriptor. Descriptors are L2-normalized unless
EMBEDDER_NORMALIZE=0, so Euclidean distances fall in [0, 2].
"""
import importlib
import logging
import os

import numpy as np
import torch

from patrolface.errors import ModelLoadError, ModelNotLoadedError
from patrolface.settings import (
    ALIGNED_FACE_SIZE,
    DEVICE,
    EMBEDDER_ARCH,
    EMBEDDER_NORMALIZE,
    EMBEDDER_STATE_DICT,
    EMBEDDER_TORCHSCRIPT,
)

logger = logging.getLogger(__name__)


class FaceEmbedder:
    def __init__(self, model: torch.nn.Module, device: torch.device, normalize: bool = EMBEDDER_NORMALIZE, source: str = ""):
        self.model = model
        self.device = device
        self.normalize = normalize
        self.source = source

    def warmup(self, image_size: int = ALIGNED_FACE_SIZE) -> int:
        """Run one dummy batch; returns the descriptor dimensionality."""
        with torch.inference_mode():
            dummy = torch.randn(1, 3, image_size, image_size, device=self.device)
            out = self.model(dummy)
        return int(out.reshape(1, -1).shape[1])

    def embed(self, face_chw_float01: np.ndarray) -> np.ndarray:
        """Run inference on aligned face (CHW float32 [0..1]). Returns a float32 descriptor."""
        if self.model is None:
            raise ModelNotLoadedError("Embedder not loaded. Call load_embedder() first.")
        x = torch.from_numpy(np.ascontiguousarray(face_chw_float01, dtype=np.float32)).unsqueeze(0).to(self.device)
        with torch.inference_mode():
            emb = self.model(x).detach().float().cpu().numpy().reshape(-1)
        if self.normalize:
            emb = emb / (np.linalg.norm(emb) + 1e-9)
        return emb.astype(np.float32)

    def info(self) -> dict:
        return {
            "arch": EMBEDDER_ARCH,
            "source": self.source,
            "device": str(self.device),
            "normalize": self.normalize,
            "torch": torch.__version__,
            "model_class": self.model.__class__.__name__,
        }


def _load_from_torchscript(path: str, device: torch.device):
    if not path:
        return None
    if not os.path.isfile(path):
        logger.warning("Embedder: TorchScript file not found: %s", path)
        return None
    logger.info("Embedder: loading TorchScript from %s", path)
    try:
        m = torch.jit.load(path, map_location=device)
    except (RuntimeError, ValueError) as e:
        raise ModelLoadError(f"TorchScript load failed for {path}: {e}") from e
    return m.eval()


def _load_from_state_dict(path: str, arch: str, device: torch.device):
    if not path:
        return None
    if not os.path.isfile(path):
        logger.warning("Embedder: state_dict file not found: %s", path)
        return None
    try:
        get_model = importlib.import_module("backbones").get_model
    except (ImportError, AttributeError) as e:
        raise ModelLoadError("backbones.get_model not available. Install your backbone module or export TorchScript.") from e
    logger.info("Embedder: loading backbone %s from state_dict %s", arch, path)
    net = get_model(arch, fp16=False)
    sd = torch.load(path, map_location=device)
    if isinstance(sd, dict) and "state_dict" in sd:
        sd = sd["state_dict"]
    missing, unexpected = net.load_state_dict(sd, strict=False)
    if missing:
        logger.warning("Embedder: missing %d keys, first 10: %s", len(missing), missing[:10])
    if unexpected:
        logger.warning("Embedder: unexpected %d keys, first 10: %s", len(unexpected), unexpected[:10])
    return net.to(device).eval()


def load_embedder(
    device: str = DEVICE,
    torchscript: str = EMBEDDER_TORCHSCRIPT,
    state_dict: str = EMBEDDER_STATE_DICT,
    arch: str = EMBEDDER_ARCH,
) -> FaceEmbedder:
    dev = torch.device(device if torch.cuda.is_available() else "cpu")
    logger.info("Embedder: cuda available=%s, requested device=%s, using=%s", torch.cuda.is_available(), device, dev)

    # Try state_dict first if provided, else TorchScript
    model, source = _load_from_state_dict(state_dict, arch, dev), state_dict
    if model is None:
        model, source = _load_from_torchscript(torchscript, dev), torchscript
    if model is None:
        raise ModelLoadError("No embedder configured. Set EMBEDDER_STATE_DICT + EMBEDDER_ARCH or EMBEDDER_TORCHSCRIPT.")

    embedder = FaceEmbedder(model, dev, source=source)
    dim = embedder.warmup()
    logger.info("Embedder: ready, descriptor dim=%d", dim)
    return embedder
