import json
import logging
import time
from typing import List, Optional

import cv2
import numpy as np
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from patrolface.descriptor import validate_threshold
from patrolface.errors import ModelLoadError, ModelNotLoadedError, PatrolFaceError
from patrolface.extract import extract
from patrolface.geo import (
    GeoPoint,
    PatrolPoint,
    distance_meters,
    is_within_geofence,
    nearest_patrol_point,
)
from patrolface.logging_config import configure_logging
from patrolface.matcher import LabeledDescriptors, best_match
from patrolface.models import FaceModels, ModelLoader
from patrolface.settings import (
    ALLOWED_IMG_MIMES,
    API_PREFIX,
    CORS_ALLOW_ORIGINS,
    DEFAULT_PATROL_RADIUS_M,
    DESCRIPTOR_DIM,
    DETECTION_SCORE_THRESHOLD,
    IMG_MAX_MB,
    MATCH_THRESHOLD,
)

logger = logging.getLogger(__name__)

# ===== App init =====
app = FastAPI(title="PatrolFace", version="1.0")

if CORS_ALLOW_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

MODELS = ModelLoader()


def get_models() -> FaceModels:
    return MODELS.get()


@app.exception_handler(ModelLoadError)
@app.exception_handler(ModelNotLoadedError)
async def _model_unavailable(request: Request, exc: PatrolFaceError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(PatrolFaceError)
async def _bad_input(request: Request, exc: PatrolFaceError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ===== Schemas =====
class Point(BaseModel):
    latitude: float
    longitude: float

    def to_geo(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


class GeofenceCheck(BaseModel):
    position: Point
    center: Point
    radius_meters: float


class PatrolPointIn(Point):
    id: str = ""
    name: str = ""
    radius_meters: float = DEFAULT_PATROL_RADIUS_M
    order: int = 0
    site_id: Optional[str] = None


class NearestQuery(BaseModel):
    position: Point
    points: List[PatrolPointIn] = Field(default_factory=list)


# ===== Helpers =====
def _ensure_img(f: UploadFile) -> np.ndarray:
    if f.content_type not in ALLOWED_IMG_MIMES:
        raise HTTPException(415, "Only JPEG/PNG images are supported")
    raw = f.file.read()
    if len(raw) > IMG_MAX_MB * 1024 * 1024:
        raise HTTPException(413, f"Image exceeds {IMG_MAX_MB}MB")
    img = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise HTTPException(400, "Invalid image payload")
    return img


def _parse_stored(stored: str) -> List[LabeledDescriptors]:
    """``stored`` is a JSON list of {"label": ..., "descriptor": [...]} (or "descriptors": [[...], ...])."""
    try:
        items = json.loads(stored)
    except json.JSONDecodeError as e:
        raise HTTPException(400, f"stored must be JSON: {e}") from e
    if not isinstance(items, list):
        raise HTTPException(400, "stored must be a JSON list")
    grouped = {}
    for i, item in enumerate(items):
        if not isinstance(item, dict) or "label" not in item:
            raise HTTPException(400, f"stored[{i}] needs a label")
        descs = item.get("descriptors") or [item.get("descriptor")]
        if any(d is None for d in descs):
            raise HTTPException(400, f"stored[{i}] needs a descriptor")
        grouped.setdefault(str(item["label"]), []).extend(descs)
    return [LabeledDescriptors.create(label, descs) for label, descs in grouped.items()]


# ===== Health =====
@app.get(f"{API_PREFIX}/healthz")
def healthz():
    return {"ok": True}


@app.get(f"{API_PREFIX}/info")
def api_info():
    info = {
        "api": {
            "version": "1.0",
            "match_threshold": MATCH_THRESHOLD,
            "descriptor_dim": DESCRIPTOR_DIM,
            "detection_score_threshold": DETECTION_SCORE_THRESHOLD,
        },
        "models_loaded": MODELS.loaded,
    }
    if MODELS.loaded:
        info["model"] = MODELS.get().info()
    return info


# ===== Face =====
@app.post(f"{API_PREFIX}/descriptors")
def extract_descriptor(image: UploadFile = File(...), models: FaceModels = Depends(get_models)):
    t0 = time.time()
    desc = extract(models, _ensure_img(image))
    if desc is None:
        raise HTTPException(422, "No face detected")
    return {"descriptor": desc.tolist(), "latency_ms": int((time.time() - t0) * 1000)}


@app.post(f"{API_PREFIX}/verify")
def verify(
    image: UploadFile = File(...),
    stored: str = Form(...),
    threshold: float = Form(MATCH_THRESHOLD),
    models: FaceModels = Depends(get_models),
):
    t0 = time.time()
    threshold = validate_threshold(threshold)
    labeled = _parse_stored(stored)
    probe = extract(models, _ensure_img(image))
    if probe is None:
        raise HTTPException(422, "No face detected")
    m = best_match(probe, labeled, threshold)
    match = m.to_dict() if m else None
    logger.info("verify: candidates=%d match=%s threshold=%.2f", len(labeled), match and match["label"], threshold)
    return {"match": match, "threshold_used": threshold, "latency_ms": int((time.time() - t0) * 1000)}


# ===== Geofence / patrol =====
@app.post(f"{API_PREFIX}/geofence/check")
def geofence_check(body: GeofenceCheck):
    pos, center = body.position.to_geo(), body.center.to_geo()
    return {
        "within_geofence": is_within_geofence(pos, center, body.radius_meters),
        "distance_meters": distance_meters(pos, center),
    }


@app.post(f"{API_PREFIX}/patrol/nearest")
def patrol_nearest(body: NearestQuery):
    points = [PatrolPoint(**p.model_dump()) for p in body.points]
    return nearest_patrol_point(body.position.to_geo(), points).to_dict()


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
