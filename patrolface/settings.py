import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), ".env"))


# ====== Core Config ======
API_PREFIX = os.getenv("API_PREFIX", "/api")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


# Face matching (Euclidean distance; 0.6 is the reference calibration for 128-d descriptors)
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "0.6"))
DESCRIPTOR_DIM = int(os.getenv("DESCRIPTOR_DIM", "128"))


# Detector
DETECTION_SCORE_THRESHOLD = float(os.getenv("DETECTION_SCORE_THRESHOLD", "0.5"))
INSIGHTFACE_NAME = os.getenv("INSIGHTFACE_NAME", "buffalo_l")  # buffalo_sc is faster
INSIGHTFACE_DET_W = int(os.getenv("INSIGHTFACE_DET_W", "640"))
INSIGHTFACE_DET_H = int(os.getenv("INSIGHTFACE_DET_H", "640"))
ALIGNED_FACE_SIZE = 112


# Embedder (TorchScript preferred, state_dict + arch otherwise)
EMBEDDER_TORCHSCRIPT = os.getenv("EMBEDDER_TORCHSCRIPT", "")
EMBEDDER_STATE_DICT = os.getenv("EMBEDDER_STATE_DICT", "")
EMBEDDER_ARCH = os.getenv("EMBEDDER_ARCH", "r100")
EMBEDDER_NORMALIZE = os.getenv("EMBEDDER_NORMALIZE", "1") not in {"0", "false", "False"}


# Device selection
DEVICE = os.getenv("DEVICE", "cuda:0")


# Geofence / patrol
EARTH_RADIUS_M = float(os.getenv("EARTH_RADIUS_M", "6371000"))
DEFAULT_PATROL_RADIUS_M = float(os.getenv("DEFAULT_PATROL_RADIUS_M", "15"))


# Scan retry policy (caller-side; the matcher itself never retries)
SCAN_MAX_ATTEMPTS = int(os.getenv("SCAN_MAX_ATTEMPTS", "3"))
SCAN_RETRY_DELAY = float(os.getenv("SCAN_RETRY_DELAY", "2.0"))
SCAN_RETRY_BACKOFF = float(os.getenv("SCAN_RETRY_BACKOFF", "1.0"))
SCAN_EXTRACT_TIMEOUT = float(os.getenv("SCAN_EXTRACT_TIMEOUT", "0")) or None


# Upload limits / validation
IMG_MAX_MB = int(os.getenv("IMG_MAX_MB", "8"))
ALLOWED_IMG_MIMES = {"image/jpeg", "image/png", "image/JPEG", "image/PNG"}


# CORS (front and API on same origin → keep strict; otherwise, add your domain)
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if os.getenv("CORS_ALLOW_ORIGINS") else []
