import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

ASSETS_DIR = Path(os.getenv("CLASSPULSE_ASSETS_DIR", BASE_DIR / "assets"))
MODELS_DIR = Path(os.getenv("CLASSPULSE_MODELS_DIR", ASSETS_DIR / "models"))
DB_PATH = Path(os.getenv("CLASSPULSE_DB_PATH", BASE_DIR / "database" / "classpulse.db"))
DB_TIMEOUT_SECONDS = float(os.getenv("CLASSPULSE_DB_TIMEOUT_SECONDS", "5"))
SIGNING_KEY = os.getenv("CLASSPULSE_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("CLASSPULSE_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CLASSPULSE_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CLASSPULSE_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CLASSPULSE_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CLASSPULSE_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = os.getenv("CLASSPULSE_LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FILE = os.getenv("CLASSPULSE_LOG_FILE", "").strip() or None

# Identity matching (Euclidean distance on face descriptors; lower = closer)
MATCH_THRESHOLD = float(os.getenv("CLASSPULSE_MATCH_THRESHOLD", "0.6"))
DESCRIPTOR_SIZE = int(os.getenv("CLASSPULSE_DESCRIPTOR_SIZE", "128"))

# Recognition loop
SAMPLING_INTERVAL_SECONDS = max(
    0.1,
    float(os.getenv("CLASSPULSE_SAMPLING_INTERVAL_SECONDS", "2.0")),
)
FACE_WORKERS = max(1, int(os.getenv("CLASSPULSE_FACE_WORKERS", "4")))

# Attendance policy
SHORTAGE_THRESHOLD = int(os.getenv("CLASSPULSE_SHORTAGE_THRESHOLD", "75"))

# OpenCV face matcher models
FACE_DETECTOR_MODEL = Path(
    os.getenv("CLASSPULSE_FACE_DETECTOR_MODEL", MODELS_DIR / "face_detection_yunet_2023mar.onnx")
)
FACE_RECOGNIZER_MODEL = Path(
    os.getenv("CLASSPULSE_FACE_RECOGNIZER_MODEL", MODELS_DIR / "face_recognition_sface_2021dec.onnx")
)
EXPRESSION_MODEL = Path(
    os.getenv("CLASSPULSE_EXPRESSION_MODEL", MODELS_DIR / "emotion-ferplus-8.onnx")
)
DETECTION_SCORE_THRESHOLD = float(os.getenv("CLASSPULSE_DETECTION_SCORE_THRESHOLD", "0.9"))
