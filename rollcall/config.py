import os
from pathlib import Path

import torch


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("ROLLCALL_DATA_DIR", str(BASE_DIR / "data")))
LOG_DIR = Path(os.getenv("ROLLCALL_LOG_DIR", str(BASE_DIR / "logs")))
DB_PATH = DATA_DIR / "descriptors.db"
QUEUE_DB_PATH = DATA_DIR / "attendance_queue.db"
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper()

# Webcam settings
CAMERA_INDEX = _int_env("ROLLCALL_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("ROLLCALL_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("ROLLCALL_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("ROLLCALL_FRAME_FPS", 30)
CAMERA_SCAN_MAX_INDEX = _int_env("ROLLCALL_CAMERA_SCAN_MAX_INDEX", 8)
CAMERA_READY_TIMEOUT_SECONDS = _float_env("ROLLCALL_CAMERA_READY_TIMEOUT_SECONDS", 10.0)
SURFACE_RETRY_ATTEMPTS = _int_env("ROLLCALL_SURFACE_RETRY_ATTEMPTS", 20)
SURFACE_RETRY_DELAY_SECONDS = _float_env("ROLLCALL_SURFACE_RETRY_DELAY_SECONDS", 0.2)
SURFACE_REBIND_DELAY_SECONDS = _float_env("ROLLCALL_SURFACE_REBIND_DELAY_SECONDS", 1.0)

# Detection settings
FACE_DETECTION_THRESHOLD = _float_env("ROLLCALL_FACE_DETECTION_THRESHOLD", 0.75)
MIN_FACE_SIZE = _int_env("ROLLCALL_MIN_FACE_SIZE", 80)

# Enrollment settings
ENROLLMENT_SAMPLES = _int_env("ROLLCALL_ENROLLMENT_SAMPLES", 3)
ENROLLMENT_SAMPLE_DELAY_SECONDS = _float_env("ROLLCALL_ENROLLMENT_SAMPLE_DELAY_SECONDS", 0.5)
ENROLL_REQUIRE_SINGLE_FACE = _bool_env("ROLLCALL_ENROLL_SINGLE_FACE", False)

# Recognition settings
# Euclidean distance in descriptor space. On unit-length descriptors 0.6
# is the same cut as a cosine similarity of 0.82.
MATCH_THRESHOLD = _float_env("ROLLCALL_MATCH_THRESHOLD", 0.6)
RECOGNITION_INTERVAL_SECONDS = _float_env("ROLLCALL_RECOGNITION_INTERVAL_SECONDS", 1.0)
ATTENDANCE_COOLDOWN_SECONDS = _int_env("ROLLCALL_ATTENDANCE_COOLDOWN_SECONDS", 5)

# Attendance backend
API_BASE_URL = os.getenv("ROLLCALL_API_BASE_URL", "http://localhost:3000/api/v1").rstrip("/")
API_TOKEN = os.getenv("ROLLCALL_API_TOKEN", "")
API_TIMEOUT_SECONDS = _float_env("ROLLCALL_API_TIMEOUT_SECONDS", 8.0)
QUEUE_MAX_ITEMS = _int_env("ROLLCALL_QUEUE_MAX_ITEMS", 5000)
QUEUE_FLUSH_BATCH = _int_env("ROLLCALL_QUEUE_FLUSH_BATCH", 20)

# Runtime settings
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
