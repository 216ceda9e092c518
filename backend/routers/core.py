from fastapi import APIRouter

from backend.config import (
    DESCRIPTOR_SIZE,
    FACE_WORKERS,
    MATCH_THRESHOLD,
    SAMPLING_INTERVAL_SECONDS,
    SHORTAGE_THRESHOLD,
)
from database.attendance import ATTENDANCE_STATUSES, RATING_SCORES

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/recognition")
def recognition_config():
    return {
        "match_threshold": MATCH_THRESHOLD,
        "descriptor_size": DESCRIPTOR_SIZE,
        "sampling_interval_seconds": SAMPLING_INTERVAL_SECONDS,
        "face_workers": FACE_WORKERS,
        "shortage_threshold": SHORTAGE_THRESHOLD,
        "attendance_statuses": list(ATTENDANCE_STATUSES),
        "engagement_ratings": RATING_SCORES,
    }
