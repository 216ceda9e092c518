import csv
import io
import sqlite3
from datetime import date as date_cls
from typing import Literal

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile
from pydantic import BaseModel, Field

from backend.recognizer import Detection, ModelMissingError, decode_frame, get_face_matcher
from backend.routers.students import ensure_student_access
from backend.security import require_faculty, require_session
from backend.services.analytics import (
    filter_window,
    student_overview,
    summarize_records,
    summarize_students,
)
from backend.services.live_session import (
    active_sessions,
    process_detections,
    process_frame,
    push_frame,
    start_loop,
    stop_loop,
)
from database.attendance import (
    get_attendance_records,
    get_engagement_scores,
    mark_present,
    normalize_date,
    open_session,
    record_engagement_observation,
    set_engagement_rating,
    update_attendance_status,
)
from database.db import get_student

router = APIRouter()

EXPORT_COLUMNS = [
    ("student_name", "NAME"),
    ("roll_no", "ROLL NO"),
    ("date", "DATE"),
    ("status", "STATUS"),
    ("subject", "SUBJECT"),
    ("year", "YEAR"),
    ("semester", "SEMESTER"),
    ("session_type", "SESSION"),
    ("faculty_name", "FACULTY"),
    ("engagement_rating", "ENGAGEMENT"),
]


class OpenSessionRequest(BaseModel):
    date: str
    session_key: str
    subject: str | None = None
    year: str
    semester: str
    session_type: str | None = None
    faculty_name: str | None = None
    start_loop: bool = False


class DetectionIn(BaseModel):
    descriptor: list[float]
    expressions: dict[str, float] = Field(default_factory=dict)


class DetectionsRequest(BaseModel):
    date: str
    detections: list[DetectionIn]


class MarkRequest(BaseModel):
    student_id: int
    date: str
    session_key: str


class StatusUpdate(BaseModel):
    status: Literal["Absent", "Present", "Late"]


class RatingUpdate(BaseModel):
    rating: Literal["None", "Low", "Medium", "High"]


class EngagementObservation(BaseModel):
    student_id: int
    date: str
    score: int = Field(ge=0, le=100)


def _today() -> str:
    return date_cls.today().isoformat()


def _clean_date(value: str) -> str:
    try:
        return normalize_date(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _windowed(rows: list[dict], view: str | None, reference_date: str | None) -> list[dict]:
    if not view:
        return rows
    try:
        return filter_window(rows, reference_date or _today(), view)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# -----------------------------
# Session control
# -----------------------------
@router.post("/attendance/sessions")
def create_session(payload: OpenSessionRequest, session: dict = Depends(require_faculty)):
    session_date = _clean_date(payload.date)

    matcher = None
    if payload.start_loop:
        matcher = get_face_matcher()
        try:
            matcher.ensure_loaded()
        except ModelMissingError as e:
            raise HTTPException(status_code=503, detail=str(e))

    try:
        result = open_session(
            date=session_date,
            session_key=payload.session_key,
            subject=payload.subject,
            year=payload.year,
            semester=payload.semester,
            session_type=payload.session_type,
            faculty_name=payload.faculty_name or session.get("name"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    loop_started = False
    if matcher is not None:
        loop_started = start_loop(
            payload.session_key.strip(),
            date=session_date,
            matcher=matcher,
        )

    message = result["message"] or f"Session started. {result['count']} students marked as Absent."
    return {
        "success": True,
        "session_key": payload.session_key.strip(),
        "count": result["count"],
        "message": message,
        "loop_started": loop_started,
    }


@router.get("/attendance/sessions/active")
def list_active_sessions(_session: dict = Depends(require_faculty)):
    return active_sessions()


@router.post("/attendance/sessions/{session_key}/stop")
def stop_session(session_key: str, _session: dict = Depends(require_faculty)):
    status = stop_loop(session_key)
    return {"success": True, "stopped": status is not None, "loop": status}


@router.post("/attendance/sessions/{session_key}/detections")
def submit_detections(
    session_key: str,
    payload: DetectionsRequest,
    _session: dict = Depends(require_faculty),
):
    detections = [Detection(descriptor=d.descriptor, expressions=d.expressions) for d in payload.detections]
    results = process_detections(detections, date=_clean_date(payload.date), session_key=session_key)
    return {
        "faces": len(results),
        "matched": sum(1 for r in results if r["matched"]),
        "results": results,
    }


@router.post("/attendance/sessions/{session_key}/frame")
async def submit_frame(
    session_key: str,
    date: str | None = None,
    _session: dict = Depends(require_faculty),
    file: UploadFile = File(...),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")
    frame_date = _clean_date(date) if date else _today()

    frame = decode_frame(await file.read())
    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    # A running loop samples the latest pushed frame on its own interval.
    if push_frame(session_key, frame):
        return {"queued": True, "faces": None, "results": []}

    try:
        results = process_frame(
            frame,
            matcher=get_face_matcher(),
            date=frame_date,
            session_key=session_key,
        )
    except ModelMissingError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "queued": False,
        "faces": len(results),
        "matched": sum(1 for r in results if r["matched"]),
        "results": results,
    }


# -----------------------------
# Reconciliation
# -----------------------------
@router.post("/attendance/mark")
def mark(payload: MarkRequest, _session: dict = Depends(require_faculty)):
    try:
        updated = mark_present(payload.student_id, payload.date, payload.session_key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "updated": updated}


@router.post("/attendance/{record_id}/status")
def override_status(record_id: int, payload: StatusUpdate, _session: dict = Depends(require_faculty)):
    if not update_attendance_status(record_id, payload.status):
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    return {"success": True}


@router.post("/attendance/{record_id}/engagement")
def rate_engagement(record_id: int, payload: RatingUpdate, _session: dict = Depends(require_faculty)):
    if not set_engagement_rating(record_id, payload.rating):
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    return {"success": True}


@router.post("/engagement")
def save_engagement(payload: EngagementObservation, _session: dict = Depends(require_faculty)):
    try:
        record_engagement_observation(payload.student_id, payload.date, payload.score)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"success": True}


# -----------------------------
# Reads
# -----------------------------
@router.get("/attendance")
def attendance(
    date: str | None = None,
    session_key: str | None = None,
    year: str | None = None,
    semester: str | None = None,
    subject: str | None = None,
    session_type: str | None = None,
    view: Literal["daily", "weekly", "monthly"] | None = None,
    reference_date: str | None = None,
    _session: dict = Depends(require_faculty),
):
    rows = get_attendance_records(
        date=_clean_date(date) if date else None,
        session_key=session_key,
        year=year,
        semester=semester,
        subject=subject,
        session_type=session_type,
    )
    return _windowed(rows, view, reference_date)


@router.get("/attendance/student/{student_id}")
def student_history(student_id: int, session: dict = Depends(require_session)):
    ensure_student_access(session, student_id)
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    history = get_attendance_records(student_id=student_id)
    engagement = get_engagement_scores(student_id=student_id)
    return {
        "history": history,
        "engagement": engagement,
        "stats": student_overview(history, engagement),
    }


@router.get("/attendance/summary")
def summary(
    view: Literal["daily", "weekly", "monthly"] = "daily",
    reference_date: str | None = None,
    year: str | None = None,
    semester: str | None = None,
    subject: str | None = None,
    session_type: str | None = None,
    session_key: str | None = None,
    _session: dict = Depends(require_faculty),
):
    ref = reference_date or _today()
    records = _windowed(
        get_attendance_records(
            year=year,
            semester=semester,
            subject=subject,
            session_type=session_type,
            session_key=session_key,
        ),
        view,
        ref,
    )
    student_ids = {r["student_id"] for r in records}
    scores = [
        s for s in _windowed(get_engagement_scores(), view, ref)
        if s["student_id"] in student_ids
    ]
    return {
        "view": view,
        "reference_date": ref,
        **summarize_records(records, scores),
    }


@router.get("/attendance/students/summary")
def students_summary(
    year: str | None = None,
    semester: str | None = None,
    subject: str | None = None,
    view: Literal["daily", "weekly", "monthly"] | None = None,
    reference_date: str | None = None,
    _session: dict = Depends(require_faculty),
):
    records = _windowed(
        get_attendance_records(year=year, semester=semester, subject=subject),
        view,
        reference_date,
    )
    return summarize_students(records)


@router.get("/attendance/export")
def export_csv(
    date: str | None = None,
    year: str | None = None,
    semester: str | None = None,
    _session: dict = Depends(require_faculty),
):
    rows = get_attendance_records(
        date=_clean_date(date) if date else None,
        year=year,
        semester=semester,
    )

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([title for _, title in EXPORT_COLUMNS])
    for row in rows:
        writer.writerow([row[key] if row[key] is not None else "" for key, _ in EXPORT_COLUMNS])

    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="attendance_export.csv"'},
    )
