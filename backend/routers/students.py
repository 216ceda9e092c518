from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from backend.recognizer import ModelMissingError, decode_frame, get_face_matcher, reload_index
from backend.security import require_faculty, require_session
from database.db import (
    get_all_faculty,
    get_enrolled_descriptors,
    get_student,
    get_student_by_user,
    get_students,
    set_student_descriptor,
    update_student_profile,
)

router = APIRouter()


class DescriptorUpdate(BaseModel):
    descriptor: list[float]


class ProfileUpdate(BaseModel):
    name: str
    department: str | None = None
    year: str
    semester: str


def ensure_student_access(session: dict, student_id: int) -> None:
    """Faculty may read any student; a student only their own rows."""
    if session.get("role") == "faculty":
        return
    own = get_student_by_user(int(session["sub"]))
    if not own or own["id"] != student_id:
        raise HTTPException(status_code=403, detail="Not allowed to access this student.")


def _require_student(student_id: int) -> dict:
    student = get_student(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return student


@router.get("/students")
def students(
    year: str | None = None,
    semester: str | None = None,
    _session: dict = Depends(require_faculty),
):
    return get_students(year=year, semester=semester)


@router.get("/students/descriptors")
def descriptors(_session: dict = Depends(require_faculty)):
    return [
        {"id": sid, "name": name, "descriptor": vector}
        for sid, name, vector in get_enrolled_descriptors()
    ]


@router.get("/students/{student_id}")
def student_detail(student_id: int, session: dict = Depends(require_session)):
    ensure_student_access(session, student_id)
    return _require_student(student_id)


@router.put("/students/{student_id}/profile")
def update_profile(student_id: int, payload: ProfileUpdate, session: dict = Depends(require_session)):
    ensure_student_access(session, student_id)
    try:
        ok = update_student_profile(
            student_id,
            name=payload.name,
            department=payload.department,
            year=payload.year,
            semester=payload.semester,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not ok:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"success": True, "student": get_student(student_id)}


@router.post("/students/{student_id}/descriptor")
def update_descriptor(student_id: int, payload: DescriptorUpdate, session: dict = Depends(require_session)):
    ensure_student_access(session, student_id)
    _require_student(student_id)
    try:
        set_student_descriptor(student_id, payload.descriptor)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    templates = reload_index()
    return {"success": True, "student_id": student_id, "templates": templates}


@router.post("/students/{student_id}/faces")
async def enroll_face(
    student_id: int,
    session: dict = Depends(require_session),
    file: UploadFile = File(...),
):
    ensure_student_access(session, student_id)
    _require_student(student_id)

    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    frame = decode_frame(await file.read())
    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    try:
        detections = get_face_matcher().detect(frame)
    except ModelMissingError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if len(detections) == 0:
        raise HTTPException(
            status_code=400,
            detail="Face not detected. Ensure your face is clearly visible and well-lit.",
        )
    if len(detections) > 1:
        raise HTTPException(status_code=400, detail="Multiple faces detected. Capture one face only.")

    set_student_descriptor(student_id, detections[0].descriptor)
    templates = reload_index()
    return {"success": True, "student_id": student_id, "templates": templates}


@router.get("/faculty")
def faculty(_session: dict = Depends(require_session)):
    return [
        {"id": r[0], "name": r[1], "department": r[2]}
        for r in get_all_faculty()
    ]
