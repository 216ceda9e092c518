from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.routers.students import ensure_student_access
from backend.security import require_faculty, require_session
from database.db import (
    create_query,
    get_faculty_by_id,
    get_queries,
    get_student,
    get_user_profile,
    update_query_status,
)

router = APIRouter()


class QueryCreate(BaseModel):
    student_id: int
    faculty_id: int
    subject: str | None = None
    query_text: str


class QueryStatusUpdate(BaseModel):
    status: Literal["Pending", "Reviewed", "Meeting Scheduled", "Resolved"]


@router.post("/queries")
def submit_query(payload: QueryCreate, session: dict = Depends(require_session)):
    ensure_student_access(session, payload.student_id)
    if not get_student(payload.student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    if not get_faculty_by_id(payload.faculty_id):
        raise HTTPException(status_code=404, detail="Faculty not found.")
    try:
        query_id = create_query(payload.student_id, payload.faculty_id, payload.subject, payload.query_text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "id": query_id}


@router.get("/queries/student/{student_id}")
def student_queries(student_id: int, session: dict = Depends(require_session)):
    ensure_student_access(session, student_id)
    return get_queries(student_id=student_id)


@router.get("/queries/faculty/{faculty_id}")
def faculty_queries(faculty_id: int, session: dict = Depends(require_faculty)):
    own = get_user_profile(int(session["sub"]), "faculty")
    if not own or own["id"] != faculty_id:
        raise HTTPException(status_code=403, detail="Not allowed to access these queries.")
    return get_queries(faculty_id=faculty_id)


@router.post("/queries/{query_id}/status")
def set_query_status(query_id: int, payload: QueryStatusUpdate, _session: dict = Depends(require_faculty)):
    if not update_query_status(query_id, payload.status):
        raise HTTPException(status_code=404, detail="Query not found.")
    return {"success": True}
