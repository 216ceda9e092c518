from datetime import date as date_cls
from typing import Any

from backend.logger import get_logger
from database.db import connect_db, transaction

logger = get_logger("attendance")


ATTENDANCE_STATUSES: tuple[str, ...] = ("Absent", "Present", "Late")
RATING_SCORES: dict[str, int] = {
    "High": 90,
    "Medium": 60,
    "Low": 30,
    "None": 0,
}
NO_STUDENTS_MESSAGE = "No students found for this class."


def _require(value: str | None, field: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValueError(f"{field} is required.")
    return clean


def normalize_date(value: str | None) -> str:
    """Validate an ISO date and return it in canonical YYYY-MM-DD form."""
    clean = _require(value, "date")
    try:
        return date_cls.fromisoformat(clean).isoformat()
    except ValueError:
        raise ValueError(f"date must be YYYY-MM-DD, got {clean!r}.")


# -----------------------------
# Session lifecycle
# -----------------------------
def open_session(
    *,
    date: str,
    session_key: str,
    subject: str | None,
    year: str,
    semester: str,
    session_type: str | None = None,
    faculty_name: str | None = None,
) -> dict[str, Any]:
    """
    Seed an Absent attendance row for every student of the (year, semester)
    cohort under (date, session_key).

    Re-opening the same key only creates rows for students that were not yet
    seeded. An empty cohort is reported through `message`, not raised.

    Returns:
      {"count": <rows created>, "message": str | None}
    """
    clean_date = normalize_date(date)
    clean_key = _require(session_key, "session_key")
    clean_year = _require(year, "year")
    clean_semester = _require(semester, "semester")

    with transaction(immediate=True) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id
            FROM students
            WHERE year = ? AND semester = ?
            ORDER BY id
            """,
            (clean_year, clean_semester),
        )
        student_ids = [int(r[0]) for r in cur.fetchall()]

        if not student_ids:
            logger.info(
                "Session %s on %s: no students in %s %s",
                clean_key,
                clean_date,
                clean_year,
                clean_semester,
            )
            return {"count": 0, "message": NO_STUDENTS_MESSAGE}

        created = 0
        for student_id in student_ids:
            # UNIQUE(student_id, date, session_id) makes an existing row a no-op.
            cur.execute(
                """
                INSERT OR IGNORE INTO attendance (
                    student_id,
                    date,
                    session_id,
                    subject,
                    year,
                    semester,
                    session_type,
                    faculty_name,
                    status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'Absent')
                """,
                (
                    student_id,
                    clean_date,
                    clean_key,
                    subject,
                    clean_year,
                    clean_semester,
                    session_type,
                    faculty_name,
                ),
            )
            created += cur.rowcount

    logger.info("Session %s on %s: seeded %d absent record(s)", clean_key, clean_date, created)
    return {"count": created, "message": None}


# -----------------------------
# Reconciliation
# -----------------------------
def mark_present(student_id: int, date: str, session_key: str) -> bool:
    """
    Set the seeded record for (student, date, session_key) to Present.

    Returns False without writing anything when no such record exists; a
    detection may arrive before seeding or for a student outside the cohort.
    """
    clean_date = normalize_date(date)

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE attendance
            SET status = 'Present'
            WHERE student_id = ? AND date = ? AND session_id = ?
            """,
            (student_id, clean_date, session_key),
        )
        updated = cur.rowcount > 0

    if not updated:
        logger.debug("mark_present ignored: no record for student %s on %s/%s", student_id, clean_date, session_key)
    return updated


def _upsert_engagement_score(cur, student_id: int, date: str, score: int) -> None:
    cur.execute(
        """
        INSERT INTO engagement_scores (student_id, score, date)
        VALUES (?, ?, ?)
        ON CONFLICT(student_id, date) DO UPDATE SET score = excluded.score
        """,
        (student_id, score, date),
    )


def record_engagement_observation(student_id: int, date: str, score: int) -> None:
    """Keep only the latest score for (student, date)."""
    if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
        raise ValueError(f"score must be an integer in [0, 100], got {score!r}.")
    clean_date = normalize_date(date)

    with transaction() as conn:
        _upsert_engagement_score(conn.cursor(), student_id, clean_date, score)


def set_engagement_rating(record_id: int, rating: str) -> bool:
    """
    Write the rating label on an attendance record and the matching numeric
    score for the record's (student, date) in one transaction.

    Returns False (and writes nothing) when the record does not exist.
    """
    if rating not in RATING_SCORES:
        raise ValueError(f"Invalid engagement rating: {rating!r}.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute("SELECT student_id, date FROM attendance WHERE id = ?", (record_id,))
        row = cur.fetchone()
        if not row:
            return False
        student_id, record_date = row
        cur.execute(
            "UPDATE attendance SET engagement_rating = ? WHERE id = ?",
            (rating, record_id),
        )
        _upsert_engagement_score(cur, int(student_id), str(record_date), RATING_SCORES[rating])

    logger.info("Record %s rated %s", record_id, rating)
    return True


def update_attendance_status(record_id: int, status: str) -> bool:
    """Manual override; any status may be set regardless of the current one."""
    if status not in ATTENDANCE_STATUSES:
        raise ValueError(f"Invalid attendance status: {status!r}.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE attendance SET status = ? WHERE id = ?", (status, record_id))
        updated = cur.rowcount > 0

    if updated:
        logger.info("Record %s manually set to %s", record_id, status)
    return updated


# -----------------------------
# Reads
# -----------------------------
def _record_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "student_id": row[1],
        "student_name": row[2],
        "roll_no": row[3],
        "date": row[4],
        "status": row[5],
        "session_id": row[6],
        "subject": row[7],
        "year": row[8],
        "semester": row[9],
        "session_type": row[10],
        "faculty_name": row[11],
        "engagement_rating": row[12],
    }


def get_attendance_records(
    *,
    student_id: int | None = None,
    date: str | None = None,
    session_key: str | None = None,
    year: str | None = None,
    semester: str | None = None,
    subject: str | None = None,
    session_type: str | None = None,
) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if student_id is not None:
        where.append("a.student_id = ?")
        params.append(student_id)
    if date is not None:
        where.append("a.date = ?")
        params.append(normalize_date(date))
    if session_key is not None:
        where.append("a.session_id = ?")
        params.append(session_key)
    if year is not None:
        where.append("a.year = ?")
        params.append(year)
    if semester is not None:
        where.append("a.semester = ?")
        params.append(semester)
    if subject is not None:
        where.append("a.subject = ?")
        params.append(subject)
    if session_type is not None:
        where.append("a.session_type = ?")
        params.append(session_type)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            a.id,
            a.student_id,
            u.name,
            s.student_id,
            a.date,
            a.status,
            a.session_id,
            a.subject,
            a.year,
            a.semester,
            a.session_type,
            a.faculty_name,
            a.engagement_rating
        FROM attendance a
        JOIN students s ON s.id = a.student_id
        JOIN users u ON u.id = s.user_id
        WHERE {" AND ".join(where)}
        ORDER BY a.date DESC, a.id DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows]


def get_attendance_record(record_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            a.id, a.student_id, u.name, s.student_id, a.date, a.status, a.session_id,
            a.subject, a.year, a.semester, a.session_type, a.faculty_name, a.engagement_rating
        FROM attendance a
        JOIN students s ON s.id = a.student_id
        JOIN users u ON u.id = s.user_id
        WHERE a.id = ?
        """,
        (record_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def get_engagement_scores(*, student_id: int | None = None) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    if student_id is None:
        cur.execute("SELECT id, student_id, score, date FROM engagement_scores ORDER BY date, id")
    else:
        cur.execute(
            """
            SELECT id, student_id, score, date
            FROM engagement_scores
            WHERE student_id = ?
            ORDER BY date, id
            """,
            (student_id,),
        )
    rows = cur.fetchall()
    conn.close()
    return [
        {"id": r[0], "student_id": r[1], "score": int(r[2]), "date": r[3]}
        for r in rows
    ]
