import hashlib
import hmac
import json
import secrets
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Literal

from backend.config import DB_PATH, DB_TIMEOUT_SECONDS, DESCRIPTOR_SIZE
from backend.logger import get_logger

logger = get_logger("database")

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

Role = Literal["student", "faculty"]
QUERY_STATUSES: tuple[str, ...] = ("Pending", "Reviewed", "Meeting Scheduled", "Resolved")


class StorageUnavailableError(Exception):
    """
    The store rejected or timed out a read/write (locked file, busy writer).

    Every attendance write is idempotent, so callers may simply retry.
    """

    retryable = True


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(*, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Open a connection, yield it, commit on success and roll back on error.

    `immediate=True` takes the write lock up front (single writer) so a
    check-then-insert inside the block cannot interleave with another writer.
    """
    conn = connect_db()
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except sqlite3.OperationalError as exc:
        conn.rollback()
        logger.warning("Storage operation failed: %s", exc)
        raise StorageUnavailableError(str(exc)) from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('student', 'faculty')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        student_id TEXT NOT NULL UNIQUE,  -- roll number
        department TEXT,
        year TEXT,
        semester TEXT,
        face_descriptor TEXT,             -- JSON float array
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS faculty (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        department TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """)

    # One row per (student, date, session); seeded Absent when a session opens.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        date TEXT NOT NULL,               -- YYYY-MM-DD
        status TEXT NOT NULL DEFAULT 'Absent'
            CHECK(status IN ('Absent', 'Present', 'Late')),
        session_id TEXT NOT NULL,
        subject TEXT,
        year TEXT,
        semester TEXT,
        session_type TEXT,                -- Morning | Afternoon | ...
        faculty_name TEXT,
        engagement_rating TEXT
            CHECK(engagement_rating IS NULL OR engagement_rating IN ('None', 'Low', 'Medium', 'High')),
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        UNIQUE(student_id, date, session_id)
    )
    """)

    # Latest engagement sample per student per day.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS engagement_scores (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        score INTEGER NOT NULL CHECK(score BETWEEN 0 AND 100),
        date TEXT NOT NULL,
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        UNIQUE(student_id, date)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS student_queries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        faculty_id INTEGER NOT NULL,
        subject TEXT,
        query_text TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        FOREIGN KEY (faculty_id) REFERENCES faculty(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_students_cohort ON students(year, semester)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance(date)")

    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def register_user(
    *,
    name: str,
    email: str,
    password: str,
    role: Role,
    roll_no: str | None = None,
    department: str | None = None,
    year: str | None = None,
    semester: str | None = None,
) -> int:
    """
    Create a user plus its student/faculty profile and return `users.id`.

    Raises ValueError on missing fields and sqlite3.IntegrityError when the
    email or roll number is already taken.
    """
    clean_name = (name or "").strip()
    clean_email = (email or "").strip()
    clean_password = (password or "").strip()
    if not clean_name or not clean_email or not clean_password:
        raise ValueError("Name, email and password are required.")
    if role not in ("student", "faculty"):
        raise ValueError("Role must be 'student' or 'faculty'.")

    clean_roll = (roll_no or "").strip()
    clean_year = (year or "").strip()
    clean_semester = (semester or "").strip()
    if role == "student" and (not clean_roll or not clean_year or not clean_semester):
        raise ValueError("Students need a roll number, year and semester.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO users (name, email, password_hash, role)
            VALUES (?, ?, ?, ?)
            """,
            (clean_name, clean_email, _hash_password(clean_password), role),
        )
        user_id = int(cur.lastrowid)

        if role == "student":
            cur.execute(
                """
                INSERT INTO students (user_id, student_id, department, year, semester)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, clean_roll, department, clean_year, clean_semester),
            )
        else:
            cur.execute(
                """
                INSERT INTO faculty (user_id, department)
                VALUES (?, ?)
                """,
                (user_id, department),
            )

    logger.info("Registered %s user %s", role, user_id)
    return user_id


def verify_user_credentials(email: str, password: str, role: Role) -> dict | None:
    clean_email = (email or "").strip()
    clean_password = (password or "").strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, email, password_hash, role
        FROM users
        WHERE email = ? COLLATE NOCASE AND role = ?
        """,
        (clean_email, role),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    user_id, name, saved_email, password_hash, saved_role = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": user_id, "name": name, "email": saved_email, "role": saved_role}


def get_user_profile(user_id: int, role: Role) -> dict | None:
    if role == "student":
        return get_student_by_user(user_id)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT f.id, u.name, f.department
        FROM faculty f
        JOIN users u ON u.id = f.user_id
        WHERE f.user_id = ?
        """,
        (user_id,),
    )
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return {"id": row[0], "name": row[1], "department": row[2]}


# -----------------------------
# Students
# -----------------------------
_STUDENT_COLUMNS = """
    s.id, s.user_id, u.name, u.email, s.student_id, s.department, s.year, s.semester,
    s.face_descriptor IS NOT NULL
"""


def _student_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "user_id": row[1],
        "name": row[2],
        "email": row[3],
        "roll_no": row[4],
        "department": row[5],
        "year": row[6],
        "semester": row[7],
        "enrolled": bool(row[8]),
    }


def get_students(year: str | None = None, semester: str | None = None) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []
    if year is not None:
        where.append("s.year = ?")
        params.append(year)
    if semester is not None:
        where.append("s.semester = ?")
        params.append(semester)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students s
        JOIN users u ON u.id = s.user_id
        WHERE {" AND ".join(where)}
        ORDER BY u.name
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_student_from_row(r) for r in rows]


def get_student(student_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students s
        JOIN users u ON u.id = s.user_id
        WHERE s.id = ?
        """,
        (student_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _student_from_row(row) if row else None


def get_student_by_user(user_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students s
        JOIN users u ON u.id = s.user_id
        WHERE s.user_id = ?
        """,
        (user_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _student_from_row(row) if row else None


def update_student_profile(
    student_id: int,
    *,
    name: str,
    department: str | None,
    year: str,
    semester: str,
) -> bool:
    clean_name = (name or "").strip()
    clean_year = (year or "").strip()
    clean_semester = (semester or "").strip()
    if not clean_name or not clean_year or not clean_semester:
        raise ValueError("Name, year and semester are required.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute("SELECT user_id FROM students WHERE id = ?", (student_id,))
        row = cur.fetchone()
        if not row:
            return False
        cur.execute("UPDATE users SET name = ? WHERE id = ?", (clean_name, row[0]))
        cur.execute(
            """
            UPDATE students
            SET department = ?, year = ?, semester = ?
            WHERE id = ?
            """,
            (department, clean_year, clean_semester, student_id),
        )
    return True


def set_student_descriptor(student_id: int, descriptor: list[float]) -> bool:
    """
    Store (or replace) a student's face template. Re-enrollment overwrites.
    """
    if len(descriptor) != DESCRIPTOR_SIZE:
        raise ValueError(f"Descriptor must have {DESCRIPTOR_SIZE} values, got {len(descriptor)}.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE students SET face_descriptor = ? WHERE id = ?",
            (json.dumps([float(v) for v in descriptor]), student_id),
        )
        updated = cur.rowcount > 0
    if updated:
        logger.info("Stored face descriptor for student %s", student_id)
    return updated


def get_enrolled_descriptors() -> list[tuple[int, str, list[float]]]:
    """
    Return (student id, name, descriptor) for every enrolled student, in
    enrollment-table order.
    """
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT s.id, u.name, s.face_descriptor
        FROM students s
        JOIN users u ON u.id = s.user_id
        WHERE s.face_descriptor IS NOT NULL
        ORDER BY s.id
        """
    )
    rows = cur.fetchall()
    conn.close()

    out: list[tuple[int, str, list[float]]] = []
    for student_id, name, raw in rows:
        try:
            vector = json.loads(raw)
        except ValueError:
            logger.warning("Skipping unreadable descriptor for student %s", student_id)
            continue
        out.append((int(student_id), str(name), [float(v) for v in vector]))
    return out


# -----------------------------
# Faculty
# -----------------------------
def get_all_faculty():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT f.id, u.name, f.department
        FROM faculty f
        JOIN users u ON u.id = f.user_id
        ORDER BY u.name
    """)
    rows = cur.fetchall()
    conn.close()
    return rows


def get_faculty_by_id(faculty_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id FROM faculty WHERE id = ?", (faculty_id,))
    row = cur.fetchone()
    conn.close()
    return row


# -----------------------------
# Student queries
# -----------------------------
def create_query(student_id: int, faculty_id: int, subject: str | None, query_text: str) -> int:
    clean_text = (query_text or "").strip()
    if not clean_text:
        raise ValueError("Query text is required.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO student_queries (student_id, faculty_id, subject, query_text)
            VALUES (?, ?, ?, ?)
            """,
            (student_id, faculty_id, subject, clean_text),
        )
        return int(cur.lastrowid)


def _query_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "student_id": row[1],
        "faculty_id": row[2],
        "subject": row[3],
        "query_text": row[4],
        "status": row[5],
        "created_at": row[6],
        "counterpart_name": row[7],
        "roll_no": row[8],
    }


def get_queries(*, student_id: int | None = None, faculty_id: int | None = None) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []
    if student_id is not None:
        where.append("q.student_id = ?")
        params.append(student_id)
    if faculty_id is not None:
        where.append("q.faculty_id = ?")
        params.append(faculty_id)

    # counterpart: faculty name for a student's view, student name for faculty's
    counterpart = "fu.name" if student_id is not None else "su.name"

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT q.id, q.student_id, q.faculty_id, q.subject, q.query_text, q.status,
               q.created_at, {counterpart}, s.student_id
        FROM student_queries q
        JOIN students s ON s.id = q.student_id
        JOIN users su ON su.id = s.user_id
        JOIN faculty f ON f.id = q.faculty_id
        JOIN users fu ON fu.id = f.user_id
        WHERE {" AND ".join(where)}
        ORDER BY q.created_at DESC, q.id DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_query_from_row(r) for r in rows]


def update_query_status(query_id: int, status: str) -> bool:
    if status not in QUERY_STATUSES:
        raise ValueError(f"Invalid query status: {status!r}.")

    with transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE student_queries SET status = ? WHERE id = ?", (status, query_id))
        return cur.rowcount > 0
