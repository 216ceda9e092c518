import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.recognizer as recognizer
import database.db as db

COHORT_YEAR = "2nd Year"
COHORT_TERM = "Semester 3"


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    test_db = tmp_path / "classpulse_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    recognizer.reload_index()
    yield test_db
    recognizer.reload_index()


@pytest.fixture()
def client(test_db):
    with TestClient(main.app) as c:
        yield c


def add_student(name: str, roll_no: str, *, year: str = COHORT_YEAR, semester: str = COHORT_TERM) -> int:
    user_id = db.register_user(
        name=name,
        email=f"{roll_no.lower()}@example.edu",
        password="student-pass",
        role="student",
        roll_no=roll_no,
        department="CSE",
        year=year,
        semester=semester,
    )
    return db.get_student_by_user(user_id)["id"]


def login(client, email: str, password: str, role: str) -> dict:
    res = client.post("/auth/login", json={"email": email, "password": password, "role": role})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture()
def faculty_headers(client):
    res = client.post(
        "/auth/register",
        json={
            "name": "Dr. Rao",
            "email": "rao@example.edu",
            "password": "faculty-pass",
            "role": "faculty",
            "department": "CSE",
        },
    )
    assert res.status_code == 200
    return login(client, "rao@example.edu", "faculty-pass", "faculty")


def unit_vector(index: int, size: int = config.DESCRIPTOR_SIZE) -> list[float]:
    vec = [0.0] * size
    vec[index] = 1.0
    return vec
