import csv
import io

import database.attendance as attendance
import database.db as db
from backend.tests.conftest import COHORT_TERM, COHORT_YEAR, add_student, login, unit_vector

DAY = "2026-03-02"


def _open_session(client, headers, session_key="SESS-API", **overrides):
    payload = {
        "date": DAY,
        "session_key": session_key,
        "subject": "Operating Systems",
        "year": COHORT_YEAR,
        "semester": COHORT_TERM,
        "session_type": "Morning",
    }
    payload.update(overrides)
    return client.post("/attendance/sessions", json=payload, headers=headers)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_recognition_config_reports_defaults(client):
    res = client.get("/config/recognition")
    assert res.status_code == 200
    payload = res.json()
    assert payload["match_threshold"] == 0.6
    assert payload["descriptor_size"] == 128
    assert payload["sampling_interval_seconds"] == 2.0
    assert payload["shortage_threshold"] == 75
    assert payload["engagement_ratings"]["High"] == 90


def test_register_and_login_student(client):
    res = client.post(
        "/auth/register",
        json={
            "name": "Asha",
            "email": "asha@example.edu",
            "password": "pw-123",
            "role": "student",
            "roll_no": "CS201",
            "year": COHORT_YEAR,
            "semester": COHORT_TERM,
        },
    )
    assert res.status_code == 200

    headers = login(client, "asha@example.edu", "pw-123", "student")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    body = me.json()
    assert body["role"] == "student"
    assert body["profile"]["roll_no"] == "CS201"


def test_register_duplicate_email_conflicts(client, faculty_headers):
    res = client.post(
        "/auth/register",
        json={"name": "Copy", "email": "rao@example.edu", "password": "x", "role": "faculty"},
    )
    assert res.status_code == 409


def test_register_student_requires_cohort(client):
    res = client.post(
        "/auth/register",
        json={"name": "NoCohort", "email": "nc@example.edu", "password": "x", "role": "student", "roll_no": "CS9"},
    )
    assert res.status_code == 400


def test_login_rejects_invalid_credentials(client, faculty_headers):
    res = client.post(
        "/auth/login",
        json={"email": "rao@example.edu", "password": "wrong-password", "role": "faculty"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."


def test_endpoints_require_session(client):
    res = client.get("/attendance")
    assert res.status_code == 401
    assert res.json()["detail"] == "Missing bearer token."

    res = client.post("/attendance/mark", json={"student_id": 1, "date": DAY, "session_key": "S"})
    assert res.status_code == 401


def test_students_cannot_control_sessions(client):
    add_student("Asha", "CS201")
    headers = login(client, "cs201@example.edu", "student-pass", "student")

    res = _open_session(client, headers)
    assert res.status_code == 403
    assert res.json()["detail"] == "Faculty access required."


def test_open_session_and_mark_flow(client, faculty_headers):
    asha = add_student("Asha", "CS201")
    bilal = add_student("Bilal", "CS202")
    add_student("Chen", "CS203")

    res = _open_session(client, faculty_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 3
    assert body["message"] == "Session started. 3 students marked as Absent."
    assert body["loop_started"] is False

    again = _open_session(client, faculty_headers)
    assert again.json()["count"] == 0

    for _ in range(3):
        res = client.post(
            "/attendance/mark",
            json={"student_id": asha, "date": DAY, "session_key": "SESS-API"},
            headers=faculty_headers,
        )
        assert res.status_code == 200
        assert res.json() == {"success": True, "updated": True}

    missing = client.post(
        "/attendance/mark",
        json={"student_id": bilal, "date": DAY, "session_key": "SESS-UNKNOWN"},
        headers=faculty_headers,
    )
    assert missing.status_code == 200
    assert missing.json() == {"success": True, "updated": False}

    rows = client.get("/attendance", params={"session_key": "SESS-API"}, headers=faculty_headers).json()
    assert len(rows) == 3
    assert {r["student_name"]: r["status"] for r in rows} == {
        "Asha": "Present",
        "Bilal": "Absent",
        "Chen": "Absent",
    }
    assert all(r["faculty_name"] == "Dr. Rao" for r in rows)

    summary = client.get(
        "/attendance/summary",
        params={"view": "daily", "reference_date": DAY, "session_key": "SESS-API"},
        headers=faculty_headers,
    ).json()
    assert summary["attendance_rate"] == 33
    assert summary["shortage"] is True
    assert summary["present"] == 1
    assert summary["absent"] == 2


def test_open_session_empty_cohort(client, faculty_headers):
    res = _open_session(client, faculty_headers, year="4th Year")
    assert res.status_code == 200
    assert res.json()["count"] == 0
    assert res.json()["message"] == "No students found for this class."


def test_open_session_validation_error(client, faculty_headers):
    res = _open_session(client, faculty_headers, semester=" ")
    assert res.status_code == 400
    assert res.json()["detail"] == "semester is required."


def test_detections_endpoint_resolves_enrolled_faces(client, faculty_headers):
    asha = add_student("Asha", "CS201")
    add_student("Bilal", "CS202")
    student_headers = login(client, "cs201@example.edu", "student-pass", "student")

    res = client.post(
        f"/students/{asha}/descriptor",
        json={"descriptor": unit_vector(0)},
        headers=student_headers,
    )
    assert res.status_code == 200
    assert res.json()["templates"] == 1

    _open_session(client, faculty_headers, session_key="SESS-CAM")
    res = client.post(
        "/attendance/sessions/SESS-CAM/detections",
        json={
            "date": DAY,
            "detections": [
                {"descriptor": unit_vector(0), "expressions": {"happy": 0.7, "neutral": 0.2, "sad": 0.1}},
                {"descriptor": unit_vector(3), "expressions": {}},
            ],
        },
        headers=faculty_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["faces"] == 2
    assert body["matched"] == 1
    assert body["results"][0]["student_id"] == asha
    assert body["results"][0]["engagement"] == 90

    history = client.get(f"/attendance/student/{asha}", headers=student_headers)
    assert history.status_code == 200
    data = history.json()
    assert data["history"][0]["status"] == "Present"
    assert data["engagement"][0]["score"] == 90
    assert data["stats"]["attendance_rate"] == 100
    assert data["stats"]["shortage"] is False


def test_detections_endpoint_rejects_bad_date(client, faculty_headers):
    res = client.post(
        "/attendance/sessions/SESS-CAM/detections",
        json={"date": "05/03/2026", "detections": [{"descriptor": unit_vector(0)}]},
        headers=faculty_headers,
    )
    assert res.status_code == 400
    assert "YYYY-MM-DD" in res.json()["detail"]


def test_mark_rejects_bad_date(client, faculty_headers):
    res = client.post(
        "/attendance/mark",
        json={"student_id": 1, "date": "tomorrow", "session_key": "SESS-API"},
        headers=faculty_headers,
    )
    assert res.status_code == 400


def test_open_session_with_loop_requires_models(client, faculty_headers, monkeypatch, tmp_path):
    import backend.routers.attendance as attendance_router
    from backend.recognizer import OpenCVFaceMatcher

    matcher = OpenCVFaceMatcher(
        detector_model=tmp_path / "yunet.onnx",
        recognizer_model=tmp_path / "sface.onnx",
        expression_model=tmp_path / "ferplus.onnx",
    )
    monkeypatch.setattr(attendance_router, "get_face_matcher", lambda: matcher)
    add_student("Asha", "CS201")

    res = _open_session(client, faculty_headers, session_key="SESS-LIVE", start_loop=True)
    assert res.status_code == 503
    assert "Model file not found" in res.json()["detail"]
    assert client.get("/attendance/sessions/active", headers=faculty_headers).json() == []
    assert attendance.get_attendance_records(session_key="SESS-LIVE") == []


def test_student_cannot_read_other_history(client):
    add_student("Asha", "CS201")
    bilal = add_student("Bilal", "CS202")
    headers = login(client, "cs201@example.edu", "student-pass", "student")

    res = client.get(f"/attendance/student/{bilal}", headers=headers)
    assert res.status_code == 403


def test_student_history_unknown_student(client, faculty_headers):
    res = client.get("/attendance/student/999", headers=faculty_headers)
    assert res.status_code == 404


def test_manual_status_and_rating(client, faculty_headers):
    asha = add_student("Asha", "CS201")
    _open_session(client, faculty_headers)
    record_id = attendance.get_attendance_records(student_id=asha)[0]["id"]

    res = client.post(f"/attendance/{record_id}/status", json={"status": "Late"}, headers=faculty_headers)
    assert res.status_code == 200
    res = client.post(f"/attendance/{record_id}/status", json={"status": "Excused"}, headers=faculty_headers)
    assert res.status_code == 422

    res = client.post(f"/attendance/{record_id}/engagement", json={"rating": "Medium"}, headers=faculty_headers)
    assert res.status_code == 200

    record = attendance.get_attendance_record(record_id)
    assert record["status"] == "Late"
    assert record["engagement_rating"] == "Medium"
    assert attendance.get_engagement_scores(student_id=asha)[0]["score"] == 60

    res = client.post("/attendance/9999/engagement", json={"rating": "High"}, headers=faculty_headers)
    assert res.status_code == 404


def test_engagement_observation_endpoint(client, faculty_headers):
    asha = add_student("Asha", "CS201")
    for score in (40, 75):
        res = client.post(
            "/engagement",
            json={"student_id": asha, "date": DAY, "score": score},
            headers=faculty_headers,
        )
        assert res.status_code == 200

    scores = attendance.get_engagement_scores(student_id=asha)
    assert [s["score"] for s in scores] == [75]

    res = client.post(
        "/engagement",
        json={"student_id": asha, "date": DAY, "score": 140},
        headers=faculty_headers,
    )
    assert res.status_code == 422


def test_weekly_view_and_student_summary(client, faculty_headers):
    asha = add_student("Asha", "CS201")
    _open_session(client, faculty_headers, session_key="S1", date="2026-03-01")
    _open_session(client, faculty_headers, session_key="S2", date="2026-03-05")
    _open_session(client, faculty_headers, session_key="S3", date="2026-03-12")
    attendance.mark_present(asha, "2026-03-05", "S2")

    rows = client.get(
        "/attendance",
        params={"view": "weekly", "reference_date": "2026-03-06"},
        headers=faculty_headers,
    ).json()
    assert sorted(r["session_id"] for r in rows) == ["S1", "S2"]

    summary = client.get(
        "/attendance/students/summary",
        params={"view": "monthly", "reference_date": "2026-03-06"},
        headers=faculty_headers,
    ).json()
    assert summary == [
        {
            "student_id": asha,
            "name": "Asha",
            "roll_no": "CS201",
            "total": 2,
            "present": 1,
            "percentage": 50,
            "shortage": True,
        }
    ]

    bad = client.get(
        "/attendance/summary",
        params={"view": "weekly", "reference_date": "not-a-date"},
        headers=faculty_headers,
    )
    assert bad.status_code == 400


def test_summary_with_no_records_reports_no_data(client, faculty_headers):
    res = client.get("/attendance/summary", params={"reference_date": DAY}, headers=faculty_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["attendance_rate"] is None
    assert body["average_engagement"] is None
    assert body["shortage"] is False


def test_export_csv(client, faculty_headers):
    add_student("Asha", "CS201")
    _open_session(client, faculty_headers)

    res = client.get("/attendance/export", headers=faculty_headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")

    rows = list(csv.reader(io.StringIO(res.text)))
    assert rows[0] == [
        "NAME", "ROLL NO", "DATE", "STATUS", "SUBJECT", "YEAR", "SEMESTER", "SESSION", "FACULTY", "ENGAGEMENT",
    ]
    assert rows[1][:4] == ["Asha", "CS201", DAY, "Absent"]
    assert rows[1][7:9] == ["Morning", "Dr. Rao"]


def test_frame_upload_rejects_invalid_image(client, faculty_headers):
    files = {"file": ("frame.jpg", b"not-an-image", "image/jpeg")}
    res = client.post("/attendance/sessions/SESS-API/frame", files=files, headers=faculty_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid image data."


def test_stop_unknown_session_loop(client, faculty_headers):
    res = client.post("/attendance/sessions/SESS-NONE/stop", headers=faculty_headers)
    assert res.status_code == 200
    assert res.json() == {"success": True, "stopped": False, "loop": None}
    assert client.get("/attendance/sessions/active", headers=faculty_headers).json() == []


def test_storage_busy_maps_to_503(client, faculty_headers, monkeypatch):
    import backend.routers.attendance as attendance_router

    def busy(*_args, **_kwargs):
        raise db.StorageUnavailableError("database is locked")

    monkeypatch.setattr(attendance_router, "mark_present", busy)
    res = client.post(
        "/attendance/mark",
        json={"student_id": 1, "date": DAY, "session_key": "S"},
        headers=faculty_headers,
    )
    assert res.status_code == 503
    assert res.headers["retry-after"] == "1"
    assert res.json()["retryable"] is True


def test_student_queries_flow(client, faculty_headers):
    asha = add_student("Asha", "CS201")
    student_headers = login(client, "cs201@example.edu", "student-pass", "student")
    faculty_id = client.get("/faculty", headers=student_headers).json()[0]["id"]

    res = client.post(
        "/queries",
        json={"student_id": asha, "faculty_id": faculty_id, "subject": "OS", "query_text": "Can we meet?"},
        headers=student_headers,
    )
    assert res.status_code == 200
    query_id = res.json()["id"]

    inbox = client.get(f"/queries/faculty/{faculty_id}", headers=faculty_headers).json()
    assert inbox[0]["counterpart_name"] == "Asha"
    assert inbox[0]["status"] == "Pending"

    res = client.post(f"/queries/{query_id}/status", json={"status": "Meeting Scheduled"}, headers=faculty_headers)
    assert res.status_code == 200

    mine = client.get(f"/queries/student/{asha}", headers=student_headers).json()
    assert mine[0]["status"] == "Meeting Scheduled"
    assert mine[0]["counterpart_name"] == "Dr. Rao"
