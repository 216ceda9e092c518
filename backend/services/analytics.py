"""
Read-side attendance statistics.

Everything here is a pure function over record/score dicts as returned by
`database.attendance`; nothing touches storage. "No data" is reported as
None so callers can tell an empty scope apart from a real 0%.
"""
from datetime import date as date_cls
from typing import Any, Iterable, Literal, Sequence

from backend.config import SHORTAGE_THRESHOLD
from backend.engagement import round_half_up

View = Literal["daily", "weekly", "monthly"]

VIEW_DAYS: dict[str, int] = {
    "daily": 0,
    "weekly": 7,
    "monthly": 30,
}
ATTENDED_STATUSES = ("Present", "Late")


def _as_date(value) -> date_cls:
    if isinstance(value, date_cls):
        return value
    return date_cls.fromisoformat(str(value))


def attendance_rate(records: Sequence[dict[str, Any]]) -> int | None:
    if not records:
        return None
    attended = sum(1 for r in records if r["status"] in ATTENDED_STATUSES)
    return round_half_up(attended / len(records) * 100)


def is_shortage(records: Sequence[dict[str, Any]], threshold: int = SHORTAGE_THRESHOLD) -> bool:
    rate = attendance_rate(records)
    return rate is not None and rate < threshold


def average_engagement(scores: Sequence[dict[str, Any]]) -> int | None:
    if not scores:
        return None
    return round_half_up(sum(int(s["score"]) for s in scores) / len(scores))


def day_offset(reference_date, record_date) -> int:
    return (_as_date(reference_date) - _as_date(record_date)).days


def filter_window(
    rows: Iterable[dict[str, Any]],
    reference_date,
    view: View = "daily",
) -> list[dict[str, Any]]:
    """
    Keep rows dated on or before `reference_date` and within the view:
    daily = same day, weekly = the 7 days ending on it, monthly = 30 days.

    The window is half-open: offsets 7 and 30 (D-7, D-30) are excluded, so
    weekly covers exactly seven calendar days including the reference day.
    """
    if view not in VIEW_DAYS:
        raise ValueError(f"Unknown view: {view!r}.")
    days = VIEW_DAYS[view]
    reference = _as_date(reference_date)
    out = []
    for row in rows:
        offset = day_offset(reference, row["date"])
        if offset < 0:
            continue
        if days == 0:
            if offset == 0:
                out.append(row)
        elif offset < days:
            out.append(row)
    return out


def summarize_records(
    records: Sequence[dict[str, Any]],
    scores: Sequence[dict[str, Any]] = (),
) -> dict[str, Any]:
    statuses = [r["status"] for r in records]
    return {
        "total_records": len(records),
        "total_students": len({r["student_id"] for r in records}),
        "present": statuses.count("Present"),
        "late": statuses.count("Late"),
        "absent": statuses.count("Absent"),
        "attendance_rate": attendance_rate(records),
        "shortage": is_shortage(records),
        "average_engagement": average_engagement(scores),
    }


def summarize_students(records: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Per-student totals and rate, sorted by name then roll number."""
    grouped: dict[int, list[dict[str, Any]]] = {}
    for record in records:
        grouped.setdefault(record["student_id"], []).append(record)

    out = []
    for student_id, rows in grouped.items():
        first = rows[0]
        out.append(
            {
                "student_id": student_id,
                "name": first.get("student_name"),
                "roll_no": first.get("roll_no"),
                "total": len(rows),
                "present": sum(1 for r in rows if r["status"] in ATTENDED_STATUSES),
                "percentage": attendance_rate(rows),
                "shortage": is_shortage(rows),
            }
        )
    out.sort(key=lambda s: (str(s["name"] or ""), str(s["roll_no"] or "")))
    return out


def engagement_trend(scores: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {"date": s["date"], "score": int(s["score"])}
        for s in sorted(scores, key=lambda s: _as_date(s["date"]))
    ]


def student_overview(
    records: Sequence[dict[str, Any]],
    scores: Sequence[dict[str, Any]],
) -> dict[str, Any]:
    return {
        "total_classes": len(records),
        "attended": sum(1 for r in records if r["status"] in ATTENDED_STATUSES),
        "attendance_rate": attendance_rate(records),
        "shortage": is_shortage(records),
        "average_engagement": average_engagement(scores),
        "engagement_trend": engagement_trend(scores),
    }
