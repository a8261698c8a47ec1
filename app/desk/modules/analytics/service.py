from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.desk.constants import FINAL_STATUSES, PRIORITIES, STATUSES
from app.desk.models import Role, User
from app.desk.modules.complaints.models import Category, Complaint
from app.desk.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def _avg_hours(pairs: list[tuple[datetime | None, datetime | None]]) -> float | None:
    spans = [(end - start).total_seconds() / 3600 for start, end in pairs if start and end and end >= start]
    if not spans:
        return None
    return round(sum(spans) / len(spans), 1)


def summary_stats(s: "Session", now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    today = datetime.combine(now.date(), time.min)
    week_ago = today - timedelta(days=7)

    base = s.query(Complaint).filter(Complaint.is_merged.is_(False))
    total = base.count()
    open_count = base.filter(Complaint.status == "open").count()
    pending = base.filter(Complaint.status.notin_(tuple(FINAL_STATUSES))).count()
    resolved_today = base.filter(Complaint.status == "resolved", Complaint.resolved_at >= today).count()
    sla_breaches = base.filter(Complaint.sla_status == "breached").count()
    prev_week = base.filter(Complaint.created_at >= week_ago, Complaint.created_at < today).count()
    done = base.filter(Complaint.status.in_(("resolved", "closed"))).count()
    students = s.query(User).join(User.roles).filter(Role.key == "student").count()

    resolution_pairs = (
        s.query(Complaint.created_at, Complaint.resolved_at).filter(Complaint.resolved_at.isnot(None)).all()
    )
    response_pairs = (
        s.query(Complaint.created_at, Complaint.first_response_at)
        .filter(Complaint.first_response_at.isnot(None))
        .all()
    )
    avg_rating = s.query(func.avg(Complaint.satisfaction_rating)).filter(Complaint.satisfaction_rating.isnot(None)).scalar()

    return {
        "total": total,
        "open": open_count,
        "pending": pending,
        "resolved_today": resolved_today,
        "sla_breaches": sla_breaches,
        "students": students,
        "previous_week": prev_week,
        "resolution_rate": round(done / total * 100, 1) if total else 0.0,
        "avg_resolution_hours": _avg_hours(list(resolution_pairs)),
        "avg_first_response_hours": _avg_hours(list(response_pairs)),
        "avg_satisfaction": round(float(avg_rating), 2) if avg_rating is not None else None,
    }


def breakdowns(s: "Session", student: User | None = None, top_categories: int = 5) -> dict[str, Any]:
    q = s.query(Complaint).filter(Complaint.is_merged.is_(False))
    if student is not None:
        q = q.filter(Complaint.student_id == student.id)
    sub = q.subquery()

    by_status_rows = dict(s.query(sub.c.status, func.count()).group_by(sub.c.status).all())
    by_priority_rows = dict(s.query(sub.c.priority, func.count()).group_by(sub.c.priority).all())
    category_rows = (
        s.query(Category.name, func.count())
        .select_from(sub)
        .outerjoin(Category, Category.id == sub.c.category_id)
        .group_by(Category.name)
        .all()
    )
    categories = sorted(
        ((name or "Uncategorized", n) for name, n in category_rows),
        key=lambda r: (-r[1], r[0]),
    )
    return {
        "total": sum(by_status_rows.values()),
        "by_status": {st: by_status_rows.get(st, 0) for st in STATUSES},
        "by_priority": {p: by_priority_rows.get(p, 0) for p in PRIORITIES},
        "top_categories": categories[:top_categories],
    }


def daily_trend(s: "Session", days: int = 14, now: datetime | None = None) -> list[dict[str, Any]]:
    now = now or utcnow()
    start_day = now.date() - timedelta(days=days - 1)
    start = datetime.combine(start_day, time.min)

    created: dict[date, int] = {}
    for (ts,) in s.query(Complaint.created_at).filter(Complaint.created_at >= start).all():
        created[ts.date()] = created.get(ts.date(), 0) + 1
    resolved: dict[date, int] = {}
    for (ts,) in s.query(Complaint.resolved_at).filter(Complaint.resolved_at >= start).all():
        resolved[ts.date()] = resolved.get(ts.date(), 0) + 1

    out = []
    for i in range(days):
        d = start_day + timedelta(days=i)
        out.append({"date": d.isoformat(), "created": created.get(d, 0), "resolved": resolved.get(d, 0)})
    return out
