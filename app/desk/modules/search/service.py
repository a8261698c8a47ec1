from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.desk.audit import record_event
from app.desk.constants import PRIORITIES, SLA_STATUSES, STATUSES
from app.desk.modules.complaints.models import Complaint
from app.desk.modules.search.models import SavedFilter
from app.desk.utils import clean_text, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.desk.models import User


class SavedFilterError(ValueError):
    pass


@dataclass
class SearchFilters:
    search: str = ""
    status: list[str] = field(default_factory=list)
    priority: list[str] = field(default_factory=list)
    category: list[int] = field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None
    assigned_to: str = ""  # user id, "unassigned" or ""
    sla_status: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return self == SearchFilters()

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form; also the saved-filter payload."""
        out: dict[str, Any] = {}
        if self.search:
            out["search"] = self.search
        for name in ("status", "priority", "category", "sla_status"):
            values = getattr(self, name)
            if values:
                out[name] = list(values)
        if self.date_from:
            out["date_from"] = self.date_from.isoformat()
        if self.date_to:
            out["date_to"] = self.date_to.isoformat()
        if self.assigned_to:
            out["assigned_to"] = self.assigned_to
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SearchFilters":
        data = data or {}

        def _list(key: str) -> list[str]:
            v = data.get(key) or []
            return [str(x) for x in (v if isinstance(v, list) else [v])]

        return _build(
            search=data.get("search"),
            status=_list("status"),
            priority=_list("priority"),
            category=_list("category"),
            date_from=data.get("date_from"),
            date_to=data.get("date_to"),
            assigned_to=data.get("assigned_to"),
            sla_status=_list("sla_status"),
        )


def _build(
    *,
    search: Any,
    status: list[str],
    priority: list[str],
    category: list[str],
    date_from: Any,
    date_to: Any,
    assigned_to: Any,
    sla_status: list[str],
) -> SearchFilters:
    assigned = clean_text(assigned_to)
    if assigned != "unassigned" and parse_int(assigned) is None:
        assigned = ""
    return SearchFilters(
        search=clean_text(search),
        status=[v for v in status if v in STATUSES],
        priority=[v for v in priority if v in PRIORITIES],
        category=[n for n in (parse_int(v) for v in category) if n is not None],
        date_from=parse_date(date_from),
        date_to=parse_date(date_to),
        assigned_to=assigned,
        sla_status=[v for v in sla_status if v in SLA_STATUSES],
    )


def filters_from_args(args) -> SearchFilters:
    """Build filters from a request.args MultiDict (repeated keys for lists)."""
    return _build(
        search=args.get("search"),
        status=args.getlist("status"),
        priority=args.getlist("priority"),
        category=args.getlist("category"),
        date_from=args.get("date_from"),
        date_to=args.get("date_to"),
        assigned_to=args.get("assigned_to"),
        sla_status=args.getlist("sla_status"),
    )


def apply_filters(q: "Query", filters: SearchFilters) -> "Query":
    if filters.search:
        like = f"%{filters.search}%"
        q = q.filter(
            or_(
                Complaint.ticket_number.ilike(like),
                Complaint.title.ilike(like),
                Complaint.description.ilike(like),
            )
        )
    if filters.status:
        q = q.filter(Complaint.status.in_(filters.status))
    if filters.priority:
        q = q.filter(Complaint.priority.in_(filters.priority))
    if filters.category:
        q = q.filter(Complaint.category_id.in_(filters.category))
    if filters.sla_status:
        q = q.filter(Complaint.sla_status.in_(filters.sla_status))
    if filters.date_from:
        q = q.filter(Complaint.created_at >= datetime.combine(filters.date_from, time.min))
    if filters.date_to:
        # Inclusive of the whole day.
        q = q.filter(Complaint.created_at < datetime.combine(filters.date_to + timedelta(days=1), time.min))
    if filters.assigned_to == "unassigned":
        q = q.filter(Complaint.assigned_to_id.is_(None))
    elif filters.assigned_to:
        q = q.filter(Complaint.assigned_to_id == int(filters.assigned_to))
    return q


# ---------- Saved filters ----------
def list_filters(s: "Session", user: "User") -> list[SavedFilter]:
    return (
        s.query(SavedFilter)
        .filter(SavedFilter.user_id == user.id)
        .order_by(SavedFilter.created_at.desc(), SavedFilter.id.desc())
        .all()
    )


def default_filter(s: "Session", user: "User") -> SavedFilter | None:
    return (
        s.query(SavedFilter)
        .filter(SavedFilter.user_id == user.id, SavedFilter.is_default.is_(True))
        .one_or_none()
    )


def _owned(s: "Session", user: "User", filter_id: int) -> SavedFilter:
    f = s.get(SavedFilter, filter_id)
    if f is None or f.user_id != user.id:
        raise SavedFilterError("Saved filter not found.")
    return f


def _clear_default(s: "Session", user: "User") -> None:
    s.query(SavedFilter).filter(SavedFilter.user_id == user.id, SavedFilter.is_default.is_(True)).update(
        {SavedFilter.is_default: False}, synchronize_session="fetch"
    )


def save_filter(s: "Session", user: "User", name: str, filters: SearchFilters, is_default: bool = False) -> SavedFilter:
    name = clean_text(name)
    if not name:
        raise SavedFilterError("Filter name is required.")
    exists = (
        s.query(SavedFilter)
        .filter(SavedFilter.user_id == user.id, SavedFilter.name == name)
        .one_or_none()
    )
    if exists is not None:
        raise SavedFilterError(f'A filter named "{name}" already exists.')
    if is_default:
        _clear_default(s, user)
    f = SavedFilter(user_id=user.id, name=name, filter_data=filters.to_dict(), is_default=is_default)
    s.add(f)
    s.flush()
    record_event(s, actor=user, action="filter.save", entity_type="SavedFilter", entity_id=str(f.id), metadata={"name": name})
    return f


def delete_filter(s: "Session", user: "User", filter_id: int) -> None:
    f = _owned(s, user, filter_id)
    record_event(s, actor=user, action="filter.delete", entity_type="SavedFilter", entity_id=str(f.id), metadata={"name": f.name})
    s.delete(f)


def set_default_filter(s: "Session", user: "User", filter_id: int) -> SavedFilter:
    f = _owned(s, user, filter_id)
    _clear_default(s, user)
    f.is_default = True
    s.flush()
    return f
