from __future__ import annotations

from typing import TYPE_CHECKING

from app.desk.audit import record_event
from app.desk.constants import PRIORITIES
from app.desk.modules.complaint_templates.models import ComplaintTemplate
from app.desk.modules.complaints.models import Category
from app.desk.modules.complaints.service import TITLE_MAX
from app.desk.utils import clean_text, parse_bool, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.desk.models import User


def validate_template_payload(s: "Session", payload: dict, exclude_id: int | None = None) -> list[str]:
    errors: list[str] = []
    name = clean_text(payload.get("name"))
    if not name:
        errors.append("Name is required.")
    else:
        q = s.query(ComplaintTemplate.id).filter(ComplaintTemplate.name == name)
        if exclude_id is not None:
            q = q.filter(ComplaintTemplate.id != exclude_id)
        if q.first() is not None:
            errors.append(f'A template named "{name}" already exists.')
    title = clean_text(payload.get("title_template"))
    if not title:
        errors.append("Title template is required.")
    elif len(title) > TITLE_MAX:
        errors.append(f"Title template must be at most {TITLE_MAX} characters.")
    if not clean_text(payload.get("description_template")):
        errors.append("Description template is required.")
    priority = clean_text(payload.get("default_priority")) or "medium"
    if priority not in PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    category_id = parse_int(payload.get("category_id"))
    if category_id is not None and s.get(Category, category_id) is None:
        errors.append("Unknown category.")
    return errors


def _values(payload: dict) -> dict:
    return {
        "name": clean_text(payload.get("name")),
        "title_template": clean_text(payload.get("title_template")),
        "description_template": clean_text(payload.get("description_template")),
        "category_id": parse_int(payload.get("category_id")),
        "default_priority": clean_text(payload.get("default_priority")) or "medium",
    }


def create_template(s: "Session", payload: dict, user: "User") -> ComplaintTemplate:
    tpl = ComplaintTemplate(is_active=parse_bool(payload.get("is_active", "1")), created_by_id=user.id, **_values(payload))
    s.add(tpl)
    s.flush()
    record_event(
        s,
        actor=user,
        action="complaint_template.create",
        entity_type="ComplaintTemplate",
        entity_id=str(tpl.id),
        metadata={"name": tpl.name},
    )
    return tpl


def update_template(s: "Session", tpl: ComplaintTemplate, payload: dict, user: "User") -> ComplaintTemplate:
    changes: dict[str, dict[str, object]] = {}
    for field, new in _values(payload).items():
        old = getattr(tpl, field)
        if old != new:
            changes[field] = {"old": old, "new": new}
            setattr(tpl, field, new)
    tpl.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="complaint_template.edit",
        entity_type="ComplaintTemplate",
        entity_id=str(tpl.id),
        metadata={"name": tpl.name, "changes": changes},
    )
    return tpl


def toggle_template(s: "Session", tpl: ComplaintTemplate, user: "User") -> ComplaintTemplate:
    tpl.is_active = not tpl.is_active
    tpl.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="complaint_template.toggle",
        entity_type="ComplaintTemplate",
        entity_id=str(tpl.id),
        metadata={"is_active": tpl.is_active},
    )
    return tpl


def delete_template(s: "Session", tpl: ComplaintTemplate, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="complaint_template.delete",
        entity_type="ComplaintTemplate",
        entity_id=str(tpl.id),
        metadata={"name": tpl.name},
    )
    s.delete(tpl)


def active_templates(s: "Session") -> list[ComplaintTemplate]:
    return (
        s.query(ComplaintTemplate)
        .filter(ComplaintTemplate.is_active.is_(True))
        .order_by(ComplaintTemplate.name.asc())
        .all()
    )


def prefill(tpl: ComplaintTemplate | None) -> dict:
    """Form values for the new complaint page. Inactive categories are left for the student to pick."""
    if tpl is None or not tpl.is_active:
        return {}
    form = {
        "title": tpl.title_template,
        "description": tpl.description_template,
        "priority": tpl.default_priority,
        "template_id": tpl.id,
    }
    if tpl.category is not None and tpl.category.is_active:
        form["category_id"] = tpl.category_id
    return form
