from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from app.desk.audit import record_event
from app.desk.constants import PRIORITIES
from app.desk.models import User
from app.desk.modules.assignment_rules.models import AssignmentRule
from app.desk.rbac import user_has_permission
from app.desk.utils import clean_text, parse_int, parse_keywords, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.desk.modules.complaints.models import Complaint

logger = logging.getLogger(__name__)


def rule_matches(rule: AssignmentRule, complaint: "Complaint") -> bool:
    """Every present condition must hold; no conditions matches everything."""
    cond = rule.conditions or {}

    category_id = cond.get("category_id")
    if category_id is not None and complaint.category_id != int(category_id):
        return False

    priority = cond.get("priority")
    if priority and complaint.priority != priority:
        return False

    keywords = [k.lower() for k in cond.get("keywords") or [] if k]
    if keywords:
        text = f"{complaint.title} {complaint.description}".lower()
        if not any(k in text for k in keywords):
            return False
    return True


def active_rules(s: "Session") -> list[AssignmentRule]:
    return (
        s.query(AssignmentRule)
        .filter(AssignmentRule.is_active.is_(True))
        .order_by(AssignmentRule.priority.desc(), AssignmentRule.created_at.asc(), AssignmentRule.id.asc())
        .all()
    )


def auto_assign(s: "Session", complaint: "Complaint") -> AssignmentRule | None:
    """
    Assign the complaint using the first matching rule whose assignee is still
    active staff. Returns the rule that fired, if any.
    """
    for rule in active_rules(s):
        if not rule_matches(rule, complaint):
            continue
        assignee = rule.assignee
        if assignee is None or not assignee.is_active:
            logger.info("Skipping rule %s: assignee inactive", rule.id)
            continue
        if not user_has_permission(assignee, "complaints.triage"):
            logger.info("Skipping rule %s: assignee %s is no longer staff", rule.id, assignee.email)
            continue
        complaint.assignee = assignee
        complaint.assigned_to_id = assignee.id
        record_event(
            s,
            actor=None,
            action="complaint.auto_assign",
            entity_type="Complaint",
            entity_id=str(complaint.id),
            metadata={"rule_id": rule.id, "rule": rule.name, "assigned_to": assignee.email},
        )
        return rule
    return None


def conditions_from_payload(payload: dict) -> dict:
    cond: dict = {}
    category_id = parse_int(payload.get("category_id"))
    if category_id is not None:
        cond["category_id"] = category_id
    priority = clean_text(payload.get("priority"))
    if priority:
        cond["priority"] = priority
    keywords = parse_keywords(payload.get("keywords"))
    if keywords:
        cond["keywords"] = keywords
    return cond


def validate_rule_payload(s: "Session", payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean_text(payload.get("name")):
        errors.append("Name is required.")
    priority = clean_text(payload.get("priority"))
    if priority and priority not in PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    assignee_id = parse_int(payload.get("assigned_to_id"))
    assignee = s.get(User, assignee_id) if assignee_id is not None else None
    if assignee is None:
        errors.append("Assignee is required.")
    elif not user_has_permission(assignee, "complaints.triage"):
        errors.append("Assignee must be a staff member.")
    return errors


def create_rule(s: "Session", payload: dict, user: User) -> AssignmentRule:
    rule = AssignmentRule(
        name=clean_text(payload.get("name")),
        conditions=conditions_from_payload(payload),
        assigned_to_id=int(payload["assigned_to_id"]),
        priority=parse_int(payload.get("rule_priority")) or 0,
        is_active=True,
        created_by_id=user.id,
    )
    s.add(rule)
    s.flush()
    record_event(
        s,
        actor=user,
        action="rule.create",
        entity_type="AssignmentRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name, "conditions": rule.conditions},
    )
    return rule


def update_rule(s: "Session", rule: AssignmentRule, payload: dict, user: User) -> AssignmentRule:
    changes: dict[str, dict[str, object]] = {}
    new_values = {
        "name": clean_text(payload.get("name")),
        "conditions": conditions_from_payload(payload),
        "assigned_to_id": int(payload["assigned_to_id"]),
        "priority": parse_int(payload.get("rule_priority")) or 0,
    }
    for field, new in new_values.items():
        old = getattr(rule, field)
        if old != new:
            changes[field] = {"old": old, "new": new}
            setattr(rule, field, new)
    rule.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="rule.edit",
        entity_type="AssignmentRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name, "changes": changes},
    )
    return rule


def toggle_rule(s: "Session", rule: AssignmentRule, user: User) -> AssignmentRule:
    rule.is_active = not rule.is_active
    rule.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="rule.toggle",
        entity_type="AssignmentRule",
        entity_id=str(rule.id),
        metadata={"is_active": rule.is_active},
    )
    return rule


def delete_rule(s: "Session", rule: AssignmentRule, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="rule.delete",
        entity_type="AssignmentRule",
        entity_id=str(rule.id),
        metadata={"name": rule.name},
    )
    s.delete(rule)
