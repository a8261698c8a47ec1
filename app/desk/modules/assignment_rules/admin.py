from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.desk.constants import PRIORITIES
from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.assignment_rules.models import AssignmentRule
from app.desk.modules.assignment_rules.service import (
    create_rule,
    delete_rule,
    toggle_rule,
    update_rule,
    validate_rule_payload,
)
from app.desk.modules.complaints.admin import staff_users
from app.desk.modules.complaints.models import Category
from app.desk.rbac import require_permission

bp = Blueprint("assignment_rules", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return {
        "name": request.form.get("name"),
        "category_id": request.form.get("category_id"),
        "priority": request.form.get("priority"),
        "keywords": request.form.get("keywords"),
        "assigned_to_id": request.form.get("assigned_to_id"),
        "rule_priority": request.form.get("rule_priority"),
    }


def _form_context(s) -> dict:
    return {
        "categories": s.query(Category).order_by(Category.name.asc()).all(),
        "staff": staff_users(s),
        "priorities": PRIORITIES,
    }


@bp.get("/rules")
@require_permission("rules.manage")
def rules_list():
    s = db_session()
    rules = (
        s.query(AssignmentRule)
        .order_by(AssignmentRule.priority.desc(), AssignmentRule.created_at.asc())
        .all()
    )
    categories = {c.id: c.name for c in s.query(Category).all()}
    return render_template("admin/rules/list.html", rules=rules, category_names=categories)


@bp.get("/rules/new")
@require_permission("rules.manage")
def rules_new_get():
    s = db_session()
    return render_template("admin/rules/edit.html", rule=None, **_form_context(s))


@bp.post("/rules/new")
@require_permission("rules.manage")
def rules_new_post():
    s = db_session()
    payload = _payload()
    errors = validate_rule_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("assignment_rules.rules_new_get"))
    create_rule(s, payload, _current_user())
    s.commit()
    flash("Rule created.", "success")
    return redirect(url_for("assignment_rules.rules_list"))


@bp.get("/rules/<int:rule_id>/edit")
@require_permission("rules.manage")
def rules_edit_get(rule_id: int):
    s = db_session()
    rule = s.get(AssignmentRule, rule_id)
    if not rule:
        abort(404)
    return render_template("admin/rules/edit.html", rule=rule, **_form_context(s))


@bp.post("/rules/<int:rule_id>/edit")
@require_permission("rules.manage")
def rules_edit_post(rule_id: int):
    s = db_session()
    rule = s.get(AssignmentRule, rule_id)
    if not rule:
        abort(404)
    payload = _payload()
    errors = validate_rule_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("assignment_rules.rules_edit_get", rule_id=rule_id))
    update_rule(s, rule, payload, _current_user())
    s.commit()
    flash("Rule updated.", "success")
    return redirect(url_for("assignment_rules.rules_list"))


@bp.post("/rules/<int:rule_id>/toggle")
@require_permission("rules.manage")
def rules_toggle(rule_id: int):
    s = db_session()
    rule = s.get(AssignmentRule, rule_id)
    if not rule:
        abort(404)
    toggle_rule(s, rule, _current_user())
    s.commit()
    flash(f"Rule {'enabled' if rule.is_active else 'disabled'}.", "success")
    return redirect(url_for("assignment_rules.rules_list"))


@bp.post("/rules/<int:rule_id>/delete")
@require_permission("rules.manage")
def rules_delete(rule_id: int):
    s = db_session()
    rule = s.get(AssignmentRule, rule_id)
    if not rule:
        abort(404)
    delete_rule(s, rule, _current_user())
    s.commit()
    flash("Rule deleted.", "success")
    return redirect(url_for("assignment_rules.rules_list"))
