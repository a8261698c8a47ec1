from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.desk.constants import PRIORITIES
from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.complaint_templates.models import ComplaintTemplate
from app.desk.modules.complaint_templates.service import (
    create_template,
    delete_template,
    toggle_template,
    update_template,
    validate_template_payload,
)
from app.desk.modules.complaints.models import Category
from app.desk.rbac import require_permission

bp = Blueprint("complaint_templates", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return {
        "name": request.form.get("name"),
        "title_template": request.form.get("title_template"),
        "description_template": request.form.get("description_template"),
        "category_id": request.form.get("category_id"),
        "default_priority": request.form.get("default_priority"),
    }


def _form_context(s) -> dict:
    return {
        "categories": s.query(Category).order_by(Category.name.asc()).all(),
        "priorities": PRIORITIES,
    }


def _get_template(template_id: int) -> ComplaintTemplate:
    tpl = db_session().get(ComplaintTemplate, template_id)
    if not tpl:
        abort(404)
    return tpl


@bp.get("/complaint-templates")
@require_permission("templates.manage")
def templates_list():
    s = db_session()
    templates = s.query(ComplaintTemplate).order_by(ComplaintTemplate.name.asc()).all()
    return render_template("admin/complaint_templates/list.html", templates=templates)


@bp.get("/complaint-templates/new")
@require_permission("templates.manage")
def templates_new_get():
    s = db_session()
    return render_template("admin/complaint_templates/edit.html", tpl=None, **_form_context(s))


@bp.post("/complaint-templates/new")
@require_permission("templates.manage")
def templates_new_post():
    s = db_session()
    payload = _payload()
    errors = validate_template_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("complaint_templates.templates_new_get"))
    create_template(s, payload, _current_user())
    s.commit()
    flash("Template created.", "success")
    return redirect(url_for("complaint_templates.templates_list"))


@bp.get("/complaint-templates/<int:template_id>/edit")
@require_permission("templates.manage")
def templates_edit_get(template_id: int):
    s = db_session()
    return render_template("admin/complaint_templates/edit.html", tpl=_get_template(template_id), **_form_context(s))


@bp.post("/complaint-templates/<int:template_id>/edit")
@require_permission("templates.manage")
def templates_edit_post(template_id: int):
    s = db_session()
    tpl = _get_template(template_id)
    payload = _payload()
    errors = validate_template_payload(s, payload, exclude_id=tpl.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("complaint_templates.templates_edit_get", template_id=template_id))
    update_template(s, tpl, payload, _current_user())
    s.commit()
    flash("Template updated.", "success")
    return redirect(url_for("complaint_templates.templates_list"))


@bp.post("/complaint-templates/<int:template_id>/toggle")
@require_permission("templates.manage")
def templates_toggle(template_id: int):
    s = db_session()
    tpl = _get_template(template_id)
    toggle_template(s, tpl, _current_user())
    s.commit()
    flash(f"Template {'enabled' if tpl.is_active else 'disabled'}.", "success")
    return redirect(url_for("complaint_templates.templates_list"))


@bp.post("/complaint-templates/<int:template_id>/delete")
@require_permission("templates.manage")
def templates_delete(template_id: int):
    s = db_session()
    tpl = _get_template(template_id)
    delete_template(s, tpl, _current_user())
    s.commit()
    flash("Template deleted.", "success")
    return redirect(url_for("complaint_templates.templates_list"))
