from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.content.models import CannedResponse
from app.desk.modules.content.service import (
    CONTENT_TYPES,
    ContentError,
    ContentType,
    create_item,
    delete_item,
    list_items,
    parse_payload,
    update_item,
    use_canned_response,
)
from app.desk.rbac import require_permission

bp = Blueprint("content_admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _type_or_404(kind: str) -> ContentType:
    ct = CONTENT_TYPES.get(kind)
    if ct is None:
        abort(404)
    return ct


def _item_or_404(ct: ContentType, item_id: int):
    item = db_session().get(ct.model, item_id)
    if item is None:
        abort(404)
    return item


@bp.get("/content/<kind>")
@require_permission("content.manage")
def content_list(kind: str):
    ct = _type_or_404(kind)
    return render_template(
        "admin/content/list.html",
        ct=ct,
        items=list_items(db_session(), ct),
        content_types=CONTENT_TYPES,
    )


@bp.get("/content/<kind>/new")
@require_permission("content.manage")
def content_new_get(kind: str):
    ct = _type_or_404(kind)
    return render_template("admin/content/form.html", ct=ct, item=None, values={})


@bp.post("/content/<kind>/new")
@require_permission("content.manage")
def content_new_post(kind: str):
    s = db_session()
    ct = _type_or_404(kind)
    values, errors = parse_payload(ct, request.form)
    if not errors:
        try:
            create_item(s, ct, values, _current_user())
            s.commit()
            flash(f"{ct.label}: item created.", "success")
            return redirect(url_for("content_admin.content_list", kind=kind))
        except ContentError as e:
            s.rollback()
            errors = [str(e)]
    for e in errors:
        flash(e, "danger")
    return render_template("admin/content/form.html", ct=ct, item=None, values=request.form), 400


@bp.get("/content/<kind>/<int:item_id>/edit")
@require_permission("content.manage")
def content_edit_get(kind: str, item_id: int):
    ct = _type_or_404(kind)
    item = _item_or_404(ct, item_id)
    return render_template("admin/content/form.html", ct=ct, item=item, values={})


@bp.post("/content/<kind>/<int:item_id>/edit")
@require_permission("content.manage")
def content_edit_post(kind: str, item_id: int):
    s = db_session()
    ct = _type_or_404(kind)
    item = _item_or_404(ct, item_id)
    values, errors = parse_payload(ct, request.form)
    if not errors:
        try:
            update_item(s, ct, item, values, _current_user())
            s.commit()
            flash(f"{ct.label}: item updated.", "success")
            return redirect(url_for("content_admin.content_list", kind=kind))
        except ContentError as e:
            s.rollback()
            errors = [str(e)]
    for e in errors:
        flash(e, "danger")
    return render_template("admin/content/form.html", ct=ct, item=item, values=request.form), 400


@bp.post("/content/<kind>/<int:item_id>/delete")
@require_permission("content.manage")
def content_delete(kind: str, item_id: int):
    s = db_session()
    ct = _type_or_404(kind)
    item = _item_or_404(ct, item_id)
    try:
        delete_item(s, ct, item, _current_user())
        s.commit()
        flash(f"{ct.label}: item deleted.", "success")
    except ContentError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("content_admin.content_list", kind=kind))


@bp.post("/canned-responses/<int:response_id>/use")
@require_permission("complaints.triage")
def canned_use(response_id: int):
    s = db_session()
    response = s.get(CannedResponse, response_id)
    if response is None:
        abort(404)
    try:
        content = use_canned_response(s, response)
    except ContentError as e:
        return jsonify({"error": str(e)}), 400
    s.commit()
    return jsonify({"content": content, "usage_count": response.usage_count})
