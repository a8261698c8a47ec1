from __future__ import annotations

from flask import Blueprint, flash, g, redirect, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.search.models import SavedFilter
from app.desk.modules.search.service import (
    SavedFilterError,
    SearchFilters,
    delete_filter,
    filters_from_args,
    save_filter,
    set_default_filter,
)
from app.desk.rbac import require_permission
from app.desk.utils import parse_bool

bp = Blueprint("search", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.post("/filters")
@require_permission("complaints.view_all")
def filters_save():
    s = db_session()
    filters = filters_from_args(request.form)
    try:
        save_filter(s, _current_user(), request.form.get("name") or "", filters, parse_bool(request.form.get("is_default")))
        s.commit()
        flash("Filter saved.", "success")
    except SavedFilterError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("complaints_admin.complaints_list", **filters.to_dict()))


@bp.get("/filters/<int:filter_id>")
@require_permission("complaints.view_all")
def filters_apply(filter_id: int):
    s = db_session()
    f = s.get(SavedFilter, filter_id)
    if f is None or f.user_id != _current_user().id:
        flash("Saved filter not found.", "danger")
        return redirect(url_for("complaints_admin.complaints_list"))
    args = SearchFilters.from_dict(f.filter_data).to_dict()
    return redirect(url_for("complaints_admin.complaints_list", all=1, **args))


@bp.post("/filters/<int:filter_id>/default")
@require_permission("complaints.view_all")
def filters_default(filter_id: int):
    s = db_session()
    try:
        set_default_filter(s, _current_user(), filter_id)
        s.commit()
        flash("Default filter updated.", "success")
    except SavedFilterError as e:
        flash(str(e), "danger")
    return redirect(url_for("complaints_admin.complaints_list"))


@bp.post("/filters/<int:filter_id>/delete")
@require_permission("complaints.view_all")
def filters_delete(filter_id: int):
    s = db_session()
    try:
        delete_filter(s, _current_user(), filter_id)
        s.commit()
        flash("Filter deleted.", "success")
    except SavedFilterError as e:
        flash(str(e), "danger")
    return redirect(url_for("complaints_admin.complaints_list", all=1))
