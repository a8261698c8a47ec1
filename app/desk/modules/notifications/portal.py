from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.notifications.models import Notification
from app.desk.modules.notifications.service import (
    PREFERENCE_FIELDS,
    get_preferences,
    mark_all_read,
    mark_read,
    unread_count,
    update_preferences,
)
from app.desk.rbac import login_required

bp = Blueprint("notifications", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/notifications")
@login_required
def notifications_list():
    s = db_session()
    u = _current_user()
    items = (
        s.query(Notification)
        .filter(Notification.user_id == u.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(100)
        .all()
    )
    return render_template("portal/notifications.html", notifications=items, unread=unread_count(s, u))


@bp.get("/notifications/unread.json")
@login_required
def notifications_unread():
    s = db_session()
    return jsonify({"unread": unread_count(s, _current_user())})


@bp.post("/notifications/<int:notification_id>/read")
@login_required
def notifications_mark_read(notification_id: int):
    s = db_session()
    if not mark_read(s, _current_user(), notification_id):
        abort(404)
    s.commit()
    return redirect(request.referrer or url_for("notifications.notifications_list"))


@bp.post("/notifications/read-all")
@login_required
def notifications_mark_all_read():
    s = db_session()
    n = mark_all_read(s, _current_user())
    s.commit()
    flash(f"Marked {n} notification(s) as read.", "success")
    return redirect(url_for("notifications.notifications_list"))


@bp.get("/preferences")
@login_required
def preferences_get():
    s = db_session()
    pref = get_preferences(s, _current_user())
    values = {f: (getattr(pref, f) if pref else True) for f in PREFERENCE_FIELDS}
    return render_template("portal/preferences.html", values=values)


@bp.post("/preferences")
@login_required
def preferences_post():
    s = db_session()
    values = {f: request.form.get(f) == "1" for f in PREFERENCE_FIELDS}
    update_preferences(s, _current_user(), values)
    s.commit()
    flash("Email preferences saved.", "success")
    return redirect(url_for("notifications.preferences_get"))
