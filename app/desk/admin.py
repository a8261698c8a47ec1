from datetime import datetime, time, timedelta

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for
from sqlalchemy import text

from app.desk.audit import event_metadata, record_event
from app.desk.db import db_session
from app.desk.models import AuditEvent, User
from app.desk.modules.analytics.service import summary_stats
from app.desk.modules.complaints.service import actor_labels
from app.desk.modules.sla.models import SlaMonitorRun
from app.desk.rbac import get_role, require_permission
from app.desk.storage import backend_name, missing_settings
from app.desk.utils import clean_text, parse_date, parse_int

bp = Blueprint("admin", __name__)

FEED_LIMIT = 50


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    status = {
        "env": cfg.get("ENV"),
        "db_connected": False,
        "db_error": None,
        "storage_backend": None,
        "storage_configured": False,
        "storage_error": None,
        "mailer": "resend" if cfg.get("RESEND_API_KEY") else "log only",
        "ai_ready": bool(cfg.get("AI_GATEWAY_API_KEY")),
        "last_sla_run": None,
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        current_app.logger.error("Admin status DB check failed: %s", e)
        status["db_error"] = str(e)
        s.rollback()

    status["storage_backend"] = backend_name(cfg)
    missing = missing_settings(cfg)
    status["storage_configured"] = not missing
    if missing:
        status["storage_error"] = f"Missing: {', '.join(missing)}"

    stats = None
    if status["db_connected"]:
        last_run = s.query(SlaMonitorRun).order_by(SlaMonitorRun.ran_at.desc(), SlaMonitorRun.id.desc()).first()
        if last_run:
            status["last_sla_run"] = {
                "ran_at": str(last_run.ran_at),
                "notified": last_run.notified,
                "failures": last_run.failures,
            }
        stats = summary_stats(s)

    return render_template("admin/index.html", system_status=status, stats=stats)


# ---------- Activity ----------
@bp.get("/activity")
@require_permission("admin.view")
def activity_list():
    """
    Activity log (last 200 events) with filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = clean_text(request.args.get("action"))
    actor_email = clean_text(request.args.get("actor_email"))
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    if clean_text(request.args.get("date_from")) and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if clean_text(request.args.get("date_to")) and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    actors = actor_labels(s, events)
    if actor_email:
        # an email search must not unmask anonymous submitters
        events = [ev for ev in events if actors[ev.id] != "Anonymous"]
    return render_template(
        "admin/activity.html",
        events=[(ev, actors[ev.id], event_metadata(ev)) for ev in events],
        action=action,
        actor_email=actor_email,
        date_from=request.args.get("date_from") or "",
        date_to=request.args.get("date_to") or "",
    )


@bp.get("/activity/feed")
@require_permission("admin.view")
def activity_feed():
    """Polling feed: events newer than ?since=<id>, oldest first."""
    s = db_session()
    since = parse_int(request.args.get("since"))
    q = s.query(AuditEvent)
    if since is not None:
        q = q.filter(AuditEvent.id > since).order_by(AuditEvent.id.asc())
        events = q.limit(FEED_LIMIT).all()
    else:
        events = list(reversed(q.order_by(AuditEvent.id.desc()).limit(FEED_LIMIT).all()))
    actors = actor_labels(s, events)
    return jsonify(
        {
            "events": [
                {
                    "id": ev.id,
                    "created_at": ev.created_at.isoformat(),
                    "action": ev.action,
                    "actor": actors[ev.id],
                    "entity_type": ev.entity_type,
                    "entity_id": ev.entity_id,
                    "reason": ev.reason,
                    "metadata": event_metadata(ev),
                }
                for ev in events
            ],
            "last_id": events[-1].id if events else since,
        }
    )


# ---------- Users ----------
@bp.get("/users")
@require_permission("users.manage")
def users_list():
    s = db_session()
    search = clean_text(request.args.get("q"))
    q = s.query(User)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter((User.email.like(like)) | (User.full_name.ilike(like)))
    users = q.order_by(User.created_at.desc(), User.id.desc()).all()
    return render_template("admin/users.html", users=users, search=search)


def _managed_user(user_id: int) -> User:
    s = db_session()
    target = s.get(User, user_id)
    if not target:
        abort(404)
    return target


@bp.post("/users/<int:user_id>/role")
@require_permission("users.manage")
def users_set_role(user_id: int):
    s = db_session()
    u = _current_user()
    target = _managed_user(user_id)
    role_key = clean_text(request.form.get("role"))
    if role_key not in ("student", "admin"):
        abort(400)
    if target.id == u.id and role_key != "admin":
        flash("You cannot remove your own admin role.", "danger")
        return redirect(url_for("admin.users_list"))

    old = target.role_keys
    target.roles = [get_role(s, role_key)]
    record_event(
        s,
        actor=u,
        action="user.role_change",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"email": target.email, "old": old, "new": [role_key]},
    )
    s.commit()
    flash(f"{target.email} is now {role_key}.", "success")
    return redirect(url_for("admin.users_list"))


@bp.post("/users/<int:user_id>/active")
@require_permission("users.manage")
def users_set_active(user_id: int):
    s = db_session()
    u = _current_user()
    target = _managed_user(user_id)
    active = request.form.get("is_active") == "1"
    if target.id == u.id and not active:
        flash("You cannot deactivate your own account.", "danger")
        return redirect(url_for("admin.users_list"))

    target.is_active = active
    record_event(
        s,
        actor=u,
        action="user.activate" if active else "user.deactivate",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"email": target.email},
    )
    s.commit()
    flash(f"{target.email} {'activated' if active else 'deactivated'}.", "success")
    return redirect(url_for("admin.users_list"))
