from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.sla.models import SlaMonitorRun, SlaPolicy
from app.desk.modules.sla.service import ensure_default_policies, run_monitor, update_policy, validate_policy_payload
from app.desk.rbac import require_permission

bp = Blueprint("sla", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/sla")
@require_permission("sla.manage")
def sla_index():
    s = db_session()
    policies = ensure_default_policies(s)
    s.commit()
    runs = s.query(SlaMonitorRun).order_by(SlaMonitorRun.ran_at.desc(), SlaMonitorRun.id.desc()).limit(20).all()
    return render_template("admin/sla/index.html", policies=policies, runs=runs)


@bp.post("/sla/policies/<int:policy_id>")
@require_permission("sla.manage")
def sla_policy_edit(policy_id: int):
    s = db_session()
    policy = s.get(SlaPolicy, policy_id)
    if not policy:
        abort(404)

    payload = {
        "name": request.form.get("name"),
        "response_hours": request.form.get("response_hours"),
        "resolution_hours": request.form.get("resolution_hours"),
        "is_active": request.form.get("is_active") == "1",
    }
    errors = validate_policy_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("sla.sla_index"))

    update_policy(s, policy, payload, _current_user())
    s.commit()
    flash(f"SLA policy for {policy.priority} updated. Existing deadlines are unchanged.", "success")
    return redirect(url_for("sla.sla_index"))


@bp.post("/sla/run")
@require_permission("sla.manage")
def sla_run_now():
    s = db_session()
    run = run_monitor(s, actor=_current_user())
    s.commit()
    flash(
        f"SLA monitor finished: {run.notified} notified, {run.failures} failure(s).",
        "success" if not run.failures else "warning",
    )
    return redirect(url_for("sla.sla_index"))
