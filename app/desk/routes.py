from flask import Blueprint, g, redirect, render_template, url_for

from app.desk.rbac import is_staff

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    user = getattr(g, "current_user", None)
    if user:
        if is_staff(user):
            return redirect(url_for("admin.index"))
        return redirect(url_for("complaints_portal.dashboard"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast liveness check. No DB access.
    """
    return "ok", 200
