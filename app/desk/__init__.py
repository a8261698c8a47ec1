import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, render_template, request, session
from sqlalchemy import inspect as sa_inspect

from app.desk.config import load_config
from app.desk.db import db_session, init_db, teardown_db_session
from app.desk.storage import missing_settings
from app.desk.routes import bp as routes_bp
from app.desk.auth import bp as auth_bp, load_current_user
from app.desk.admin import bp as admin_bp
from app.desk.modules.complaints.admin import bp as complaints_admin_bp
from app.desk.modules.complaints.portal import bp as complaints_portal_bp
from app.desk.modules.sla.admin import bp as sla_bp
from app.desk.modules.search.admin import bp as search_bp
from app.desk.modules.assignment_rules.admin import bp as assignment_rules_bp
from app.desk.modules.assistant.admin import bp as assistant_admin_bp
from app.desk.modules.assistant.portal import bp as assistant_portal_bp
from app.desk.modules.content.admin import bp as content_admin_bp
from app.desk.modules.content.portal import bp as content_portal_bp
from app.desk.modules.analytics.admin import bp as analytics_bp
from app.desk.modules.notifications.portal import bp as notifications_bp
from app.desk.modules.widget.api import bp as widget_bp
from app.desk.modules.polls.admin import bp as polls_admin_bp
from app.desk.modules.polls.portal import bp as polls_portal_bp
from app.desk.modules.complaint_templates.admin import bp as complaint_templates_bp

# Tables every request path depends on; a missing one means migrations were not run.
REQUIRED_TABLES = ("users", "complaints", "sla_tracking", "notifications", "audit_events")


def _wants_json() -> bool:
    return request.is_json or request.path.startswith("/api/") or request.accept_mimetypes.best == "application/json"


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.desk.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_user() -> dict:
        from app.desk.modules.notifications.service import unread_count
        from app.desk.rbac import is_staff, user_has_permission

        user = getattr(g, "current_user", None)

        def has_perm(key: str) -> bool:
            return user_has_permission(user, key)

        def _unread() -> int:
            if not user:
                return 0
            return unread_count(db_session(), user)

        return {
            "current_user": user,
            "has_perm": has_perm,
            "is_staff": is_staff(user),
            "unread_notifications": _unread,
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("status_label")
    def _status_label_filter(value) -> str:
        from app.desk.constants import status_label

        return status_label(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout and the cross-origin widget API carry no session token
            if (request.endpoint or "").startswith(("auth.", "widget.")):
                return None
            if not validate_csrf(request):
                if _wants_json():
                    return jsonify({"error": "CSRF token missing or invalid."}), 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("RESEND_API_KEY"):
            app.logger.warning("RESEND_API_KEY not set; notification emails will only be logged.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    missing_storage = missing_settings(app.config)
    if missing_storage:
        app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_storage))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(complaints_admin_bp, url_prefix="/admin")
    app.register_blueprint(sla_bp, url_prefix="/admin")
    app.register_blueprint(search_bp, url_prefix="/admin")
    app.register_blueprint(assignment_rules_bp, url_prefix="/admin")
    app.register_blueprint(assistant_admin_bp, url_prefix="/admin")
    app.register_blueprint(content_admin_bp, url_prefix="/admin")
    app.register_blueprint(analytics_bp, url_prefix="/admin")
    app.register_blueprint(polls_admin_bp, url_prefix="/admin")
    app.register_blueprint(complaint_templates_bp, url_prefix="/admin")
    app.register_blueprint(complaints_portal_bp, url_prefix="/portal")
    app.register_blueprint(notifications_bp, url_prefix="/portal")
    app.register_blueprint(assistant_portal_bp, url_prefix="/portal")
    app.register_blueprint(content_portal_bp, url_prefix="/portal")
    app.register_blueprint(polls_portal_bp, url_prefix="/portal")
    app.register_blueprint(widget_bp, url_prefix="/api/public")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Schema health: checked once, on the first request, so tests and release
    # scripts can create tables after the app is built.
    app.config.setdefault("_schema_health_checked", False)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> list[str]:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        return missing

    @app.before_request
    def _schema_health_guardrail():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        if not app.config["_schema_health_checked"]:
            app.config["_schema_health_missing"] = _run_schema_health_check()
            app.config["_schema_health_checked"] = True
        missing = app.config["_schema_health_missing"]
        if missing and request.path.startswith("/admin"):
            return render_template("errors/schema_out_of_date.html", missing=missing), 500
        return None

    @app.errorhandler(400)
    def _err_400(e):
        message = getattr(e, "description", None) or "Bad request."
        if _wants_json():
            return jsonify({"error": message}), 400
        return render_template("errors/400.html", message=message), 400

    @app.errorhandler(401)
    def _err_401(e):
        return jsonify({"error": "Authentication required."}), 401

    @app.errorhandler(403)
    def _err_403(e):
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"error": "Forbidden."}), 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):
        if _wants_json():
            return jsonify({"error": "Not found."}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):
        from flask import flash, redirect, url_for

        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        if _wants_json():
            return jsonify({"error": f"Request too large. Maximum size is {limit_mb}MB."}), 413
        flash(f"File too large. Maximum size is {limit_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"error": "Internal server error."}), 500
        return render_template("errors/500.html"), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
