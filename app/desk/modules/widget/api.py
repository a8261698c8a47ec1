from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.desk.db import db_session
from app.desk.modules.complaints.service import ComplaintError
from app.desk.modules.content.service import active_categories
from app.desk.modules.widget.service import submit_widget_complaint

bp = Blueprint("widget", __name__)


def _allowed_origin() -> str | None:
    allowed = current_app.config.get("WIDGET_ALLOWED_ORIGINS") or ("*",)
    if "*" in allowed:
        return "*"
    origin = request.headers.get("Origin")
    return origin if origin in allowed else None


@bp.after_request
def _cors(resp):
    origin = _allowed_origin()
    if origin:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Access-Control-Allow-Headers"] = "content-type"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        if origin != "*":
            resp.headers["Vary"] = "Origin"
    return resp


@bp.route("/complaints", methods=["OPTIONS"])
@bp.route("/categories", methods=["OPTIONS"])
def preflight():
    return "", 204


@bp.get("/categories")
def categories():
    s = db_session()
    return jsonify([{"id": c.id, "name": c.name} for c in active_categories(s)])


@bp.post("/complaints")
def submit():
    s = db_session()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Expected a JSON object"}), 400
    try:
        complaint = submit_widget_complaint(s, data)
        s.commit()
    except ComplaintError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    return jsonify(
        {
            "success": True,
            "ticket_number": complaint.ticket_number,
            "message": "Complaint submitted successfully",
        }
    )
