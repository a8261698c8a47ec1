from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.assistant import gateway_client
from app.desk.modules.assistant.gateway_client import AIGatewayError
from app.desk.modules.assistant.models import AiTrainingData
from app.desk.modules.assistant.portal import gateway_error_response
from app.desk.modules.assistant.service import (
    create_training_row,
    delete_training_row,
    generate_smart_reply,
    update_training_row,
    validate_training_payload,
)
from app.desk.modules.complaints.models import Complaint
from app.desk.rbac import require_permission

bp = Blueprint("assistant_admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _training_payload() -> dict:
    return {
        "question": request.form.get("question"),
        "answer": request.form.get("answer"),
        "category": request.form.get("category"),
        "keywords": request.form.get("keywords"),
        "is_active": request.form.get("is_active"),
    }


@bp.post("/complaints/<int:complaint_id>/smart-reply")
@require_permission("ai.reply")
def smart_reply(complaint_id: int):
    s = db_session()
    c = s.get(Complaint, complaint_id)
    if c is None:
        abort(404)
    try:
        client = gateway_client.client_from_config(current_app.config)
        reply = generate_smart_reply(client, c.title, c.description, c.category.name if c.category else None)
    except AIGatewayError as e:
        return gateway_error_response(e)
    return jsonify({"smart_reply": reply})


@bp.get("/ai-training")
@require_permission("ai.train")
def training_list():
    s = db_session()
    rows = s.query(AiTrainingData).order_by(AiTrainingData.created_at.desc(), AiTrainingData.id.desc()).all()
    return render_template("admin/assistant/training.html", rows=rows, edit=None)


@bp.get("/ai-training/<int:row_id>/edit")
@require_permission("ai.train")
def training_edit_get(row_id: int):
    s = db_session()
    row = s.get(AiTrainingData, row_id)
    if not row:
        abort(404)
    rows = s.query(AiTrainingData).order_by(AiTrainingData.created_at.desc(), AiTrainingData.id.desc()).all()
    return render_template("admin/assistant/training.html", rows=rows, edit=row)


@bp.post("/ai-training")
@require_permission("ai.train")
def training_create():
    s = db_session()
    payload = _training_payload()
    errors = validate_training_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("assistant_admin.training_list"))
    create_training_row(s, payload, _current_user())
    s.commit()
    flash("Training entry added.", "success")
    return redirect(url_for("assistant_admin.training_list"))


@bp.post("/ai-training/<int:row_id>/edit")
@require_permission("ai.train")
def training_edit_post(row_id: int):
    s = db_session()
    row = s.get(AiTrainingData, row_id)
    if not row:
        abort(404)
    payload = _training_payload()
    errors = validate_training_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("assistant_admin.training_edit_get", row_id=row_id))
    update_training_row(s, row, payload, _current_user())
    s.commit()
    flash("Training entry updated.", "success")
    return redirect(url_for("assistant_admin.training_list"))


@bp.post("/ai-training/<int:row_id>/delete")
@require_permission("ai.train")
def training_delete(row_id: int):
    s = db_session()
    row = s.get(AiTrainingData, row_id)
    if not row:
        abort(404)
    delete_training_row(s, row, _current_user())
    s.commit()
    flash("Training entry deleted.", "success")
    return redirect(url_for("assistant_admin.training_list"))
