from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, send_file, url_for

from app.desk.constants import STATUSES
from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.analytics.service import breakdowns
from app.desk.modules.complaint_templates.models import ComplaintTemplate
from app.desk.modules.complaint_templates.service import active_templates, prefill
from app.desk.modules.complaints.models import Attachment, Complaint
from app.desk.modules.complaints.service import (
    ComplaintError,
    add_comment,
    can_view,
    create_complaint,
    find_similar,
    submit_survey,
    upload_attachment,
    validate_complaint_payload,
    visible_comments,
)
from app.desk.modules.content.service import active_announcements, active_categories
from app.desk.modules.sla.service import indicator
from app.desk.rbac import is_staff, login_required, require_permission
from app.desk.storage import StorageError, storage_from_config

bp = Blueprint("complaints_portal", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _own_complaint(complaint_id: int) -> Complaint:
    s = db_session()
    c = s.get(Complaint, complaint_id)
    if c is None or c.student_id != _current_user().id:
        abort(404)
    return c


@bp.get("/")
@bp.get("/dashboard")
@require_permission("portal.use")
def dashboard():
    s = db_session()
    u = _current_user()
    recent = (
        s.query(Complaint)
        .filter(Complaint.student_id == u.id)
        .order_by(Complaint.created_at.desc())
        .limit(5)
        .all()
    )
    return render_template(
        "portal/dashboard.html",
        stats=breakdowns(s, student=u),
        recent=recent,
        announcements=active_announcements(s, limit=3),
    )


@bp.get("/complaints")
@require_permission("portal.use")
def complaints_list():
    s = db_session()
    u = _current_user()
    status_filter = (request.args.get("status") or "").strip()
    q = s.query(Complaint).filter(Complaint.student_id == u.id)
    if status_filter in STATUSES:
        q = q.filter(Complaint.status == status_filter)
    complaints = q.order_by(Complaint.created_at.desc()).all()
    return render_template(
        "portal/complaints/list.html",
        complaints=complaints,
        status_filter=status_filter,
        statuses=STATUSES,
    )


@bp.get("/complaints/new")
@require_permission("complaints.submit")
def complaints_new_get():
    s = db_session()
    form: dict = {}
    template_id = request.args.get("template", type=int)
    if template_id is not None:
        form = prefill(s.get(ComplaintTemplate, template_id))
    return render_template(
        "portal/complaints/new.html",
        categories=active_categories(s),
        templates=active_templates(s),
        form=form,
    )


@bp.post("/complaints/new")
@require_permission("complaints.submit")
def complaints_new_post():
    s = db_session()
    u = _current_user()
    payload = {
        "title": request.form.get("title"),
        "description": request.form.get("description"),
        "category_id": request.form.get("category_id"),
        "priority": request.form.get("priority"),
        "is_anonymous": request.form.get("is_anonymous"),
    }
    errors = validate_complaint_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return (
            render_template(
                "portal/complaints/new.html",
                categories=active_categories(s),
                templates=active_templates(s),
                form=payload,
            ),
            400,
        )

    complaint = create_complaint(s, payload, u)

    upload = request.files.get("file")
    if upload and upload.filename:
        try:
            upload_attachment(
                s,
                complaint,
                upload.read(),
                upload.filename,
                upload.mimetype,
                u,
                storage_from_config(current_app.config),
                current_app.config["MAX_ATTACHMENT_BYTES"],
            )
        except ComplaintError as e:
            flash(f"Complaint submitted, but the attachment was rejected: {e}", "warning")
    s.commit()

    flash(f"Complaint submitted. Your ticket number is {complaint.ticket_number}.", "success")
    return redirect(url_for("complaints_portal.complaint_detail", complaint_id=complaint.id))


@bp.get("/complaints/similar")
@require_permission("complaints.submit")
def complaints_similar():
    s = db_session()
    matches = find_similar(s, request.args.get("title") or "", _current_user())
    return jsonify(
        [
            {
                "id": c.id,
                "ticket_number": c.ticket_number,
                "title": c.title,
                "status": c.status,
                "created_at": c.created_at.isoformat(),
            }
            for c in matches
        ]
    )


@bp.get("/complaints/<int:complaint_id>")
@login_required
def complaint_detail(complaint_id: int):
    s = db_session()
    u = _current_user()
    c = s.get(Complaint, complaint_id)
    if c is None or not can_view(u, c):
        abort(404)
    if is_staff(u):
        return redirect(url_for("complaints_admin.complaint_detail", complaint_id=complaint_id))
    return render_template(
        "portal/complaints/detail.html",
        complaint=c,
        comments=visible_comments(c, u),
        sla=indicator(c),
    )


@bp.post("/complaints/<int:complaint_id>/comments")
@require_permission("portal.use")
def complaint_comment(complaint_id: int):
    s = db_session()
    c = _own_complaint(complaint_id)
    try:
        add_comment(s, c, _current_user(), request.form.get("content") or "")
        s.commit()
        flash("Comment added.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("complaints_portal.complaint_detail", complaint_id=complaint_id))


@bp.post("/complaints/<int:complaint_id>/attachments")
@require_permission("portal.use")
def complaint_attachment_upload(complaint_id: int):
    s = db_session()
    c = _own_complaint(complaint_id)
    upload = request.files.get("file")
    if not upload or not upload.filename:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("complaints_portal.complaint_detail", complaint_id=complaint_id))
    try:
        upload_attachment(
            s,
            c,
            upload.read(),
            upload.filename,
            upload.mimetype,
            _current_user(),
            storage_from_config(current_app.config),
            current_app.config["MAX_ATTACHMENT_BYTES"],
        )
        s.commit()
        flash("File uploaded.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("complaints_portal.complaint_detail", complaint_id=complaint_id))


@bp.get("/complaints/<int:complaint_id>/attachments/<int:attachment_id>")
@login_required
def attachment_download(complaint_id: int, attachment_id: int):
    s = db_session()
    att = s.get(Attachment, attachment_id)
    if att is None or att.complaint_id != complaint_id or not can_view(_current_user(), att.complaint):
        abort(404)
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(att.storage_key)
    except StorageError:
        current_app.logger.error("Attachment blob missing: %s", att.storage_key)
        abort(404)
    return send_file(
        fobj,
        mimetype=att.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=att.file_name,
    )


@bp.post("/complaints/<int:complaint_id>/survey")
@require_permission("portal.use")
def complaint_survey(complaint_id: int):
    s = db_session()
    c = _own_complaint(complaint_id)
    try:
        submit_survey(s, c, _current_user(), request.form.to_dict())
        s.commit()
        flash("Thank you for your feedback. The complaint is now closed.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("complaints_portal.complaint_detail", complaint_id=complaint_id))
