from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.desk.audit import event_metadata
from app.desk.constants import ALLOWED_TRANSITIONS, PRIORITIES, SLA_STATUSES, STATUSES
from app.desk.db import db_session
from app.desk.models import AuditEvent, Permission, Role, User
from app.desk.modules.complaints.models import Category, Complaint, Tag
from app.desk.modules.complaints.service import (
    BULK_ACTIONS,
    ComplaintError,
    actor_labels,
    add_comment,
    assign,
    bulk_update,
    change_priority,
    change_status,
    delete_complaint,
    escalate,
    find_similar,
    merge,
    set_tags,
    unwatch,
    update_admin_notes,
    upload_attachment,
    watch,
)
from app.desk.modules.content.service import active_canned_responses
from app.desk.modules.search.service import SearchFilters, apply_filters, default_filter, filters_from_args, list_filters
from app.desk.modules.sla.service import indicator
from app.desk.rbac import require_permission, user_has_permission
from app.desk.storage import storage_from_config
from app.desk.utils import parse_bool, parse_id_list, parse_int

bp = Blueprint("complaints_admin", __name__)

PAGE_SIZE = 25


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_complaint(complaint_id: int) -> Complaint:
    c = db_session().get(Complaint, complaint_id)
    if c is None:
        abort(404)
    return c


def staff_users(s) -> list[User]:
    return (
        s.query(User)
        .join(User.roles)
        .join(Role.permissions)
        .filter(Permission.key == "complaints.triage", User.is_active.is_(True))
        .order_by(User.full_name.asc(), User.email.asc())
        .distinct()
        .all()
    )


def _back(complaint_id: int):
    return redirect(url_for("complaints_admin.complaint_detail", complaint_id=complaint_id))


# ---------- List ----------
@bp.get("/complaints")
@require_permission("complaints.view_all")
def complaints_list():
    s = db_session()
    u = _current_user()

    filters = filters_from_args(request.args)
    if filters.is_empty() and not request.args.get("all"):
        saved = default_filter(s, u)
        if saved is not None:
            filters = SearchFilters.from_dict(saved.filter_data)

    page = max(parse_int(request.args.get("page")) or 1, 1)
    q = apply_filters(s.query(Complaint), filters)
    total = q.count()
    complaints = (
        q.order_by(Complaint.created_at.desc(), Complaint.id.desc())
        .offset((page - 1) * PAGE_SIZE)
        .limit(PAGE_SIZE)
        .all()
    )

    return render_template(
        "admin/complaints/list.html",
        complaints=complaints,
        filters=filters,
        page=page,
        total=total,
        pages=max((total + PAGE_SIZE - 1) // PAGE_SIZE, 1),
        saved_filters=list_filters(s, u),
        categories=s.query(Category).order_by(Category.name.asc()).all(),
        staff=staff_users(s),
        statuses=STATUSES,
        priorities=PRIORITIES,
        sla_statuses=SLA_STATUSES,
        bulk_actions=BULK_ACTIONS,
    )


@bp.post("/complaints/bulk")
@require_permission("complaints.triage")
def complaints_bulk():
    s = db_session()
    u = _current_user()
    ids = parse_id_list(request.form.getlist("complaint_ids"))
    action = (request.form.get("action") or "").strip()
    value = (request.form.get("value") or "").strip() or None

    if not ids:
        flash("Select at least one complaint.", "warning")
        return redirect(url_for("complaints_admin.complaints_list"))
    needed = {"assign": "complaints.assign", "delete": "complaints.delete"}.get(action)
    if needed and not user_has_permission(u, needed):
        g.missing_permission = needed
        abort(403)

    try:
        storage = storage_from_config(current_app.config) if action == "delete" else None
        updated, skipped = bulk_update(s, ids, action, value, u, storage=storage)
        s.commit()
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("complaints_admin.complaints_list"))

    flash(f"Updated {updated} complaint(s); skipped {skipped}.", "success" if not skipped else "warning")
    return redirect(url_for("complaints_admin.complaints_list"))


# ---------- Detail ----------
@bp.get("/complaints/<int:complaint_id>")
@require_permission("complaints.view_all")
def complaint_detail(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    events = (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == "Complaint", AuditEvent.entity_id == str(c.id))
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        .all()
    )
    actors = actor_labels(s, events)
    merge_candidates = (
        s.query(Complaint)
        .filter(Complaint.id != c.id, Complaint.is_merged.is_(False))
        .order_by(Complaint.created_at.desc())
        .limit(50)
        .all()
    )
    return render_template(
        "admin/complaints/detail.html",
        complaint=c,
        comments=list(c.comments),
        sla=indicator(c),
        timeline=[(ev, actors[ev.id], event_metadata(ev)) for ev in events],
        similar=find_similar(s, c.title, exclude_id=c.id),
        staff=staff_users(s),
        tags=s.query(Tag).order_by(Tag.name.asc()).all(),
        canned=active_canned_responses(s),
        merge_candidates=merge_candidates,
        next_statuses=sorted(ALLOWED_TRANSITIONS.get(c.status, ())),
        priorities=PRIORITIES,
        is_watching=_current_user().id in c.watcher_ids,
    )


@bp.get("/complaints/<int:complaint_id>/timeline.json")
@require_permission("complaints.view_all")
def complaint_timeline(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    events = (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == "Complaint", AuditEvent.entity_id == str(c.id))
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        .all()
    )
    actors = actor_labels(s, events)
    return jsonify(
        [
            {
                "id": ev.id,
                "created_at": ev.created_at.isoformat(),
                "action": ev.action,
                "actor": actors[ev.id],
                "reason": ev.reason,
                "metadata": event_metadata(ev),
            }
            for ev in events
        ]
    )


@bp.post("/complaints/<int:complaint_id>/status")
@require_permission("complaints.triage")
def complaint_status(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    try:
        change_status(
            s,
            c,
            request.form.get("status") or "",
            _current_user(),
            reason=(request.form.get("reason") or "").strip() or None,
            resolution_notes=request.form.get("resolution_notes"),
        )
        s.commit()
        flash("Status updated.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/priority")
@require_permission("complaints.triage")
def complaint_priority(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    try:
        change_priority(s, c, request.form.get("priority") or "", _current_user())
        s.commit()
        flash("Priority updated.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/assign")
@require_permission("complaints.assign")
def complaint_assign(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    assignee_id = parse_int(request.form.get("assigned_to_id"))
    assignee = s.get(User, assignee_id) if assignee_id is not None else None
    if assignee_id is not None and assignee is None:
        abort(400)
    try:
        changed = assign(s, c, assignee, _current_user())
        s.commit()
        flash("Assignment updated." if changed else "No change.", "success" if changed else "info")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/notes")
@require_permission("complaints.triage")
def complaint_notes(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    update_admin_notes(s, c, request.form.get("admin_notes"), _current_user())
    s.commit()
    flash("Notes saved.", "success")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/comments")
@require_permission("complaints.triage")
def complaint_comment(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    try:
        add_comment(
            s,
            c,
            _current_user(),
            request.form.get("content") or "",
            is_internal=parse_bool(request.form.get("is_internal")),
            is_solution=parse_bool(request.form.get("is_solution")),
        )
        s.commit()
        flash("Comment added.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/attachments")
@require_permission("complaints.triage")
def complaint_attachment_upload(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    upload = request.files.get("file")
    if not upload or not upload.filename:
        flash("Choose a file to upload.", "danger")
        return _back(complaint_id)
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
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/tags")
@require_permission("complaints.triage")
def complaint_tags(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    set_tags(s, c, parse_id_list(request.form.getlist("tag_ids")), _current_user())
    s.commit()
    flash("Tags updated.", "success")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/watch")
@require_permission("complaints.view_all")
def complaint_watch(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    u = _current_user()
    if parse_bool(request.form.get("stop")):
        unwatch(s, c, u)
        flash("You are no longer watching this complaint.", "info")
    else:
        watch(s, c, u)
        flash("You are now watching this complaint.", "success")
    s.commit()
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/escalate")
@require_permission("complaints.triage")
def complaint_escalate(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    target_id = parse_int(request.form.get("escalated_to_id"))
    target = s.get(User, target_id) if target_id is not None else None
    try:
        escalate(s, c, request.form.get("reason") or "", _current_user(), escalated_to=target)
        s.commit()
        flash("Complaint escalated.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
    return _back(complaint_id)


@bp.post("/complaints/<int:complaint_id>/merge")
@require_permission("complaints.merge")
def complaint_merge(complaint_id: int):
    s = db_session()
    source = _get_complaint(complaint_id)
    target_id = parse_int(request.form.get("target_id"))
    target = s.get(Complaint, target_id) if target_id is not None else None
    if target is None:
        flash("Choose a complaint to merge into.", "danger")
        return _back(complaint_id)
    try:
        merge(s, source, target, _current_user(), reason=request.form.get("reason"))
        s.commit()
        flash(f"Merged {source.ticket_number} into {target.ticket_number}.", "success")
    except ComplaintError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back(complaint_id)
    return _back(target.id)


@bp.post("/complaints/<int:complaint_id>/delete")
@require_permission("complaints.delete")
def complaint_delete(complaint_id: int):
    s = db_session()
    c = _get_complaint(complaint_id)
    ticket = c.ticket_number
    delete_complaint(s, c, _current_user(), storage_from_config(current_app.config))
    s.commit()
    flash(f"Deleted {ticket}.", "success")
    return redirect(url_for("complaints_admin.complaints_list"))
