from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.polls.models import Poll
from app.desk.modules.polls.service import (
    PollError,
    create_poll,
    delete_poll,
    is_open,
    results,
    toggle_poll,
    update_poll,
)
from app.desk.rbac import require_permission

bp = Blueprint("polls_admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return {
        "title": request.form.get("title"),
        "description": request.form.get("description"),
        "options": request.form.get("options"),
        "allow_multiple": request.form.get("allow_multiple"),
        "is_anonymous": request.form.get("is_anonymous"),
        "starts_at": request.form.get("starts_at"),
        "ends_at": request.form.get("ends_at"),
    }


def _get_poll(poll_id: int) -> Poll:
    poll = db_session().get(Poll, poll_id)
    if not poll:
        abort(404)
    return poll


@bp.get("/polls")
@require_permission("polls.manage")
def polls_list():
    s = db_session()
    polls = s.query(Poll).order_by(Poll.created_at.desc(), Poll.id.desc()).all()
    return render_template("admin/polls/list.html", rows=[(p, is_open(p), results(s, p)) for p in polls])


@bp.get("/polls/new")
@require_permission("polls.manage")
def polls_new_get():
    return render_template("admin/polls/edit.html", poll=None, form={})


@bp.post("/polls/new")
@require_permission("polls.manage")
def polls_new_post():
    s = db_session()
    payload = _payload()
    try:
        create_poll(s, payload, _current_user())
    except PollError as e:
        s.rollback()
        flash(str(e), "danger")
        return render_template("admin/polls/edit.html", poll=None, form=payload), 400
    s.commit()
    flash("Poll created.", "success")
    return redirect(url_for("polls_admin.polls_list"))


@bp.get("/polls/<int:poll_id>/edit")
@require_permission("polls.manage")
def polls_edit_get(poll_id: int):
    poll = _get_poll(poll_id)
    return render_template("admin/polls/edit.html", poll=poll, form={})


@bp.post("/polls/<int:poll_id>/edit")
@require_permission("polls.manage")
def polls_edit_post(poll_id: int):
    s = db_session()
    poll = _get_poll(poll_id)
    try:
        update_poll(s, poll, _payload(), _current_user())
    except PollError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("polls_admin.polls_edit_get", poll_id=poll_id))
    s.commit()
    flash("Poll updated.", "success")
    return redirect(url_for("polls_admin.polls_list"))


@bp.get("/polls/<int:poll_id>/results")
@require_permission("polls.manage")
def polls_results(poll_id: int):
    s = db_session()
    poll = _get_poll(poll_id)
    return render_template("admin/polls/results.html", results=results(s, poll), accepting=is_open(poll))


@bp.post("/polls/<int:poll_id>/toggle")
@require_permission("polls.manage")
def polls_toggle(poll_id: int):
    s = db_session()
    poll = _get_poll(poll_id)
    toggle_poll(s, poll, _current_user())
    s.commit()
    flash(f"Poll {'activated' if poll.is_active else 'deactivated'}.", "success")
    return redirect(url_for("polls_admin.polls_list"))


@bp.post("/polls/<int:poll_id>/delete")
@require_permission("polls.manage")
def polls_delete(poll_id: int):
    s = db_session()
    poll = _get_poll(poll_id)
    delete_poll(s, poll, _current_user())
    s.commit()
    flash("Poll deleted.", "success")
    return redirect(url_for("polls_admin.polls_list"))
