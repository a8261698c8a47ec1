from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.desk.db import db_session
from app.desk.models import User
from app.desk.modules.polls.models import Poll
from app.desk.modules.polls.service import PollError, active_polls, cast_vote, is_open, results, user_choices
from app.desk.rbac import require_permission

bp = Blueprint("polls_portal", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/polls")
@require_permission("polls.vote")
def polls_list():
    s = db_session()
    u = _current_user()
    rows = []
    for poll in active_polls(s):
        chosen = user_choices(s, poll, u)
        # tallies are shown once the student has voted
        rows.append((poll, chosen, results(s, poll) if chosen else None))
    return render_template("portal/polls/list.html", rows=rows)


@bp.post("/polls/<int:poll_id>/vote")
@require_permission("polls.vote")
def poll_vote(poll_id: int):
    s = db_session()
    poll = s.get(Poll, poll_id)
    if poll is None or not is_open(poll):
        abort(404)
    try:
        cast_vote(s, poll, _current_user(), request.form.getlist("option_id"))
    except PollError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("polls_portal.polls_list"))
    s.commit()
    flash("Thanks, your vote was recorded.", "success")
    return redirect(url_for("polls_portal.polls_list"))
