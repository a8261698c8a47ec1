from datetime import datetime

import pytest

from app.desk.db import session_scope
from app.desk.models import AuditEvent, User
from app.desk.modules.polls.models import Poll, PollVote
from app.desk.modules.polls.service import (
    PollError,
    active_polls,
    cast_vote,
    create_poll,
    is_open,
    results,
    toggle_poll,
    update_poll,
    user_choices,
    validate_poll_payload,
)


def _user(s, email) -> User:
    return s.query(User).filter(User.email == email).one()


def _poll(s, **extra) -> Poll:
    payload = {"title": "Library opening hours", "options": "Extend to midnight\nKeep as is\nOpen earlier"}
    payload.update(extra)
    return create_poll(s, payload, _user(s, "admin@example.com"))


def test_poll_needs_title_two_options_and_a_sane_window():
    errors = validate_poll_payload({"title": " ", "options": "Yes\n yes \n"})
    assert "Title is required." in errors
    assert any("at least 2" in e for e in errors)

    errors = validate_poll_payload(
        {"title": "Canteen", "options": "A\nB", "starts_at": "2026-05-02T09:00", "ends_at": "2026-05-01T09:00"}
    )
    assert errors == ["End must be after the start time."]

    assert validate_poll_payload({"title": "Canteen", "options": "A\nB", "ends_at": "someday"}) == [
        "End must be a date or date and time."
    ]


def test_single_choice_revote_replaces_previous_vote(app):
    with session_scope(app) as s:
        poll = _poll(s)
        student, other = _user(s, "student@example.com"), _user(s, "other@example.com")
        a, b, c = poll.options

        cast_vote(s, poll, student, [a.id])
        cast_vote(s, poll, student, [str(b.id)])
        assert user_choices(s, poll, student) == {b.id}

        with pytest.raises(PollError, match="single choice"):
            cast_vote(s, poll, student, [a.id, c.id])
        with pytest.raises(PollError, match="Choose"):
            cast_vote(s, poll, student, [])

        cast_vote(s, poll, other, [b.id])
        res = results(s, poll)
        assert (res.total_votes, res.total_voters) == (2, 2)
        assert [r.votes for r in res.options] == [0, 2, 0]
        assert [r.percent for r in res.options] == [0.0, 100.0, 0.0]
        assert res.options[1].voters == ["Olive Other", "Sam Student"]


def test_options_from_another_poll_are_rejected(app):
    with session_scope(app) as s:
        first, second = _poll(s), _poll(s, title="Sports day")
        with pytest.raises(PollError, match="Unknown option"):
            cast_vote(s, first, _user(s, "student@example.com"), [second.options[0].id])
        assert s.query(PollVote).count() == 0


def test_anonymous_multiple_choice_results_hide_voters(app):
    with session_scope(app) as s:
        poll = _poll(s, allow_multiple="1", is_anonymous="1")
        a, _, c = poll.options
        cast_vote(s, poll, _user(s, "student@example.com"), [a.id, c.id])

        res = results(s, poll)
        assert (res.total_votes, res.total_voters) == (2, 1)
        assert [r.percent for r in res.options] == [50.0, 0.0, 50.0]
        assert all(r.voters is None for r in res.options)


def test_votes_only_count_inside_the_active_window(app):
    before, during, after = datetime(2026, 5, 1, 12), datetime(2026, 5, 2, 10), datetime(2026, 5, 3, 9)
    with session_scope(app) as s:
        poll = _poll(s, starts_at="2026-05-02T09:00", ends_at="2026-05-03T09:00")
        student = _user(s, "student@example.com")

        assert not is_open(poll, before)
        assert active_polls(s, before) == []
        with pytest.raises(PollError, match="not open"):
            cast_vote(s, poll, student, [poll.options[0].id], now=before)

        assert [p.id for p in active_polls(s, during)] == [poll.id]
        cast_vote(s, poll, student, [poll.options[0].id], now=during)

        # end of window is exclusive
        assert not is_open(poll, after)
        assert active_polls(s, after) == []

        toggle_poll(s, poll, _user(s, "admin@example.com"))
        assert not is_open(poll, during)


def test_options_are_locked_after_the_first_vote(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        poll = _poll(s)
        update_poll(s, poll, {"title": "Library hours", "options": "Midnight\nNo change"}, admin)
        assert [o.text for o in poll.options] == ["Midnight", "No change"]

        cast_vote(s, poll, _user(s, "student@example.com"), [poll.options[0].id])
        with pytest.raises(PollError, match="once voting has started"):
            update_poll(s, poll, {"title": "Library hours", "options": "Midnight\nNo change\n2am"}, admin)

        update_poll(s, poll, {"title": "Library hours (final)", "options": "Midnight\nNo change"}, admin)
        assert poll.title == "Library hours (final)"
        actions = [ev.action for ev in s.query(AuditEvent).order_by(AuditEvent.id).all()]
        assert actions == ["poll.create", "poll.edit", "poll.edit"]


def test_poll_admin_and_portal_flow(client, login):
    login("admin@example.com")
    r = client.post(
        "/admin/polls/new",
        data={"title": "Best study spot", "options": "Library\nCafe\nLab"},
    )
    assert r.status_code == 302
    r = client.post("/admin/polls/new", data={"title": "Broken", "options": "Only one"})
    assert r.status_code == 400

    with session_scope(client.application) as s:
        poll = s.query(Poll).one()
        poll_id, cafe_id = poll.id, poll.options[1].id

    login("student@example.com")
    assert client.get("/admin/polls").status_code == 403
    r = client.get("/portal/polls")
    assert b"Best study spot" in r.data
    assert b"100.0%" not in r.data

    r = client.post(f"/portal/polls/{poll_id}/vote", data={"option_id": str(cafe_id)})
    assert r.status_code == 302
    r = client.get("/portal/polls")
    assert b"100.0%" in r.data
    assert b"Change vote" in r.data

    login("admin@example.com")
    r = client.get(f"/admin/polls/{poll_id}/results")
    assert r.status_code == 200
    assert b"Sam Student" in r.data

    client.post(f"/admin/polls/{poll_id}/toggle")
    login("student@example.com")
    assert client.post(f"/portal/polls/{poll_id}/vote", data={"option_id": str(cafe_id)}).status_code == 404
