import pytest

from app.desk.db import session_scope
from app.desk.models import User
from app.desk.modules.complaints.service import add_comment, create_complaint
from app.desk.modules.notifications import service as notification_service
from app.desk.modules.notifications.mailer import LogMailer, ResendMailer, mailer_from_config
from app.desk.modules.notifications.models import Notification
from app.desk.modules.notifications.service import (
    mark_all_read,
    mark_read,
    notify,
    pending_emails,
    render_email,
    should_email,
    unread_count,
    update_preferences,
)


class FakeMailer:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    def send(self, *, to, subject, html):
        if self.fail:
            raise RuntimeError("provider down")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return {"id": "msg_1"}


def _user(s, email="student@example.com") -> User:
    return s.query(User).filter(User.email == email).one()


def test_notify_stores_and_emails_after_commit(app):
    mailer = FakeMailer()
    with session_scope(app) as s:
        user = _user(s)
        n = notify(s, user, "new_comment", "New comment", "Someone replied.", mailer=mailer)
        assert n.is_read is False
        assert unread_count(s, user) == 1
        assert mailer.sent == []
        assert [q.to for q in pending_emails(s)] == ["student@example.com"]

        with pytest.raises(ValueError):
            notify(s, user, "birthday", "x", "y", mailer=mailer)
        assert notify(s, None, "new_comment", "x", "y") is None

    assert mailer.sent[0]["to"] == "student@example.com"
    assert mailer.sent[0]["subject"] == "New comment"


def test_rolled_back_notifications_send_no_email(app):
    mailer = FakeMailer()
    with session_scope(app) as s:
        user = _user(s)
        notify(s, user, "status_change", "Kept", "Survives the savepoint.", mailer=mailer)
        with pytest.raises(RuntimeError):
            with s.begin_nested():
                notify(s, user, "status_change", "Dropped", "Rolled back.", mailer=mailer)
                raise RuntimeError("abort this change")
        assert [q.subject for q in pending_emails(s)] == ["Kept"]

    assert [m["subject"] for m in mailer.sent] == ["Kept"]

    s = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        notify(s, _user(s), "assignment", "Never sent", "Whole transaction rolled back.", mailer=mailer)
        s.rollback()
        assert pending_emails(s) == []
    finally:
        s.close()
    assert len(mailer.sent) == 1


def test_preferences_suppress_email_but_keep_in_app(app):
    with session_scope(app) as s:
        user = _user(s)
        assert should_email(s, user, "status_change") is True

        update_preferences(s, user, {"notify_new_comment": True, "notify_assignment": True, "notify_sla_warning": True})
        assert should_email(s, user, "status_change") is False

        mailer = FakeMailer()
        notify(s, user, "status_change", "Status updated", "Now resolved.", mailer=mailer)
        assert mailer.sent == []
        assert unread_count(s, user) == 1


def test_email_failures_are_not_raised(app):
    with session_scope(app) as s:
        user = _user(s)
        n = notify(s, user, "assignment", "Assigned", "A complaint was assigned.", mailer=FakeMailer(fail=True))
        assert n is not None
        assert s.query(Notification).count() == 1


def test_render_email_escapes_content(app):
    with app.app_context():
        with session_scope(app) as s:
            user = _user(s)
            html = render_email(user, "<script>alert(1)</script>", "TKT-2026-00001", 7)
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "TKT-2026-00001" in html
    assert "http://localhost:8080/portal/complaints/7" in html


def test_mailer_from_config_picks_provider():
    assert isinstance(mailer_from_config({}), LogMailer)
    m = mailer_from_config({"RESEND_API_KEY": "re_test", "NOTIFICATION_EMAIL_FROM": "Desk <desk@example.edu>"})
    assert isinstance(m, ResendMailer)
    assert m.sender == "Desk <desk@example.edu>"


def test_comment_notifies_the_other_party(app, monkeypatch):
    mailer = FakeMailer()
    monkeypatch.setattr(notification_service, "mailer_from_config", lambda config: mailer)

    with app.app_context():
        with session_scope(app) as s:
            student = _user(s)
            admin = _user(s, "admin@example.com")
            c = create_complaint(s, {"title": "Noisy dorm", "description": "Construction noise at 6am daily."}, student)
            add_comment(s, c, admin, "We have contacted facilities.")
            add_comment(s, c, admin, "Internal: facilities ticket 42", is_internal=True)

            notes = s.query(Notification).filter(Notification.user_id == student.id).all()
            assert [n.type for n in notes] == ["new_comment"]
            assert notes[0].complaint_id == c.id

    assert [m["to"] for m in mailer.sent] == ["student@example.com"]


def test_mark_read_only_touches_own_rows(app):
    with session_scope(app) as s:
        user = _user(s)
        other = _user(s, "other@example.com")
        mine = notify(s, user, "new_comment", "a", "b", mailer=FakeMailer())
        notify(s, user, "new_comment", "c", "d", mailer=FakeMailer())
        theirs = notify(s, other, "new_comment", "e", "f", mailer=FakeMailer())

        assert mark_read(s, user, theirs.id) is False
        assert mark_read(s, user, mine.id) is True
        s.flush()
        assert unread_count(s, user) == 1
        assert mark_all_read(s, user) == 1
        assert unread_count(s, user) == 0
        assert unread_count(s, other) == 1


def test_preferences_page_round_trip(client, login):
    login("student@example.com")
    assert client.get("/portal/preferences").status_code == 200
    r = client.post("/portal/preferences", data={"notify_status_change": "1"}, follow_redirects=False)
    assert r.status_code == 302

    with session_scope(client.application) as s:
        user = _user(s)
        assert should_email(s, user, "status_change") is True
        assert should_email(s, user, "new_comment") is False

    r = client.get("/portal/notifications/unread.json")
    assert r.json == {"unread": 0}
