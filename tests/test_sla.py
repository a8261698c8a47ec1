from datetime import datetime, timedelta

from app.desk.db import session_scope
from app.desk.models import User
from app.desk.modules.complaints.service import add_comment, change_priority, change_status, create_complaint
from app.desk.modules.notifications.models import Notification
from app.desk.modules.sla.models import SlaMonitorRun, SlaPolicy
from app.desk.modules.sla.service import classify, ensure_default_policies, indicator, policy_for, run_monitor

T0 = datetime(2026, 3, 2, 9, 0)


def _student(s) -> User:
    return s.query(User).filter(User.email == "student@example.com").one()


def _admin(s) -> User:
    return s.query(User).filter(User.email == "admin@example.com").one()


def test_classify_windows():
    breach = T0 + timedelta(hours=48)
    assert classify(None, T0, "open", None, T0) is None
    assert classify(breach, T0, "open", None, T0 + timedelta(hours=1)) == "on_track"
    # last quarter of the window
    assert classify(breach, T0, "open", None, T0 + timedelta(hours=37)) == "at_risk"
    assert classify(breach, T0, "in_progress", None, T0 + timedelta(hours=48)) == "breached"
    assert classify(breach, T0, "resolved", T0 + timedelta(hours=10), T0 + timedelta(hours=60)) == "met"
    assert classify(breach, T0, "closed", T0 + timedelta(hours=50), T0 + timedelta(hours=60)) == "breached"


def test_active_policy_overrides_defaults(app):
    with session_scope(app) as s:
        assert policy_for(s, "urgent").resolution_hours == 4
        policies = ensure_default_policies(s)
        assert [p.priority for p in policies] == ["low", "medium", "high", "urgent"]

        urgent = s.query(SlaPolicy).filter(SlaPolicy.priority == "urgent").one()
        urgent.resolution_hours = 2
        s.flush()
        assert policy_for(s, "urgent").resolution_hours == 2

        urgent.is_active = False
        s.flush()
        assert policy_for(s, "urgent").resolution_hours == 4


def test_priority_change_recomputes_deadline(app):
    with session_scope(app) as s:
        c = create_complaint(
            s, {"title": "Lab door broken", "description": "The lab door lock is jammed shut."}, _student(s), now=T0
        )
        assert c.sla_breach_at == T0 + timedelta(hours=48)
        change_priority(s, c, "urgent", _admin(s), now=T0 + timedelta(minutes=5))
        assert c.sla_breach_at == T0 + timedelta(hours=4)
        assert c.sla_tracking.response_deadline == T0 + timedelta(hours=1)


def test_monitor_warns_once_per_status(app):
    with session_scope(app) as s:
        student = _student(s)
        c = create_complaint(
            s,
            {"title": "Exam hall flooded", "description": "Water is leaking into the exam hall.", "priority": "urgent"},
            student,
            now=T0,
        )
        # urgent: 4h window, at risk in the last hour
        run = run_monitor(s, now=T0 + timedelta(hours=3, minutes=30))
        assert c.sla_status == "at_risk"
        assert (run.processed, run.notified, run.failures) == (1, 1, 0)

        run = run_monitor(s, now=T0 + timedelta(hours=3, minutes=45))
        assert run.notified == 0

        run = run_monitor(s, now=T0 + timedelta(hours=5))
        assert c.sla_status == "breached"
        assert run.notified == 1

        warnings = (
            s.query(Notification)
            .filter(Notification.user_id == student.id, Notification.type == "sla_warning")
            .order_by(Notification.id.asc())
            .all()
        )
        assert [w.title for w in warnings] == [
            f"SLA Alert: {c.ticket_number}",
            f"SLA Breached: {c.ticket_number}",
        ]
        assert s.query(SlaMonitorRun).count() == 3


def test_monitor_skips_finished_complaints(app):
    with session_scope(app) as s:
        admin = _admin(s)
        c = create_complaint(
            s,
            {"title": "Broken projector", "description": "The projector does not turn on.", "priority": "urgent"},
            _student(s),
            now=T0,
        )
        change_status(s, c, "resolved", admin, now=T0 + timedelta(hours=1))
        run = run_monitor(s, now=T0 + timedelta(hours=10))
        assert run.processed == 0
        assert c.sla_status == "met"


def test_first_staff_reply_is_the_response(app):
    with session_scope(app) as s:
        c = create_complaint(
            s, {"title": "Library too noisy", "description": "Group study is too loud upstairs."}, _student(s), now=T0
        )
        add_comment(s, c, _admin(s), "We will post signs.", now=T0 + timedelta(hours=20))
        assert c.sla_tracking.first_response_at == T0 + timedelta(hours=20)
        # medium response window is 12h
        assert c.sla_tracking.is_response_breached is True


def test_indicator_labels(app):
    with session_scope(app) as s:
        c = create_complaint(
            s, {"title": "Parking lot lights", "description": "Several lights are out at night."}, _student(s), now=T0
        )
        ind = indicator(c, now=T0 + timedelta(hours=1))
        assert ind.label == "On Track"
        assert ind.progress == 98

        c.sla_status = "breached"
        ind = indicator(c, now=T0 + timedelta(hours=50))
        assert ind.label == "SLA Breached"
        assert ind.message == "Breached 2 h ago"

        change_status(s, c, "resolved", _admin(s))
        assert indicator(c) is None


def test_admin_can_trigger_monitor(client, login):
    login("admin@example.com")
    r = client.post("/admin/sla/run", follow_redirects=False)
    assert r.status_code == 302

    with session_scope(client.application) as s:
        run = s.query(SlaMonitorRun).one()
        assert run.triggered_by_id is not None

    r = client.get("/admin/sla")
    assert r.status_code == 200
