from datetime import date, datetime

import pytest
from werkzeug.datastructures import MultiDict
from werkzeug.security import generate_password_hash

from app.desk.db import session_scope
from app.desk.models import User
from app.desk.modules.assignment_rules.models import AssignmentRule
from app.desk.modules.assignment_rules.service import (
    create_rule,
    rule_matches,
    toggle_rule,
    validate_rule_payload,
)
from app.desk.modules.complaints.models import Category, Complaint
from app.desk.modules.complaints.service import create_complaint
from app.desk.modules.notifications.models import Notification
from app.desk.modules.search.models import SavedFilter
from app.desk.modules.search.service import (
    SavedFilterError,
    SearchFilters,
    apply_filters,
    default_filter,
    delete_filter,
    filters_from_args,
    save_filter,
    set_default_filter,
)
from app.desk.rbac import get_role


def _user(s, email) -> User:
    return s.query(User).filter(User.email == email).one()


def _staff(s, email, name) -> User:
    u = User(email=email, password_hash=generate_password_hash("pw"), full_name=name, is_active=True)
    u.roles.append(get_role(s, "admin"))
    s.add(u)
    s.flush()
    return u


def test_filters_from_args_drops_unknown_values():
    args = MultiDict(
        [
            ("search", "  wifi  "),
            ("status", "open"),
            ("status", "bogus"),
            ("priority", "urgent"),
            ("category", "3"),
            ("category", "x"),
            ("date_from", "2026-03-01"),
            ("date_to", "not-a-date"),
            ("assigned_to", "someone"),
            ("sla_status", "breached"),
        ]
    )
    f = filters_from_args(args)
    assert f.search == "wifi"
    assert f.status == ["open"]
    assert f.priority == ["urgent"]
    assert f.category == [3]
    assert f.date_from == date(2026, 3, 1)
    assert f.date_to is None
    assert f.assigned_to == ""
    assert f.sla_status == ["breached"]
    assert SearchFilters.from_dict(f.to_dict()) == f
    assert SearchFilters().is_empty()


def test_apply_filters(app):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        admin = _user(s, "admin@example.com")
        cat = Category(name="IT", is_active=True)
        s.add(cat)
        s.flush()
        a = create_complaint(
            s,
            {"title": "Wifi down", "description": "No wifi in block B since noon.", "category_id": cat.id},
            student,
            now=datetime(2026, 3, 1, 10, 0),
        )
        b = create_complaint(
            s,
            {"title": "Cold classroom", "description": "Heating is off in room 4.", "priority": "high"},
            student,
            now=datetime(2026, 3, 5, 10, 0),
        )
        b.assignee = admin
        b.assigned_to_id = admin.id
        s.flush()

        def ids(**kw):
            return {c.id for c in apply_filters(s.query(Complaint), SearchFilters(**kw)).all()}

        assert ids(search="wifi") == {a.id}
        assert ids(search=a.ticket_number) == {a.id}
        assert ids(priority=["high"]) == {b.id}
        assert ids(category=[cat.id]) == {a.id}
        assert ids(date_from=date(2026, 3, 2)) == {b.id}
        assert ids(date_to=date(2026, 3, 1)) == {a.id}
        assert ids(assigned_to="unassigned") == {a.id}
        assert ids(assigned_to=str(admin.id)) == {b.id}
        assert ids(status=["open"], sla_status=["on_track"]) == {a.id, b.id}


def test_saved_filters_have_one_default(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        other_admin = _staff(s, "staff2@example.com", "Second Staff")

        f1 = save_filter(s, admin, "Urgent", SearchFilters(priority=["urgent"]), is_default=True)
        f2 = save_filter(s, admin, "Open", SearchFilters(status=["open"]), is_default=True)
        s.flush()
        s.refresh(f1)
        assert f1.is_default is False
        assert default_filter(s, admin).id == f2.id
        assert f2.filter_data == {"status": ["open"]}

        with pytest.raises(SavedFilterError):
            save_filter(s, admin, "Open", SearchFilters())
        with pytest.raises(SavedFilterError):
            save_filter(s, admin, "  ", SearchFilters())
        with pytest.raises(SavedFilterError):
            set_default_filter(s, other_admin, f1.id)

        set_default_filter(s, admin, f1.id)
        s.refresh(f2)
        assert default_filter(s, admin).id == f1.id
        assert f2.is_default is False

        delete_filter(s, admin, f1.id)
        s.flush()
        assert default_filter(s, admin) is None
        assert s.query(SavedFilter).count() == 1


def test_admin_list_honours_query_filters(client, login, users):
    with session_scope(client.application) as s:
        student = s.get(User, users["student@example.com"])
        create_complaint(s, {"title": "Wifi down again", "description": "No wifi in the east wing."}, student)
        create_complaint(s, {"title": "Broken locker", "description": "Locker 12 will not open."}, student)

    login("admin@example.com")
    r = client.get("/admin/complaints?search=locker&all=1")
    assert r.status_code == 200
    assert b"Broken locker" in r.data
    assert b"Wifi down again" not in r.data

    r = client.post("/admin/filters", data={"name": "Lockers", "search": "locker", "is_default": "1"})
    assert r.status_code == 302
    with session_scope(client.application) as s:
        f = s.query(SavedFilter).one()
        assert f.filter_data == {"search": "locker"}
        assert f.is_default is True


# ---------- Assignment rules ----------
def test_rule_matching_conditions():
    c = Complaint(title="Wifi outage", description="The network is down", priority="high", category_id=2)
    assert rule_matches(AssignmentRule(name="all", conditions={}), c)
    assert rule_matches(AssignmentRule(name="kw", conditions={"keywords": ["NETWORK"]}), c)
    assert not rule_matches(AssignmentRule(name="kw", conditions={"keywords": ["printer"]}), c)
    assert rule_matches(AssignmentRule(name="both", conditions={"priority": "high", "category_id": 2}), c)
    assert not rule_matches(AssignmentRule(name="cat", conditions={"category_id": 3}), c)
    assert not rule_matches(AssignmentRule(name="prio", conditions={"priority": "low"}), c)


def test_auto_assign_uses_highest_priority_active_rule(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        network = _staff(s, "network@example.com", "Net Team")
        helpdesk = _staff(s, "helpdesk@example.com", "Help Desk")

        assert validate_rule_payload(s, {"name": "x", "assigned_to_id": str(student.id)}) == [
            "Assignee must be a staff member."
        ]
        create_rule(s, {"name": "Catch-all", "assigned_to_id": str(helpdesk.id), "rule_priority": "0"}, admin)
        network_rule = create_rule(
            s,
            {"name": "Network", "keywords": "wifi, network", "assigned_to_id": str(network.id), "rule_priority": "10"},
            admin,
        )
        assert network_rule.conditions == {"keywords": ["wifi", "network"]}

        c = create_complaint(s, {"title": "Wifi is slow", "description": "Wifi in the dorms is very slow."}, student)
        assert c.assignee.id == network.id
        assert network.id in c.watcher_ids
        assert (
            s.query(Notification)
            .filter(Notification.user_id == network.id, Notification.type == "assignment")
            .count()
            == 1
        )

        c = create_complaint(s, {"title": "Broken chair", "description": "Chair in room 5 is broken."}, student)
        assert c.assignee.id == helpdesk.id

        # inactive assignee falls through to the next rule
        network.is_active = False
        s.flush()
        c = create_complaint(s, {"title": "Network cable cut", "description": "Cable in lab 3 is cut."}, student)
        assert c.assignee.id == helpdesk.id

        toggle_rule(s, network_rule, admin)
        assert network_rule.is_active is False


def test_rules_admin_pages(client, login, users):
    login("admin@example.com")
    assert client.get("/admin/rules").status_code == 200
    r = client.post(
        "/admin/rules/new",
        data={"name": "Library", "keywords": "library", "assigned_to_id": str(users["admin@example.com"])},
        follow_redirects=False,
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        rule = s.query(AssignmentRule).one()
        assert rule.conditions == {"keywords": ["library"]}
        rule_id = rule.id

    assert client.post(f"/admin/rules/{rule_id}/toggle").status_code == 302
    assert client.post(f"/admin/rules/{rule_id}/delete").status_code == 302
    with session_scope(client.application) as s:
        assert s.query(AssignmentRule).count() == 0


def test_auto_assign_skips_assignee_demoted_to_student(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        former = _staff(s, "former@example.com", "Former Staff")
        helpdesk = _staff(s, "helpdesk@example.com", "Help Desk")
        create_rule(s, {"name": "Former", "assigned_to_id": str(former.id), "rule_priority": "5"}, admin)
        create_rule(s, {"name": "Fallback", "assigned_to_id": str(helpdesk.id), "rule_priority": "0"}, admin)

        former.roles = [get_role(s, "student")]
        s.flush()

        c = create_complaint(s, {"title": "Projector broken", "description": "Projector in hall 2 is dead."}, student)
        assert c.assignee.id == helpdesk.id

        helpdesk.roles = [get_role(s, "student")]
        s.flush()
        c = create_complaint(s, {"title": "Door jammed", "description": "The lab door will not close."}, student)
        assert c.assignee is None
