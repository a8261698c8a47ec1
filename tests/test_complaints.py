import io
from datetime import datetime

import pytest

from app.desk.db import session_scope
from app.desk.models import AuditEvent, User
from app.desk.modules.complaints import service as complaint_service
from app.desk.modules.complaints.models import Category, Comment, Complaint, MergedComplaint
from app.desk.modules.complaints.service import (
    ComplaintError,
    MergeError,
    SurveyError,
    TransitionError,
    add_comment,
    bulk_update,
    change_status,
    create_complaint,
    escalate,
    find_similar,
    generate_ticket_number,
    merge,
    submit_survey,
    visible_comments,
)
from app.desk.modules.notifications.models import Notification

T0 = datetime(2026, 3, 2, 9, 0)


def _user(s, email) -> User:
    return s.query(User).filter(User.email == email).one()


def _complaint(s, student, title="Wifi keeps dropping in library", **extra) -> Complaint:
    payload = {"title": title, "description": "The wireless network disconnects every few minutes.", **extra}
    return create_complaint(s, payload, student, now=T0)


def test_ticket_numbers_are_sequential_per_year(app):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        c1 = _complaint(s, student)
        c2 = _complaint(s, student, title="Cafeteria food is cold")
        assert c1.ticket_number == "TKT-2026-00001"
        assert c2.ticket_number == "TKT-2026-00002"
        assert generate_ticket_number(s, datetime(2027, 1, 1)) == "TKT-2027-00001"


def test_ticket_sequence_survives_five_digit_rollover(app):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        c = _complaint(s, student)
        c.ticket_number = "TKT-2026-99999"
        s.flush()
        assert _complaint(s, student, title="Lights flicker in hall").ticket_number == "TKT-2026-100000"
        assert generate_ticket_number(s, T0) == "TKT-2026-100001"


def test_ticket_collision_retries_in_savepoint(app, monkeypatch):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        taken = _complaint(s, student).ticket_number

        issued = iter([taken, taken, "TKT-2026-00777"])
        monkeypatch.setattr(complaint_service, "generate_ticket_number", lambda s, now=None: next(issued))
        c = _complaint(s, student, title="Vending machine ate coins")
        assert c.ticket_number == "TKT-2026-00777"
        assert s.query(Complaint).count() == 2

        monkeypatch.setattr(complaint_service, "generate_ticket_number", lambda s, now=None: taken)
        with pytest.raises(ComplaintError, match="ticket number"):
            _complaint(s, student, title="Stairwell light is out")
        assert s.query(Complaint).count() == 2


def test_create_sets_defaults_sla_and_watcher(app):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        c = _complaint(s, student)
        assert c.status == "open"
        assert c.priority == "medium"
        assert c.assignee is None
        assert student.id in c.watcher_ids
        # medium default: 48h resolution window
        assert c.sla_breach_at == datetime(2026, 3, 4, 9, 0)
        assert c.sla_tracking is not None
        assert c.sla_tracking.response_deadline == datetime(2026, 3, 2, 21, 0)

        actions = [e.action for e in s.query(AuditEvent).all()]
        assert "complaint.create" in actions


def test_create_validates_payload(app):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        with pytest.raises(ComplaintError):
            create_complaint(s, {"title": "Hi", "description": "short"}, student)
        with pytest.raises(ComplaintError):
            create_complaint(
                s,
                {"title": "Valid title", "description": "Long enough description.", "priority": "critical"},
                student,
            )

        inactive = Category(name="Old", is_active=False)
        s.add(inactive)
        s.flush()
        with pytest.raises(ComplaintError):
            create_complaint(
                s,
                {"title": "Valid title", "description": "Long enough description.", "category_id": inactive.id},
                student,
            )


def test_status_transitions_follow_the_lifecycle(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        c = _complaint(s, student)

        change_status(s, c, "in_progress", admin, now=datetime(2026, 3, 2, 10, 0))
        change_status(s, c, "resolved", admin, resolution_notes="Router replaced", now=datetime(2026, 3, 3, 9, 0))
        assert c.resolved_at == datetime(2026, 3, 3, 9, 0)
        assert c.resolution_notes == "Router replaced"
        assert c.sla_status == "met"

        with pytest.raises(TransitionError):
            change_status(s, c, "open", admin)
        with pytest.raises(TransitionError):
            change_status(s, c, "resolved", admin)
        with pytest.raises(TransitionError):
            change_status(s, c, "archived", admin)

        change_status(s, c, "closed", admin)
        change_status(s, c, "open", admin, reason="Still broken")
        assert c.resolved_at is None
        assert c.closed_at is None

        # student is told about every change
        n = s.query(Notification).filter(Notification.user_id == student.id, Notification.type == "status_change").count()
        assert n == 4


def test_internal_comments_are_hidden_from_students(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        c = _complaint(s, student)

        add_comment(s, c, admin, "Checked the access point logs.", is_internal=True)
        assert c.first_response_at is None
        add_comment(s, c, admin, "We are looking into it.", now=datetime(2026, 3, 2, 11, 0))
        assert c.first_response_at == datetime(2026, 3, 2, 11, 0)
        assert c.sla_tracking.first_response_at == datetime(2026, 3, 2, 11, 0)
        add_comment(s, c, student, "Thanks!")

        assert len(visible_comments(c, admin)) == 3
        seen = visible_comments(c, student)
        assert [cm.content for cm in seen] == ["We are looking into it.", "Thanks!"]


def test_students_cannot_comment_on_others_or_post_internal(app):
    with session_scope(app) as s:
        student = _user(s, "student@example.com")
        other = _user(s, "other@example.com")
        c = _complaint(s, student)

        with pytest.raises(ComplaintError):
            add_comment(s, c, other, "Me too")
        with pytest.raises(ComplaintError):
            add_comment(s, c, student, "Secret", is_internal=True)
        with pytest.raises(ComplaintError):
            add_comment(s, c, student, "   ")

        cm = add_comment(s, c, student, "Marking my own reply", is_solution=True)
        assert cm.is_solution is False


def test_escalation_bumps_priority(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        c = _complaint(s, student, priority="high")

        esc = escalate(s, c, "No response for two days", admin, escalated_to=admin)
        assert esc.status == "pending"
        assert c.priority == "urgent"
        assert c.assignee.id == admin.id

        with pytest.raises(ComplaintError):
            escalate(s, c, "", admin)

        change_status(s, c, "resolved", admin)
        assert esc.status == "resolved"


def test_merge_moves_comments_and_watchers(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        other = _user(s, "other@example.com")
        target = _complaint(s, student)
        source = _complaint(s, other, title="Library wifi not working")
        add_comment(s, source, other, "Happens every evening.")

        record = merge(s, source, target, admin, reason="Same outage")
        assert isinstance(record, MergedComplaint)
        assert source.is_merged is True
        assert source.status == "closed"
        assert source.merged_into_id == target.id
        assert other.id in target.watcher_ids

        copied = [cm for cm in target.comments if cm.content.startswith(f"[Merged from {source.ticket_number}]")]
        assert len(copied) == 1
        assert copied[0].is_internal is True

        with pytest.raises(MergeError):
            merge(s, source, target, admin)
        with pytest.raises(MergeError):
            merge(s, target, target, admin)


def test_bulk_update_counts_skips(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        a = _complaint(s, student)
        b = _complaint(s, student, title="Broken chair in lab")
        change_status(s, b, "resolved", admin)

        # resolved -> in_progress is allowed, open -> in_progress too; unknown id is skipped
        updated, skipped = bulk_update(s, [a.id, b.id, 9999], "status", "in_progress", admin)
        assert (updated, skipped) == (2, 1)

        updated, skipped = bulk_update(s, [a.id, b.id], "status", "under_review", admin)
        assert (updated, skipped) == (2, 0)

        updated, skipped = bulk_update(s, [a.id, b.id], "status", "open", admin)
        # under_review -> open is not a legal move
        assert (updated, skipped) == (0, 2)

        updated, skipped = bulk_update(s, [a.id], "priority", "medium", admin)
        assert (updated, skipped) == (0, 1)

        updated, skipped = bulk_update(s, [a.id, b.id], "assign", str(admin.id), admin)
        assert (updated, skipped) == (2, 0)

        with pytest.raises(ComplaintError):
            bulk_update(s, [a.id], "archive", None, admin)
        with pytest.raises(ComplaintError):
            bulk_update(s, [a.id], "assign", "9999", admin)

        updated, skipped = bulk_update(s, [a.id], "delete", None, admin)
        assert (updated, skipped) == (1, 0)
        assert s.get(Complaint, a.id) is None


def test_assigning_to_a_student_is_skipped_in_bulk(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        a = _complaint(s, student)
        updated, skipped = bulk_update(s, [a.id], "assign", str(student.id), admin)
        assert (updated, skipped) == (0, 1)
        assert a.assignee is None


def test_survey_closes_resolved_complaint_once(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        other = _user(s, "other@example.com")
        c = _complaint(s, student)

        with pytest.raises(SurveyError):
            submit_survey(s, c, student, {"overall_rating": "5"})

        change_status(s, c, "resolved", admin)
        with pytest.raises(SurveyError):
            submit_survey(s, c, other, {"overall_rating": "5"})
        with pytest.raises(SurveyError):
            submit_survey(s, c, student, {"overall_rating": "9"})
        with pytest.raises(SurveyError):
            submit_survey(s, c, student, {})

        survey = submit_survey(
            s,
            c,
            student,
            {"overall_rating": "4", "communication_rating": "5", "would_recommend": "yes", "feedback_text": "Quick fix"},
        )
        assert survey.would_recommend is True
        assert c.satisfaction_rating == 4
        assert c.feedback == "Quick fix"
        assert c.status == "closed"

        with pytest.raises(SurveyError):
            submit_survey(s, c, student, {"overall_rating": "5"})


def test_find_similar_matches_open_titles(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        student = _user(s, "student@example.com")
        other = _user(s, "other@example.com")
        mine = _complaint(s, student, title="Library wifi drops constantly")
        theirs = _complaint(s, other, title="Wifi in dorms is slow")
        done = _complaint(s, student, title="Wifi password reset")
        change_status(s, done, "closed", admin)

        ids = {c.id for c in find_similar(s, "wifi outage")}
        assert ids == {mine.id, theirs.id}

        ids = {c.id for c in find_similar(s, "wifi outage", student)}
        assert ids == {mine.id}

        assert find_similar(s, "hi") == []
        assert find_similar(s, "wifi outage", exclude_id=mine.id)[0].id == theirs.id


def test_portal_submit_detail_and_attachment(client, login):
    login("student@example.com")
    r = client.post(
        "/portal/complaints/new",
        data={
            "title": "Broken heater in room 12",
            "description": "The heater has not worked since Monday.",
            "priority": "high",
            "file": (io.BytesIO(b"%PDF-1.4 photo"), "heater.pdf"),
        },
        content_type="multipart/form-data",
        follow_redirects=False,
    )
    assert r.status_code == 302

    with session_scope(client.application) as s:
        c = s.query(Complaint).one()
        assert c.priority == "high"
        assert len(c.attachments) == 1
        att = c.attachments[0]
        assert att.file_name == "heater.pdf"
        cid, att_id = c.id, att.id

    r = client.get(f"/portal/complaints/{cid}")
    assert r.status_code == 200
    r = client.get(f"/portal/complaints/{cid}/attachments/{att_id}")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 photo"

    # executables are refused
    r = client.post(
        f"/portal/complaints/{cid}/attachments",
        data={"file": (io.BytesIO(b"MZ"), "setup.exe")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        assert len(s.get(Complaint, cid).attachments) == 1


def test_students_cannot_open_other_students_complaints(client, login, users):
    with session_scope(client.application) as s:
        owner = s.get(User, users["other@example.com"])
        cid = _complaint(s, owner).id

    login("student@example.com")
    assert client.get(f"/portal/complaints/{cid}").status_code == 404
    r = client.post(f"/portal/complaints/{cid}/comments", data={"content": "hello"})
    assert r.status_code == 404

    with session_scope(client.application) as s:
        assert s.query(Comment).count() == 0


def test_admin_status_change_and_bulk_via_http(client, login, users):
    with session_scope(client.application) as s:
        student = s.get(User, users["student@example.com"])
        a = _complaint(s, student).id
        b = _complaint(s, student, title="Projector flickers in hall").id

    login("admin@example.com")
    r = client.post(f"/admin/complaints/{a}/status", data={"status": "in_progress"})
    assert r.status_code == 302
    r = client.post("/admin/complaints/bulk", data={"complaint_ids": [str(a), str(b)], "action": "priority", "value": "urgent"})
    assert r.status_code == 302

    with session_scope(client.application) as s:
        assert s.get(Complaint, a).status == "in_progress"
        assert {s.get(Complaint, a).priority, s.get(Complaint, b).priority} == {"urgent"}

    r = client.get(f"/admin/complaints/{a}/timeline.json")
    assert r.status_code == 200
    actions = [ev["action"] for ev in r.json]
    assert "complaint.status_change" in actions
    assert "complaint.priority_change" in actions


def test_anonymous_submitter_is_masked_for_staff(client, login):
    login("student@example.com")
    client.post(
        "/portal/complaints/new",
        data={
            "title": "Harassment in the lab",
            "description": "Please keep my name out of this.",
            "is_anonymous": "1",
        },
    )
    with session_scope(client.application) as s:
        cid = s.query(Complaint).one().id
    client.post(f"/portal/complaints/{cid}/comments", data={"content": "It happened again today."})

    login("admin@example.com")
    client.post(f"/admin/complaints/{cid}/status", data={"status": "in_progress"})

    r = client.get(f"/admin/complaints/{cid}")
    assert r.status_code == 200
    assert b"It happened again today." in r.data
    assert b"Sam Student" not in r.data
    assert b"student@example.com" not in r.data

    actors = {ev["action"]: ev["actor"] for ev in client.get(f"/admin/complaints/{cid}/timeline.json").json}
    assert actors["complaint.create"] == "Anonymous"
    assert actors["comment.create"] == "Anonymous"
    assert actors["complaint.status_change"] == "admin@example.com"

    feed = client.get("/admin/activity/feed").json["events"]
    complaint_actors = {ev["actor"] for ev in feed if ev["entity_type"] == "Complaint"}
    assert complaint_actors == {"Anonymous", "admin@example.com"}

    r = client.get("/admin/activity", query_string={"actor_email": "student@example.com"})
    assert b"complaint.create" not in r.data
