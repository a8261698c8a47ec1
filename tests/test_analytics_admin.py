import csv
import io
from datetime import datetime, timedelta

from openpyxl import load_workbook

from app.desk.db import session_scope
from app.desk.models import AuditEvent, User
from app.desk.modules.complaints.models import Category
from app.desk.modules.complaints.service import add_comment, change_status, create_complaint
from app.desk.modules.analytics.export import EXPORT_COLUMNS, export_rows, to_csv, to_xlsx
from app.desk.modules.analytics.service import breakdowns, daily_trend, summary_stats
from app.desk.modules.search.service import SearchFilters

NOW = datetime(2026, 5, 10, 15, 0)


def _seed(s):
    student = s.query(User).filter(User.email == "student@example.com").one()
    admin = s.query(User).filter(User.email == "admin@example.com").one()
    cat = Category(name="Facilities", is_active=True)
    s.add(cat)
    s.flush()
    a = create_complaint(
        s,
        {"title": "Leaking roof", "description": "Water drips in the reading room.", "category_id": cat.id},
        student,
        now=NOW - timedelta(days=2),
    )
    b = create_complaint(
        s,
        {"title": "Anonymous tip", "description": "Someone is smoking in stairwell.", "is_anonymous": "1", "priority": "high"},
        student,
        now=NOW - timedelta(days=1),
    )
    add_comment(s, a, admin, "Maintenance is on the way.", now=NOW - timedelta(days=2) + timedelta(hours=2))
    change_status(s, a, "resolved", admin, now=NOW - timedelta(hours=1))
    return a, b


def test_summary_and_breakdowns(app):
    with session_scope(app) as s:
        a, b = _seed(s)
        stats = summary_stats(s, now=NOW)
        assert stats["total"] == 2
        assert stats["open"] == 1
        assert stats["pending"] == 1
        assert stats["resolved_today"] == 1
        assert stats["students"] == 2
        assert stats["resolution_rate"] == 50.0
        assert stats["avg_first_response_hours"] == 2.0
        assert stats["avg_satisfaction"] is None

        bd = breakdowns(s)
        assert bd["total"] == 2
        assert bd["by_status"]["resolved"] == 1
        assert bd["by_priority"] == {"low": 0, "medium": 1, "high": 1, "urgent": 0}
        assert ("Facilities", 1) in bd["top_categories"]
        assert ("Uncategorized", 1) in bd["top_categories"]

        trend = daily_trend(s, days=3, now=NOW)
        assert [d["created"] for d in trend] == [1, 1, 0]
        assert trend[-1]["resolved"] == 1


def test_export_rows_and_formats(app):
    with session_scope(app) as s:
        a, b = _seed(s)
        rows = export_rows(s)
        assert [r["Ticket #"] for r in rows] == [b.ticket_number, a.ticket_number]
        assert rows[0]["Submitted By"] == "Anonymous"
        assert rows[1]["Status"] == "resolved"
        assert rows[1]["SLA Status"] == "met"

        only_high = export_rows(s, SearchFilters(priority=["high"]))
        assert len(only_high) == 1

    parsed = list(csv.DictReader(io.StringIO(to_csv(rows).decode("utf-8"))))
    assert list(parsed[0].keys()) == list(EXPORT_COLUMNS)
    assert parsed[1]["Category"] == "Facilities"

    wb = load_workbook(io.BytesIO(to_xlsx(rows)))
    ws = wb.active
    assert ws.title == "Complaints"
    assert [c.value for c in ws[1]] == list(EXPORT_COLUMNS)
    assert ws.max_row == 3


def test_exports_quote_formula_like_cells():
    rows = [
        {
            "Ticket #": "TKT-2026-00001",
            "Title": '=HYPERLINK("http://evil.example","click")',
            "Description": "+1 555 0100",
            "Status": "Open",
            "Priority": "low",
            "Category": "",
            "Submitted By": "@mention",
            "Assigned To": "",
            "Created": "2026-05-10 15:00",
            "Resolved": "",
            "SLA Status": "On Track",
        }
    ]
    parsed = list(csv.DictReader(io.StringIO(to_csv(rows).decode("utf-8"))))
    assert parsed[0]["Title"].startswith("'=HYPERLINK")
    assert parsed[0]["Description"] == "'+1 555 0100"
    assert parsed[0]["Submitted By"] == "'@mention"
    assert parsed[0]["Ticket #"] == "TKT-2026-00001"

    ws = load_workbook(io.BytesIO(to_xlsx(rows))).active
    assert ws["B2"].value.startswith("'=")
    assert ws["B2"].data_type == "s"
    assert ws["A2"].value == "TKT-2026-00001"


def test_export_endpoint_is_audited(client, login):
    with session_scope(client.application) as s:
        _seed(s)

    login("admin@example.com")
    r = client.get("/admin/complaints/export.csv?priority=high")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert b"Anonymous tip" in r.data
    assert b"Leaking roof" not in r.data

    r = client.get("/admin/complaints/export.xlsx")
    assert r.status_code == 200
    assert r.data[:2] == b"PK"

    assert client.get("/admin/complaints/export.pdf").status_code == 404

    with session_scope(client.application) as s:
        events = s.query(AuditEvent).filter(AuditEvent.action == "complaint.export").count()
        assert events == 2

    r = client.get("/admin/analytics/stats.json?days=7")
    assert r.status_code == 200
    assert r.json["summary"]["total"] == 2
    assert len(r.json["trend"]) == 7
    assert client.get("/admin/analytics").status_code == 200


# ---------- Admin shell ----------
def test_activity_feed_returns_newer_events(client, login):
    login("admin@example.com")
    r = client.get("/admin/activity/feed")
    assert r.status_code == 200
    last_id = r.json["last_id"]
    assert r.json["events"][-1]["action"] == "auth.login"

    client.post("/admin/sla/run")
    r = client.get(f"/admin/activity/feed?since={last_id}")
    actions = [e["action"] for e in r.json["events"]]
    assert actions == ["sla.monitor_run"]
    assert r.json["last_id"] > last_id

    assert client.get("/admin/activity?action=sla").status_code == 200


def test_admin_cannot_demote_or_disable_self(client, login, users):
    login("admin@example.com")
    admin_id = users["admin@example.com"]
    student_id = users["student@example.com"]

    r = client.post(f"/admin/users/{admin_id}/role", data={"role": "student"})
    assert r.status_code == 302
    r = client.post(f"/admin/users/{admin_id}/active", data={"is_active": "0"})
    assert r.status_code == 302
    with session_scope(client.application) as s:
        me = s.get(User, admin_id)
        assert me.role_keys == ["admin"]
        assert me.is_active is True

    r = client.post(f"/admin/users/{student_id}/role", data={"role": "admin"})
    assert r.status_code == 302
    r = client.post(f"/admin/users/{student_id}/role", data={"role": "owner"})
    assert r.status_code == 400
    with session_scope(client.application) as s:
        assert s.get(User, student_id).role_keys == ["admin"]

    assert client.get("/admin/users?q=student").status_code == 200


def test_deactivated_user_is_logged_out(client, login, users):
    login("student@example.com")
    assert client.get("/portal/dashboard").status_code == 200

    with session_scope(client.application) as s:
        s.get(User, users["student@example.com"]).is_active = False

    r = client.get("/portal/dashboard")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
