from app.desk.db import session_scope
from app.desk.models import User
from app.desk.modules.complaint_templates.models import ComplaintTemplate
from app.desk.modules.complaint_templates.service import (
    active_templates,
    create_template,
    prefill,
    toggle_template,
    validate_template_payload,
)
from app.desk.modules.complaints.models import Category, Complaint


def _user(s, email) -> User:
    return s.query(User).filter(User.email == email).one()


def _payload(**extra) -> dict:
    payload = {
        "name": "Hostel maintenance",
        "title_template": "Maintenance needed in hostel room",
        "description_template": "Room number:\nWhat is broken:\nSince when:",
        "default_priority": "high",
    }
    payload.update(extra)
    return payload


def test_template_validation(app):
    with session_scope(app) as s:
        errors = validate_template_payload(s, {"name": "", "title_template": "", "description_template": ""})
        assert errors == [
            "Name is required.",
            "Title template is required.",
            "Description template is required.",
        ]
        assert validate_template_payload(s, _payload(default_priority="critical"))[0].startswith("Invalid priority")
        assert validate_template_payload(s, _payload(category_id="999")) == ["Unknown category."]

        tpl = create_template(s, _payload(), _user(s, "admin@example.com"))
        assert validate_template_payload(s, _payload()) == ['A template named "Hostel maintenance" already exists.']
        assert validate_template_payload(s, _payload(), exclude_id=tpl.id) == []


def test_prefill_uses_template_values_and_skips_inactive(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        cat = Category(name="Hostel", is_active=True)
        s.add(cat)
        s.flush()
        tpl = create_template(s, _payload(category_id=str(cat.id)), admin)

        assert prefill(tpl) == {
            "title": "Maintenance needed in hostel room",
            "description": "Room number:\nWhat is broken:\nSince when:",
            "priority": "high",
            "template_id": tpl.id,
            "category_id": cat.id,
        }

        cat.is_active = False
        assert "category_id" not in prefill(tpl)

        toggle_template(s, tpl, admin)
        assert prefill(tpl) == {}
        assert active_templates(s) == []


def test_new_complaint_form_is_prefilled_from_template(client, login):
    login("admin@example.com")
    r = client.post("/admin/complaint-templates/new", data=_payload())
    assert r.status_code == 302
    r = client.post("/admin/complaint-templates/new", data=_payload(title_template=""))
    assert r.status_code == 302

    with session_scope(client.application) as s:
        assert s.query(ComplaintTemplate).count() == 1
        tpl_id = s.query(ComplaintTemplate).one().id

    login("student@example.com")
    assert client.get("/admin/complaint-templates").status_code == 403

    r = client.get("/portal/complaints/new")
    assert b"Start from a template" in r.data
    assert b"Hostel maintenance" in r.data

    r = client.get(f"/portal/complaints/new?template={tpl_id}")
    assert r.status_code == 200
    assert b'size="60" value="Maintenance needed in hostel room"' in r.data
    assert b'<option value="high" selected>' in r.data

    # unknown template ids fall back to an empty form
    r = client.get("/portal/complaints/new?template=999")
    assert r.status_code == 200
    assert b'size="60" value=""' in r.data

    r = client.post(
        "/portal/complaints/new",
        data={
            "title": "Maintenance needed in hostel room",
            "description": "Room number: B-14\nWhat is broken: window latch",
            "priority": "high",
        },
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        c = s.query(Complaint).one()
        assert (c.title, c.priority) == ("Maintenance needed in hostel room", "high")
