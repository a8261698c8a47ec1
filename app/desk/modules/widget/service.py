from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from werkzeug.security import generate_password_hash

from app.desk.audit import record_event
from app.desk.auth import valid_email
from app.desk.models import User
from app.desk.modules.complaints.models import Complaint
from app.desk.modules.complaints.service import ComplaintError, create_complaint
from app.desk.rbac import get_role
from app.desk.utils import clean_text

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "description", "email", "full_name")


def find_or_create_student(s: "Session", email: str, full_name: str) -> User:
    email = email.strip().lower()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is not None:
        if not user.is_active:
            raise ComplaintError("This account is disabled.")
        return user

    user = User(
        email=email,
        # Random unusable password; the student can ask for an account later.
        password_hash=generate_password_hash(secrets.token_urlsafe(32)),
        full_name=full_name,
        is_active=True,
    )
    user.roles.append(get_role(s, "student"))
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=None,
        action="widget.user_create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": email},
    )
    return user


def submit_widget_complaint(s: "Session", data: dict) -> Complaint:
    missing = [f for f in REQUIRED_FIELDS if not clean_text(data.get(f))]
    if missing:
        raise ComplaintError(f"Missing required fields: {', '.join(missing)}")
    email = clean_text(data.get("email")).lower()
    if not valid_email(email):
        raise ComplaintError("A valid email is required.")

    student = find_or_create_student(s, email, clean_text(data.get("full_name")))
    payload = {
        "title": data.get("title"),
        "description": data.get("description"),
        "category_id": data.get("category_id"),
        "priority": clean_text(data.get("priority")) or "medium",
    }
    complaint = create_complaint(s, payload, student)
    logger.info("Widget complaint %s submitted for user_id=%s", complaint.ticket_number, student.id)
    return complaint
