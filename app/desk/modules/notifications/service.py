from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape
from typing import TYPE_CHECKING

from flask import current_app, has_app_context
from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from app.desk.constants import NOTIFICATION_TYPES
from app.desk.modules.notifications.mailer import Mailer, mailer_from_config
from app.desk.modules.notifications.models import EmailPreference, Notification
from app.desk.utils import utcnow

if TYPE_CHECKING:
    from app.desk.models import User
    from app.desk.modules.complaints.models import Complaint

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = tuple(f"notify_{t}" for t in NOTIFICATION_TYPES)


def get_preferences(s: "Session", user: "User") -> EmailPreference | None:
    return s.query(EmailPreference).filter(EmailPreference.user_id == user.id).one_or_none()


def should_email(s: "Session", user: "User", notification_type: str) -> bool:
    """No preference row means every type is on."""
    pref = get_preferences(s, user)
    return pref is None or pref.allows(notification_type)


def update_preferences(s: "Session", user: "User", values: dict[str, bool]) -> EmailPreference:
    pref = get_preferences(s, user)
    if pref is None:
        pref = EmailPreference(user_id=user.id)
        s.add(pref)
    for field in PREFERENCE_FIELDS:
        setattr(pref, field, bool(values.get(field)))
    pref.updated_at = utcnow()
    s.flush()
    return pref


# ---------- Outbox ----------
# Emails wait on the session until the outermost transaction commits; anything
# queued inside a transaction or savepoint that rolls back is dropped.
OUTBOX_KEY = "notification_outbox"


@dataclass
class QueuedEmail:
    mailer: Mailer
    to: str
    subject: str
    html: str
    user_id: int
    notification_type: str
    transaction: SessionTransaction | None


def pending_emails(s: Session) -> list[QueuedEmail]:
    return list(s.info.get(OUTBOX_KEY, ()))


def _within(transaction: SessionTransaction | None, ended: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is ended:
            return True
        transaction = transaction.parent
    return False


@event.listens_for(Session, "after_soft_rollback")
def _drop_rolled_back(session: Session, previous_transaction: SessionTransaction) -> None:
    outbox = session.info.get(OUTBOX_KEY)
    if outbox:
        session.info[OUTBOX_KEY] = [q for q in outbox if not _within(q.transaction, previous_transaction)]


@event.listens_for(Session, "after_commit")
def _send_committed(session: Session) -> None:
    if session.in_nested_transaction():
        return
    outbox = session.info.pop(OUTBOX_KEY, None) or []
    for q in outbox:
        try:
            q.mailer.send(to=q.to, subject=q.subject, html=q.html)
        except Exception:
            logger.exception("Notification email failed user_id=%s type=%s", q.user_id, q.notification_type)


def _site_url() -> str:
    if has_app_context():
        return (current_app.config.get("SITE_URL") or "").rstrip("/")
    return ""


def render_email(user: "User", message: str, ticket_number: str | None, complaint_id: int | None) -> str:
    site = _site_url()
    parts = [
        "<!DOCTYPE html><html><body style=\"font-family: -apple-system, 'Segoe UI', Roboto, sans-serif;\">",
        "<div style=\"max-width:600px;margin:0 auto;padding:32px 20px;\">",
        "<h2 style=\"margin:0 0 16px;\">Student Complaint Desk</h2>",
        f"<p>Hi {escape(user.display_name)},</p>",
    ]
    if ticket_number:
        parts.append(
            "<div style=\"display:inline-block;padding:6px 12px;border-radius:6px;background:#ede9fe;"
            f"font-family:monospace;\">Ticket: {escape(ticket_number)}</div>"
        )
    parts.append(f"<p style=\"font-size:16px;line-height:1.6;\">{escape(message)}</p>")
    if complaint_id is not None:
        link = f"{site}/portal/complaints/{complaint_id}"
        parts.append(
            f"<p><a href=\"{escape(link)}\" style=\"display:inline-block;padding:12px 28px;border-radius:8px;"
            "background:#7c3aed;color:#fff;text-decoration:none;font-weight:600;\">View Complaint</a></p>"
        )
    parts.append(
        "<p style=\"margin-top:28px;color:#888;font-size:13px;\">"
        "This is an automated notification from the Student Complaint Desk. "
        f"<a href=\"{escape(site)}/portal/preferences\">Update your preferences</a></p>"
    )
    parts.append("</div></body></html>")
    return "".join(parts)


def notify(
    s: "Session",
    user: "User | None",
    notification_type: str,
    title: str,
    message: str,
    complaint: "Complaint | None" = None,
    *,
    mailer: Mailer | None = None,
) -> Notification | None:
    """
    Store an in-app notification and, when the user's preferences allow it,
    queue an email that is sent once the session commits. Email delivery
    failures are logged, never raised.
    """
    if user is None:
        return None
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")

    n = Notification(
        user_id=user.id,
        complaint_id=complaint.id if complaint is not None else None,
        type=notification_type,
        title=title[:255],
        message=message,
    )
    s.add(n)
    s.flush()

    if not should_email(s, user, notification_type):
        logger.debug("Email suppressed by preferences user_id=%s type=%s", user.id, notification_type)
        return n

    if mailer is None:
        if not has_app_context():
            return n
        mailer = mailer_from_config(current_app.config)

    html = render_email(
        user,
        message,
        complaint.ticket_number if complaint is not None else None,
        complaint.id if complaint is not None else None,
    )
    s.info.setdefault(OUTBOX_KEY, []).append(
        QueuedEmail(
            mailer=mailer,
            to=user.email,
            subject=title,
            html=html,
            user_id=user.id,
            notification_type=notification_type,
            transaction=s.get_nested_transaction() or s.get_transaction(),
        )
    )
    return n


def unread_count(s: "Session", user: "User") -> int:
    return (
        s.query(Notification)
        .filter(Notification.user_id == user.id, Notification.is_read.is_(False))
        .count()
    )


def mark_read(s: "Session", user: "User", notification_id: int) -> bool:
    n = s.get(Notification, notification_id)
    if n is None or n.user_id != user.id:
        return False
    n.is_read = True
    return True


def mark_all_read(s: "Session", user: "User") -> int:
    return (
        s.query(Notification)
        .filter(Notification.user_id == user.id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
