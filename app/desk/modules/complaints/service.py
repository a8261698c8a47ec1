from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from werkzeug.utils import secure_filename

from app.desk.audit import record_event
from app.desk.constants import (
    ALLOWED_ATTACHMENT_EXTENSIONS,
    ALLOWED_TRANSITIONS,
    DONE_STATUSES,
    FINAL_STATUSES,
    PRIORITIES,
    STATUSES,
    TICKET_PREFIX,
    status_label,
)
from app.desk.models import AuditEvent, User
from app.desk.modules.assignment_rules.service import auto_assign
from app.desk.modules.complaints.models import (
    Attachment,
    Category,
    Comment,
    Complaint,
    ComplaintWatcher,
    Escalation,
    MergedComplaint,
    SatisfactionSurvey,
    Tag,
)
from app.desk.modules.notifications.service import notify
from app.desk.modules.sla.service import close_tracking, record_first_response, reopen_tracking, start_tracking
from app.desk.rbac import is_staff, user_has_permission
from app.desk.utils import clean_text, optional_text, parse_bool, parse_int, sha256_bytes, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.desk.storage import Storage

logger = logging.getLogger(__name__)

TICKET_INSERT_ATTEMPTS = 5
TITLE_MIN, TITLE_MAX = 3, 200
DESCRIPTION_MIN = 10


class ComplaintError(ValueError):
    pass


class TransitionError(ComplaintError):
    pass


class MergeError(ComplaintError):
    pass


class SurveyError(ComplaintError):
    pass


# ---------- Ticket numbers ----------
def generate_ticket_number(s: "Session", now: datetime | None = None) -> str:
    """TKT-<year>-<seq>; seq is one more than the highest issued this year."""
    year = (now or utcnow()).year
    prefix = f"{TICKET_PREFIX}-{year}-"
    # seq outgrows its zero padding after 99999, so compare by length first
    latest = (
        s.query(Complaint.ticket_number)
        .filter(Complaint.ticket_number.like(f"{prefix}%"))
        .order_by(func.length(Complaint.ticket_number).desc(), Complaint.ticket_number.desc())
        .limit(1)
        .scalar()
    )
    seq = 1
    if latest:
        try:
            seq = int(latest.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            logger.warning("Unparseable ticket number %r; restarting sequence", latest)
    return f"{prefix}{seq:05d}"


# ---------- Validation ----------
def validate_complaint_payload(s: "Session", payload: dict) -> list[str]:
    """Validate complaint creation payload. Returns list of errors."""
    errors: list[str] = []
    title = clean_text(payload.get("title"))
    description = clean_text(payload.get("description"))
    if len(title) < TITLE_MIN or len(title) > TITLE_MAX:
        errors.append(f"Title must be between {TITLE_MIN} and {TITLE_MAX} characters.")
    if len(description) < DESCRIPTION_MIN:
        errors.append(f"Description must be at least {DESCRIPTION_MIN} characters.")
    priority = clean_text(payload.get("priority")) or "medium"
    if priority not in PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    category_id = parse_int(payload.get("category_id"))
    if category_id is not None:
        category = s.get(Category, category_id)
        if category is None or not category.is_active:
            errors.append("Unknown or inactive category.")
    return errors


# ---------- Visibility ----------
def can_view(user: User | None, complaint: Complaint) -> bool:
    if user is None:
        return False
    return is_staff(user) or complaint.student_id == user.id


def visible_complaints(s: "Session", user: User) -> "Query":
    q = s.query(Complaint)
    if not is_staff(user):
        q = q.filter(Complaint.student_id == user.id)
    return q


def visible_comments(complaint: Complaint, user: User) -> list[Comment]:
    if is_staff(user):
        return list(complaint.comments)
    return [c for c in complaint.comments if not c.is_internal]


def actor_labels(s: "Session", events: list[AuditEvent]) -> dict[int, str]:
    """
    Actor shown to staff per audit event id. Events the submitter of an
    anonymous complaint performed on it read "Anonymous".
    """
    complaint_ids = {
        cid
        for cid in (parse_int(ev.entity_id) for ev in events if ev.entity_type == "Complaint")
        if cid is not None
    }
    hidden: dict[int, int] = {}
    if complaint_ids:
        hidden = dict(
            s.query(Complaint.id, Complaint.student_id)
            .filter(Complaint.id.in_(sorted(complaint_ids)), Complaint.is_anonymous.is_(True))
            .all()
        )
    labels: dict[int, str] = {}
    for ev in events:
        label = ev.actor_user_email or "system"
        if ev.entity_type == "Complaint" and ev.actor_user_id is not None:
            if hidden.get(parse_int(ev.entity_id)) == ev.actor_user_id:
                label = "Anonymous"
        labels[ev.id] = label
    return labels


# ---------- Watchers ----------
def _ensure_watcher(complaint: Complaint, user: User) -> bool:
    if user.id in complaint.watcher_ids:
        return False
    complaint.watchers.append(ComplaintWatcher(user=user, user_id=user.id))
    return True


def watch(s: "Session", complaint: Complaint, user: User) -> bool:
    added = _ensure_watcher(complaint, user)
    if added:
        record_event(s, actor=user, action="complaint.watch", entity_type="Complaint", entity_id=str(complaint.id))
    return added


def unwatch(s: "Session", complaint: Complaint, user: User) -> bool:
    for w in list(complaint.watchers):
        if w.user_id == user.id:
            complaint.watchers.remove(w)
            record_event(s, actor=user, action="complaint.unwatch", entity_type="Complaint", entity_id=str(complaint.id))
            return True
    return False


def _notify_many(
    s: "Session",
    recipients: list[User | None],
    actor: User | None,
    notification_type: str,
    title: str,
    message: str,
    complaint: Complaint,
) -> int:
    seen: set[int] = set()
    sent = 0
    for user in recipients:
        if user is None or not user.is_active or user.id in seen:
            continue
        if actor is not None and user.id == actor.id:
            continue
        seen.add(user.id)
        notify(s, user, notification_type, title, message, complaint)
        sent += 1
    return sent


# ---------- Create ----------
def create_complaint(s: "Session", payload: dict, student: User, now: datetime | None = None) -> Complaint:
    errors = validate_complaint_payload(s, payload)
    if errors:
        raise ComplaintError(" ".join(errors))

    now = now or utcnow()
    category_id = parse_int(payload.get("category_id"))

    complaint: Complaint | None = None
    for attempt in range(TICKET_INSERT_ATTEMPTS):
        candidate = Complaint(
            ticket_number=generate_ticket_number(s, now),
            title=clean_text(payload.get("title")),
            description=clean_text(payload.get("description")),
            category_id=category_id,
            priority=clean_text(payload.get("priority")) or "medium",
            status="open",
            student_id=student.id,
            student=student,
            is_anonymous=parse_bool(payload.get("is_anonymous")),
            is_public=parse_bool(payload.get("is_public")),
            created_at=now,
            updated_at=now,
        )
        try:
            with s.begin_nested():
                s.add(candidate)
                s.flush()
            complaint = candidate
            break
        except IntegrityError:
            logger.warning("Ticket number collision on %s (attempt %s)", candidate.ticket_number, attempt + 1)
    if complaint is None:
        raise ComplaintError("Could not allocate a ticket number. Please try again.")

    if category_id is not None:
        complaint.category = s.get(Category, category_id)

    start_tracking(s, complaint, now)
    _ensure_watcher(complaint, student)
    rule = auto_assign(s, complaint)
    s.flush()

    record_event(
        s,
        actor=student,
        action="complaint.create",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={
            "ticket_number": complaint.ticket_number,
            "priority": complaint.priority,
            "category_id": complaint.category_id,
            "rule_id": rule.id if rule else None,
        },
    )

    if complaint.assignee is not None:
        _ensure_watcher(complaint, complaint.assignee)
        notify(
            s,
            complaint.assignee,
            "assignment",
            f"New complaint assigned: {complaint.ticket_number}",
            f'Complaint "{complaint.title}" has been assigned to you.',
            complaint,
        )
    return complaint


# ---------- Status / priority / assignment ----------
def _resolve_escalations(complaint: Complaint, now: datetime) -> None:
    for esc in complaint.escalations:
        if esc.status == "pending":
            esc.status = "resolved"
            esc.resolved_at = now


def change_status(
    s: "Session",
    complaint: Complaint,
    new_status: str,
    actor: User | None,
    reason: str | None = None,
    resolution_notes: str | None = None,
    now: datetime | None = None,
) -> Complaint:
    new_status = clean_text(new_status)
    if new_status not in STATUSES:
        raise TransitionError(f"Unknown status: {new_status}")
    old_status = complaint.status
    if new_status == old_status:
        raise TransitionError(f"Complaint is already {status_label(old_status)}.")
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, frozenset()):
        raise TransitionError(f"Cannot move a complaint from {status_label(old_status)} to {status_label(new_status)}.")

    now = now or utcnow()
    complaint.status = new_status
    complaint.updated_at = now
    if resolution_notes:
        complaint.resolution_notes = resolution_notes.strip()

    if new_status == "resolved":
        complaint.resolved_at = now
        _resolve_escalations(complaint, now)
        close_tracking(complaint, now)
    elif new_status == "closed":
        complaint.closed_at = now
        _resolve_escalations(complaint, now)
        if complaint.resolved_at is None:
            close_tracking(complaint, now)
    elif new_status == "rejected":
        _resolve_escalations(complaint, now)
    elif old_status in FINAL_STATUSES:
        # Reopened.
        complaint.resolved_at = None
        complaint.closed_at = None
        reopen_tracking(complaint, now)

    record_event(
        s,
        actor=actor,
        action="complaint.status_change",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        reason=reason,
        metadata={"ticket_number": complaint.ticket_number, "old": old_status, "new": new_status},
    )

    watchers = [w.user for w in complaint.watchers]
    _notify_many(
        s,
        [complaint.student, *watchers],
        actor,
        "status_change",
        f"Status updated: {complaint.ticket_number}",
        f'Complaint "{complaint.title}" is now {status_label(new_status)}.',
        complaint,
    )
    return complaint


def change_priority(s: "Session", complaint: Complaint, priority: str, actor: User, now: datetime | None = None) -> Complaint:
    priority = clean_text(priority)
    if priority not in PRIORITIES:
        raise ComplaintError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    if priority == complaint.priority:
        return complaint
    now = now or utcnow()
    old = complaint.priority
    complaint.priority = priority
    complaint.updated_at = now
    if complaint.status not in DONE_STATUSES:
        start_tracking(s, complaint, now)
    record_event(
        s,
        actor=actor,
        action="complaint.priority_change",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"ticket_number": complaint.ticket_number, "old": old, "new": priority},
    )
    return complaint


def assign(s: "Session", complaint: Complaint, assignee: User | None, actor: User) -> bool:
    """Returns False when nothing changed."""
    if assignee is not None:
        if not assignee.is_active or not user_has_permission(assignee, "complaints.triage"):
            raise ComplaintError("Complaints can only be assigned to active staff members.")
    old = complaint.assignee
    if (old.id if old else None) == (assignee.id if assignee else None):
        return False

    complaint.assignee = assignee
    complaint.assigned_to_id = assignee.id if assignee else None
    complaint.updated_at = utcnow()
    record_event(
        s,
        actor=actor,
        action="complaint.assign",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={
            "ticket_number": complaint.ticket_number,
            "old": old.email if old else None,
            "new": assignee.email if assignee else None,
        },
    )
    if assignee is not None:
        _ensure_watcher(complaint, assignee)
        _notify_many(
            s,
            [assignee],
            actor,
            "assignment",
            f"Complaint assigned: {complaint.ticket_number}",
            f'Complaint "{complaint.title}" has been assigned to you.',
            complaint,
        )
    return True


def update_admin_notes(s: "Session", complaint: Complaint, notes: str | None, actor: User) -> Complaint:
    new = optional_text(notes)
    if new == complaint.admin_notes:
        return complaint
    complaint.admin_notes = new
    complaint.updated_at = utcnow()
    record_event(
        s,
        actor=actor,
        action="complaint.notes",
        entity_type="Complaint",
        entity_id=str(complaint.id),
    )
    return complaint


# ---------- Comments ----------
def add_comment(
    s: "Session",
    complaint: Complaint,
    author: User,
    content: str,
    *,
    is_internal: bool = False,
    is_solution: bool = False,
    now: datetime | None = None,
) -> Comment:
    content = clean_text(content)
    if not content:
        raise ComplaintError("Comment cannot be empty.")

    staff = user_has_permission(author, "complaints.triage")
    if not staff:
        if complaint.student_id != author.id:
            raise ComplaintError("You can only comment on your own complaints.")
        if is_internal:
            raise ComplaintError("Students cannot post internal notes.")
        is_solution = False

    now = now or utcnow()
    comment = Comment(
        user_id=author.id,
        author=author,
        content=content,
        is_internal=is_internal,
        is_solution=is_solution,
        created_at=now,
    )
    complaint.comments.append(comment)
    complaint.updated_at = now

    if staff and not is_internal and complaint.first_response_at is None:
        complaint.first_response_at = now
        record_first_response(complaint, now)
    s.flush()

    record_event(
        s,
        actor=author,
        action="comment.create",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"comment_id": comment.id, "is_internal": is_internal, "is_solution": is_solution},
    )

    if author.id == complaint.student_id:
        recipients = [complaint.assignee]
        title = f"New reply from student: {complaint.ticket_number}"
    else:
        recipients = [complaint.assignee]
        if not is_internal:
            recipients.insert(0, complaint.student)
        title = f"New comment on {complaint.ticket_number}"
    _notify_many(
        s,
        recipients,
        author,
        "new_comment",
        title,
        f'A new comment was added to "{complaint.title}".',
        complaint,
    )
    return comment


# ---------- Attachments ----------
def build_attachment_key(complaint_id: int, filename: str, sha256: str, upload_date: date | None = None) -> str:
    """Deterministic storage key for a complaint attachment."""
    if upload_date is None:
        upload_date = utcnow().date()
    safe_filename = secure_filename(filename) or "attachment.bin"
    return f"complaints/{complaint_id}/{upload_date.isoformat()}/{sha256[:8]}_{safe_filename}"


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def upload_attachment(
    s: "Session",
    complaint: Complaint,
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    user: User,
    storage: "Storage",
    max_bytes: int,
) -> Attachment:
    if not can_view(user, complaint):
        raise ComplaintError("You cannot attach files to this complaint.")
    if not file_bytes:
        raise ComplaintError("File is empty.")
    if len(file_bytes) > max_bytes:
        raise ComplaintError(f"File is too large (max {max_bytes // (1024 * 1024)} MB).")
    safe_name = secure_filename(filename or "")
    if _extension(safe_name) not in ALLOWED_ATTACHMENT_EXTENSIONS:
        raise ComplaintError(
            f"File type not allowed. Allowed: {', '.join(sorted(ALLOWED_ATTACHMENT_EXTENSIONS))}"
        )

    digest = sha256_bytes(file_bytes)
    key = build_attachment_key(complaint.id, safe_name, digest)
    storage.put_bytes(key, file_bytes, content_type=content_type)

    att = Attachment(
        uploaded_by_id=user.id,
        file_name=safe_name,
        storage_key=key,
        content_type=content_type,
        size_bytes=len(file_bytes),
        sha256=digest,
    )
    complaint.attachments.append(att)
    s.flush()
    record_event(
        s,
        actor=user,
        action="attachment.upload",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"attachment_id": att.id, "filename": att.file_name, "size_bytes": att.size_bytes},
    )
    return att


# ---------- Tags ----------
def set_tags(s: "Session", complaint: Complaint, tag_ids: list[int], actor: User) -> Complaint:
    tags = s.query(Tag).filter(Tag.id.in_(tag_ids)).all() if tag_ids else []
    old = sorted(t.name for t in complaint.tags)
    complaint.tags = tags
    new = sorted(t.name for t in tags)
    if old != new:
        record_event(
            s,
            actor=actor,
            action="complaint.tags",
            entity_type="Complaint",
            entity_id=str(complaint.id),
            metadata={"old": old, "new": new},
        )
    return complaint


# ---------- Escalation ----------
def escalate(
    s: "Session",
    complaint: Complaint,
    reason: str,
    actor: User,
    escalated_to: User | None = None,
    now: datetime | None = None,
) -> Escalation:
    reason = clean_text(reason)
    if not reason:
        raise ComplaintError("A reason is required to escalate.")
    if complaint.status in FINAL_STATUSES:
        raise ComplaintError("Closed complaints cannot be escalated.")

    now = now or utcnow()
    esc = Escalation(
        reason=reason,
        escalated_by_id=actor.id,
        escalated_to_id=escalated_to.id if escalated_to else None,
        status="pending",
        created_at=now,
    )
    complaint.escalations.append(esc)

    idx = PRIORITIES.index(complaint.priority) if complaint.priority in PRIORITIES else 1
    bumped = PRIORITIES[min(idx + 1, len(PRIORITIES) - 1)]
    if bumped != complaint.priority:
        change_priority(s, complaint, bumped, actor, now)
    if escalated_to is not None:
        assign(s, complaint, escalated_to, actor)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="complaint.escalate",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        reason=reason,
        metadata={"escalation_id": esc.id, "priority": complaint.priority},
    )
    return esc


# ---------- Merge ----------
def merge(
    s: "Session",
    source: Complaint,
    target: Complaint,
    actor: User,
    reason: str | None = None,
    now: datetime | None = None,
) -> MergedComplaint:
    if source.id == target.id:
        raise MergeError("A complaint cannot be merged into itself.")
    if source.is_merged or target.is_merged:
        raise MergeError("Complaints that were already merged cannot be merged again.")

    now = now or utcnow()
    prefix = f"[Merged from {source.ticket_number}]"
    for cm in list(source.comments):
        target.comments.append(
            Comment(
                user_id=cm.user_id,
                content=f"{prefix} {cm.content}",
                is_internal=True,
                is_solution=False,
                created_at=cm.created_at,
            )
        )
    for w in list(source.watchers):
        _ensure_watcher(target, w.user)
    _ensure_watcher(target, source.student)

    old_status = source.status
    source.status = "closed"
    source.closed_at = source.closed_at or now
    source.is_merged = True
    source.merged_into_id = target.id
    source.updated_at = now
    target.updated_at = now

    record = MergedComplaint(
        source_complaint_id=source.id,
        target_complaint_id=target.id,
        merged_by_id=actor.id,
        reason=optional_text(reason),
        merged_at=now,
    )
    s.add(record)
    s.flush()

    meta = {"source": source.ticket_number, "target": target.ticket_number, "old_status": old_status}
    record_event(s, actor=actor, action="complaint.merge", entity_type="Complaint", entity_id=str(source.id), reason=reason, metadata=meta)
    record_event(s, actor=actor, action="complaint.merge_target", entity_type="Complaint", entity_id=str(target.id), reason=reason, metadata=meta)

    _notify_many(
        s,
        [source.student],
        actor,
        "status_change",
        f"Complaint merged: {source.ticket_number}",
        f'Your complaint "{source.title}" was merged into {target.ticket_number}. Follow that ticket for updates.',
        source,
    )
    return record


# ---------- Delete / bulk ----------
def delete_complaint(s: "Session", complaint: Complaint, actor: User, storage: "Storage | None" = None) -> None:
    keys = [a.storage_key for a in complaint.attachments]
    record_event(
        s,
        actor=actor,
        action="complaint.delete",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"ticket_number": complaint.ticket_number, "title": complaint.title},
    )
    s.delete(complaint)
    s.flush()
    if storage is not None:
        for key in keys:
            try:
                storage.delete(key)
            except Exception:
                logger.exception("Failed to delete attachment blob %s", key)


BULK_ACTIONS = ("status", "priority", "assign", "delete")


def bulk_update(
    s: "Session",
    complaint_ids: list[int],
    action: str,
    value: str | None,
    actor: User,
    storage: "Storage | None" = None,
) -> tuple[int, int]:
    """
    Apply one action to many complaints. Items that fail validation are
    skipped and counted. Returns (updated, skipped).
    """
    if action not in BULK_ACTIONS:
        raise ComplaintError(f"Unknown bulk action: {action}")

    assignee: User | None = None
    if action == "assign":
        assignee_id = parse_int(value)
        if assignee_id is not None:
            assignee = s.get(User, assignee_id)
            if assignee is None:
                raise ComplaintError("Unknown assignee.")

    updated = skipped = 0
    for cid in complaint_ids:
        complaint = s.get(Complaint, cid)
        if complaint is None:
            skipped += 1
            continue
        try:
            with s.begin_nested():
                if action == "status":
                    change_status(s, complaint, value or "", actor, reason="Bulk update")
                    changed = True
                elif action == "priority":
                    before = complaint.priority
                    change_priority(s, complaint, value or "", actor)
                    changed = complaint.priority != before
                elif action == "assign":
                    changed = assign(s, complaint, assignee, actor)
                else:
                    delete_complaint(s, complaint, actor, storage)
                    changed = True
        except ComplaintError as e:
            logger.info("Bulk %s skipped complaint_id=%s: %s", action, cid, e)
            skipped += 1
            continue
        if changed:
            updated += 1
        else:
            skipped += 1

    record_event(
        s,
        actor=actor,
        action="complaint.bulk_update",
        entity_type="Complaint",
        entity_id=None,
        metadata={"action": action, "value": value, "ids": complaint_ids, "updated": updated, "skipped": skipped},
    )
    return updated, skipped


# ---------- Survey ----------
def _rating(value: object, field: str, *, required: bool = False) -> int | None:
    n = parse_int(value)
    if n is None:
        if required:
            raise SurveyError(f"{field} is required.")
        return None
    if n < 1 or n > 5:
        raise SurveyError(f"{field} must be between 1 and 5.")
    return n


def submit_survey(s: "Session", complaint: Complaint, student: User, payload: dict) -> SatisfactionSurvey:
    if complaint.student_id != student.id:
        raise SurveyError("Only the person who raised this complaint can rate it.")
    if complaint.status != "resolved":
        raise SurveyError("Surveys can only be submitted for resolved complaints.")
    if complaint.survey is not None:
        raise SurveyError("A survey was already submitted for this complaint.")

    overall = _rating(payload.get("overall_rating"), "Overall rating", required=True)
    recommend_raw = clean_text(payload.get("would_recommend")).lower()
    survey = SatisfactionSurvey(
        student_id=student.id,
        overall_rating=overall,
        response_time_rating=_rating(payload.get("response_time_rating"), "Response time rating"),
        resolution_quality_rating=_rating(payload.get("resolution_quality_rating"), "Resolution quality rating"),
        communication_rating=_rating(payload.get("communication_rating"), "Communication rating"),
        feedback_text=optional_text(payload.get("feedback_text")),
        would_recommend=None if not recommend_raw else parse_bool(recommend_raw),
        suggestions=optional_text(payload.get("suggestions")),
    )
    complaint.survey = survey
    complaint.satisfaction_rating = overall
    complaint.feedback = survey.feedback_text
    s.flush()

    record_event(
        s,
        actor=student,
        action="complaint.survey",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"overall_rating": overall},
    )
    change_status(s, complaint, "closed", student, reason="Closed after satisfaction survey")
    return survey


# ---------- Duplicate lookup ----------
def find_similar(
    s: "Session",
    title: str,
    student: User | None = None,
    *,
    exclude_id: int | None = None,
    limit: int = 3,
) -> list[Complaint]:
    title = clean_text(title)
    if len(title) < 5:
        return []
    words = [w for w in title.split(" ") if len(w) > 3][:3]
    if not words:
        return []
    q = (
        s.query(Complaint)
        .filter(or_(*[Complaint.title.ilike(f"%{w}%") for w in words]))
        .filter(Complaint.status.notin_(("closed", "rejected")))
        .filter(Complaint.is_merged.is_(False))
    )
    if student is not None:
        q = q.filter(Complaint.student_id == student.id)
    if exclude_id is not None:
        q = q.filter(Complaint.id != exclude_id)
    return q.order_by(Complaint.created_at.desc(), Complaint.id.desc()).limit(limit).all()
