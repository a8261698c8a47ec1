from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from flask import current_app, has_app_context
from sqlalchemy import or_

from app.desk.audit import record_event
from app.desk.constants import DEFAULT_SLA_HOURS, DONE_STATUSES, FINAL_STATUSES, PRIORITIES, SLA_ALERT_STATUSES
from app.desk.modules.complaints.models import Complaint
from app.desk.modules.notifications.service import notify
from app.desk.modules.sla.models import SlaMonitorRun, SlaPolicy, SlaTracking
from app.desk.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.desk.models import User

logger = logging.getLogger(__name__)

DEFAULT_AT_RISK_FRACTION = 0.25


@dataclass(frozen=True)
class SlaWindow:
    name: str
    response_hours: int
    resolution_hours: int
    policy_id: int | None = None


@dataclass(frozen=True)
class SlaIndicator:
    status: str
    label: str
    message: str
    progress: int  # percent of the window still remaining


def at_risk_fraction() -> float:
    if has_app_context():
        return float(current_app.config.get("SLA_AT_RISK_FRACTION") or DEFAULT_AT_RISK_FRACTION)
    return DEFAULT_AT_RISK_FRACTION


def policy_for(s: "Session", priority: str) -> SlaWindow:
    """Active policy row for the priority, else the built-in defaults."""
    policy = (
        s.query(SlaPolicy)
        .filter(SlaPolicy.priority == priority, SlaPolicy.is_active.is_(True))
        .one_or_none()
    )
    if policy is not None:
        return SlaWindow(policy.name, policy.response_hours, policy.resolution_hours, policy.id)
    response_hours, resolution_hours = DEFAULT_SLA_HOURS.get(priority, DEFAULT_SLA_HOURS["medium"])
    return SlaWindow(f"{priority.title()} (default)", response_hours, resolution_hours)


def calculate_breach_time(s: "Session", created_at: datetime, priority: str) -> datetime:
    return created_at + timedelta(hours=policy_for(s, priority).resolution_hours)


def classify(
    breach_at: datetime | None,
    created_at: datetime,
    status: str,
    resolved_at: datetime | None,
    now: datetime,
    fraction: float = DEFAULT_AT_RISK_FRACTION,
) -> str | None:
    if breach_at is None:
        return None
    if status in FINAL_STATUSES:
        finished = resolved_at or now
        return "met" if finished <= breach_at else "breached"
    if now >= breach_at:
        return "breached"
    window = (breach_at - created_at).total_seconds()
    remaining = (breach_at - now).total_seconds()
    if window <= 0:
        return "breached"
    if remaining <= fraction * window:
        return "at_risk"
    return "on_track"


def _finished_at(c: Complaint) -> datetime | None:
    return c.resolved_at or c.closed_at


def start_tracking(s: "Session", complaint: Complaint, now: datetime | None = None) -> SlaTracking:
    """
    (Re)compute deadlines for a complaint from its creation time.
    Used on create and when the priority changes.
    """
    now = now or utcnow()
    window = policy_for(s, complaint.priority)
    response_deadline = complaint.created_at + timedelta(hours=window.response_hours)
    resolution_deadline = complaint.created_at + timedelta(hours=window.resolution_hours)

    tracking = complaint.sla_tracking
    if tracking is None:
        tracking = SlaTracking(
            complaint=complaint,
            response_deadline=response_deadline,
            resolution_deadline=resolution_deadline,
        )
        s.add(tracking)
    tracking.sla_policy_id = window.policy_id
    tracking.response_deadline = response_deadline
    tracking.resolution_deadline = resolution_deadline
    tracking.updated_at = now

    complaint.sla_breach_at = resolution_deadline
    complaint.sla_status = classify(
        resolution_deadline, complaint.created_at, complaint.status, _finished_at(complaint), now, at_risk_fraction()
    )
    _refresh_flags(tracking, complaint, now)
    return tracking


def _refresh_flags(tracking: SlaTracking, complaint: Complaint, now: datetime) -> None:
    responded = tracking.first_response_at
    if responded is not None:
        tracking.is_response_breached = responded > tracking.response_deadline
    else:
        tracking.is_response_breached = now > tracking.response_deadline
    tracking.is_resolution_breached = complaint.sla_status == "breached"


def record_first_response(complaint: Complaint, at: datetime) -> None:
    tracking = complaint.sla_tracking
    if tracking is None or tracking.first_response_at is not None:
        return
    tracking.first_response_at = at
    tracking.is_response_breached = at > tracking.response_deadline
    tracking.updated_at = at


def close_tracking(complaint: Complaint, at: datetime) -> None:
    """Freeze the SLA outcome when a complaint reaches resolved/closed."""
    if complaint.sla_breach_at is None:
        return
    complaint.sla_status = "met" if at <= complaint.sla_breach_at else "breached"
    tracking = complaint.sla_tracking
    if tracking is not None:
        tracking.resolved_at = at
        tracking.is_resolution_breached = complaint.sla_status == "breached"
        tracking.updated_at = at


def reopen_tracking(complaint: Complaint, now: datetime) -> None:
    if complaint.sla_breach_at is None:
        return
    complaint.sla_status = classify(
        complaint.sla_breach_at, complaint.created_at, complaint.status, None, now, at_risk_fraction()
    )
    complaint.sla_notified_status = None
    tracking = complaint.sla_tracking
    if tracking is not None:
        tracking.resolved_at = None
        _refresh_flags(tracking, complaint, now)
        tracking.updated_at = now


def update_sla_status(s: "Session", now: datetime | None = None, fraction: float | None = None) -> int:
    """
    Recompute sla_status for live complaints (and final ones never classified).
    Returns how many complaints changed status.
    """
    now = now or utcnow()
    fraction = at_risk_fraction() if fraction is None else fraction
    q = (
        s.query(Complaint)
        .filter(Complaint.is_merged.is_(False))
        .filter(Complaint.sla_breach_at.isnot(None))
        .filter(or_(Complaint.status.notin_(tuple(FINAL_STATUSES)), Complaint.sla_status.is_(None)))
    )
    changed = 0
    for c in q.all():
        new_status = classify(c.sla_breach_at, c.created_at, c.status, _finished_at(c), now, fraction)
        if new_status != c.sla_status:
            c.sla_status = new_status
            changed += 1
        if c.sla_tracking is not None:
            _refresh_flags(c.sla_tracking, c, now)
    s.flush()
    return changed


def _sla_messages(c: Complaint) -> tuple[tuple[str, str], tuple[str, str]]:
    breached = c.sla_status == "breached"
    student = (
        f"SLA {'Breached' if breached else 'Alert'}: {c.ticket_number}",
        f'Your complaint "{c.title}" '
        + ("has breached its SLA deadline" if breached else "is at risk of breaching its SLA deadline")
        + ". We are working to resolve it as soon as possible.",
    )
    staff = (
        f"SLA {'Breach' if breached else 'Warning'}: {c.ticket_number}",
        f'Complaint "{c.title}" '
        + ("has breached its SLA deadline" if breached else "is approaching its SLA deadline")
        + ". Please take action immediately.",
    )
    return student, staff


def run_monitor(s: "Session", now: datetime | None = None, *, actor: "User | None" = None) -> SlaMonitorRun:
    """
    Update SLA statuses, then warn the student and assignee of every live
    complaint that moved into at_risk/breached since the last warning.
    """
    started = time.monotonic()
    now = now or utcnow()
    update_sla_status(s, now)

    candidates = (
        s.query(Complaint)
        .filter(Complaint.is_merged.is_(False))
        .filter(Complaint.status.notin_(tuple(FINAL_STATUSES)))
        .filter(Complaint.sla_status.in_(tuple(SLA_ALERT_STATUSES)))
        .order_by(Complaint.sla_breach_at.asc())
        .all()
    )

    processed = notified = failures = 0
    for c in candidates:
        if c.sla_notified_status == c.sla_status:
            continue
        processed += 1
        (student_title, student_msg), (staff_title, staff_msg) = _sla_messages(c)
        try:
            with s.begin_nested():
                notify(s, c.student, "sla_warning", student_title, student_msg, c)
                if c.assignee is not None:
                    notify(s, c.assignee, "sla_warning", staff_title, staff_msg, c)
                c.sla_notified_status = c.sla_status
            notified += 1
        except Exception:
            failures += 1
            logger.exception("SLA warning failed for complaint_id=%s", c.id)

    run = SlaMonitorRun(
        ran_at=now,
        processed=processed,
        notified=notified,
        failures=failures,
        duration_ms=int((time.monotonic() - started) * 1000),
        message=f"{len(candidates)} complaint(s) at risk or breached",
        triggered_by_id=actor.id if actor else None,
    )
    s.add(run)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="sla.monitor_run",
        entity_type="SlaMonitorRun",
        entity_id=str(run.id),
        metadata={"processed": processed, "notified": notified, "failures": failures},
    )
    logger.info("SLA monitor: processed=%s notified=%s failures=%s", processed, notified, failures)
    return run


def _humanize(delta: timedelta) -> str:
    seconds = int(abs(delta.total_seconds()))
    if seconds < 3600:
        return f"{max(1, seconds // 60)} min"
    if seconds < 86400:
        return f"{seconds // 3600} h"
    return f"{seconds // 86400} d"


def indicator(complaint: Complaint, now: datetime | None = None) -> SlaIndicator | None:
    if complaint.sla_breach_at is None or complaint.status in DONE_STATUSES:
        return None
    now = now or utcnow()
    status = complaint.sla_status or classify(
        complaint.sla_breach_at, complaint.created_at, complaint.status, None, now, at_risk_fraction()
    ) or "on_track"
    window = (complaint.sla_breach_at - complaint.created_at).total_seconds()
    remaining = (complaint.sla_breach_at - now).total_seconds()
    progress = 0 if window <= 0 else int(round(max(0.0, min(100.0, remaining / window * 100))))
    left = _humanize(complaint.sla_breach_at - now)
    if status == "breached":
        return SlaIndicator(status, "SLA Breached", f"Breached {left} ago", 0)
    if status == "met":
        return SlaIndicator(status, "SLA Met", "Resolved within SLA", 100)
    if status == "at_risk":
        return SlaIndicator(status, "SLA At Risk", f"Due in {left}", progress)
    return SlaIndicator(status, "On Track", f"Due in {left}", progress)


def validate_policy_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    try:
        response_hours = int(payload.get("response_hours"))
        resolution_hours = int(payload.get("resolution_hours"))
    except (TypeError, ValueError):
        return ["Response and resolution hours must be whole numbers."]
    if response_hours <= 0 or resolution_hours <= 0:
        errors.append("Hours must be positive.")
    if resolution_hours < response_hours:
        errors.append("Resolution hours must be at least the response hours.")
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    return errors


def ensure_default_policies(s: "Session") -> list[SlaPolicy]:
    existing = {p.priority: p for p in s.query(SlaPolicy).all()}
    out: list[SlaPolicy] = []
    for priority in PRIORITIES:
        policy = existing.get(priority)
        if policy is None:
            response_hours, resolution_hours = DEFAULT_SLA_HOURS[priority]
            policy = SlaPolicy(
                priority=priority,
                name=f"{priority.title()} priority",
                response_hours=response_hours,
                resolution_hours=resolution_hours,
                is_active=True,
            )
            s.add(policy)
        out.append(policy)
    s.flush()
    return out


def update_policy(s: "Session", policy: SlaPolicy, payload: dict, user: "User") -> SlaPolicy:
    changes: dict[str, dict[str, object]] = {}
    new_values = {
        "name": (payload.get("name") or "").strip(),
        "response_hours": int(payload["response_hours"]),
        "resolution_hours": int(payload["resolution_hours"]),
        "is_active": bool(payload.get("is_active")),
    }
    for field, new in new_values.items():
        old = getattr(policy, field)
        if old != new:
            changes[field] = {"old": old, "new": new}
            setattr(policy, field, new)
    policy.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="sla.policy_edit",
        entity_type="SlaPolicy",
        entity_id=str(policy.id),
        metadata={"priority": policy.priority, "changes": changes},
    )
    return policy
