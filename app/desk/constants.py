"""
Central constants for the complaint desk.
"""
from __future__ import annotations

# Complaint lifecycle
STATUSES = ("open", "in_progress", "under_review", "resolved", "closed", "rejected")
FINAL_STATUSES = frozenset({"resolved", "closed", "rejected"})
DONE_STATUSES = frozenset({"resolved", "closed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "open": frozenset({"in_progress", "under_review", "resolved", "closed", "rejected"}),
    "in_progress": frozenset({"open", "under_review", "resolved", "closed", "rejected"}),
    "under_review": frozenset({"in_progress", "resolved", "closed", "rejected"}),
    "resolved": frozenset({"closed", "in_progress"}),
    "closed": frozenset({"open"}),
    "rejected": frozenset({"open"}),
}

PRIORITIES = ("low", "medium", "high", "urgent")

# SLA
SLA_STATUSES = ("on_track", "at_risk", "breached", "met")
SLA_ALERT_STATUSES = frozenset({"at_risk", "breached"})

# priority -> (response_hours, resolution_hours)
DEFAULT_SLA_HOURS: dict[str, tuple[int, int]] = {
    "urgent": (1, 4),
    "high": (4, 24),
    "medium": (12, 48),
    "low": (24, 72),
}

# Notifications
NOTIFICATION_TYPES = ("status_change", "new_comment", "assignment", "sla_warning")

# Attachments
ALLOWED_ATTACHMENT_EXTENSIONS = frozenset(
    {"pdf", "png", "jpg", "jpeg", "gif", "webp", "txt", "doc", "docx"}
)

TICKET_PREFIX = "TKT"

ANNOUNCEMENT_TYPES = ("info", "warning", "success", "urgent")


def status_label(status: str | None) -> str:
    return (status or "").replace("_", " ")
