from __future__ import annotations

import csv
import io
from typing import TYPE_CHECKING

from app.desk.constants import status_label
from app.desk.modules.complaints.models import Complaint
from app.desk.modules.search.service import SearchFilters, apply_filters

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

EXPORT_COLUMNS = (
    "Ticket #",
    "Title",
    "Description",
    "Status",
    "Priority",
    "Category",
    "Submitted By",
    "Assigned To",
    "Created",
    "Resolved",
    "SLA Status",
)


def _truncate(text: str | None, n: int = 200) -> str:
    text = text or ""
    return text[:n] + ("..." if len(text) > n else "")


def _fmt(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else ""


FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _cell(value: str | None) -> str:
    """Quote text a spreadsheet would otherwise evaluate as a formula."""
    value = value or ""
    if value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def export_rows(s: "Session", filters: SearchFilters | None = None) -> list[dict[str, str]]:
    q = s.query(Complaint)
    if filters is not None:
        q = apply_filters(q, filters)
    rows = []
    for c in q.order_by(Complaint.created_at.desc(), Complaint.id.desc()).all():
        rows.append(
            {
                "Ticket #": c.ticket_number,
                "Title": c.title,
                "Description": _truncate(c.description),
                "Status": status_label(c.status),
                "Priority": c.priority,
                "Category": c.category.name if c.category else "",
                "Submitted By": c.submitter_label or "Unknown",
                "Assigned To": c.assignee.display_name if c.assignee else "",
                "Created": _fmt(c.created_at),
                "Resolved": _fmt(c.resolved_at),
                "SLA Status": status_label(c.sla_status),
            }
        )
    return rows


def to_csv(rows: list[dict[str, str]]) -> bytes:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(EXPORT_COLUMNS))
    writer.writeheader()
    for row in rows:
        writer.writerow({col: _cell(row.get(col)) for col in EXPORT_COLUMNS})
    return buf.getvalue().encode("utf-8")


def to_xlsx(rows: list[dict[str, str]]) -> bytes:
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Complaints"
    ws.append(list(EXPORT_COLUMNS))
    for row in rows:
        ws.append([_cell(row.get(col)) for col in EXPORT_COLUMNS])
    ws.freeze_panes = "A2"

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()
