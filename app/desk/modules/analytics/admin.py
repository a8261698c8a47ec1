from __future__ import annotations

import io

from flask import Blueprint, abort, g, jsonify, render_template, request, send_file

from app.desk.audit import record_event
from app.desk.db import db_session
from app.desk.modules.analytics.export import export_rows, to_csv, to_xlsx
from app.desk.modules.analytics.service import breakdowns, daily_trend, summary_stats
from app.desk.modules.search.service import filters_from_args
from app.desk.rbac import require_permission
from app.desk.utils import parse_int, utcnow

bp = Blueprint("analytics", __name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@bp.get("/analytics")
@require_permission("admin.view")
def analytics_index():
    s = db_session()
    days = min(max(parse_int(request.args.get("days")) or 14, 1), 90)
    return render_template(
        "admin/analytics.html",
        stats=summary_stats(s),
        breakdown=breakdowns(s),
        trend=daily_trend(s, days),
        days=days,
    )


@bp.get("/analytics/stats.json")
@require_permission("admin.view")
def analytics_stats():
    s = db_session()
    days = min(max(parse_int(request.args.get("days")) or 14, 1), 90)
    return jsonify(
        {
            "summary": summary_stats(s),
            "breakdown": breakdowns(s),
            "trend": daily_trend(s, days),
        }
    )


@bp.get("/complaints/export.<fmt>")
@require_permission("complaints.export")
def complaints_export(fmt: str):
    if fmt not in ("csv", "xlsx"):
        abort(404)
    s = db_session()
    filters = filters_from_args(request.args)
    rows = export_rows(s, filters)

    record_event(
        s,
        actor=g.current_user,
        action="complaint.export",
        entity_type="Complaint",
        metadata={"format": fmt, "rows": len(rows), "filters": filters.to_dict()},
    )
    s.commit()

    stamp = utcnow().strftime("%Y%m%d")
    if fmt == "csv":
        return send_file(
            io.BytesIO(to_csv(rows)),
            mimetype="text/csv",
            as_attachment=True,
            download_name=f"complaints_{stamp}.csv",
            max_age=0,
        )
    return send_file(
        io.BytesIO(to_xlsx(rows)),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=f"complaints_{stamp}.xlsx",
        max_age=0,
    )
