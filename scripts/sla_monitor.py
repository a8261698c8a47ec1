"""
Cron entry for the SLA monitor.

Refreshes every open complaint's SLA status and notifies the student and the
assignee once per at-risk/breached transition. Safe to run as often as every
few minutes; run history is visible on /admin/sla.

Usage:
  python scripts/sla_monitor.py
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("sla_monitor")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from app.desk import create_app
    from app.desk.db import session_scope
    from app.desk.modules.sla.service import run_monitor

    app = create_app()
    # notify() renders links and picks the mailer from app config
    with app.app_context(), session_scope(app) as s:
        run = run_monitor(s)
        logger.info(
            "SLA monitor: processed=%s notified=%s failures=%s duration_ms=%s",
            run.processed,
            run.notified,
            run.failures,
            run.duration_ms,
        )
        failures = run.failures
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
