"""
Run due_date_approaching workflow rules against open requests.

Meant for a cron / scheduled job. Each rule fires at most once per request per 24h,
so running this more often than hourly is harmless.

Usage:
  python scripts/check_due_dates.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.portal.config import load_config
from app.portal.modules.workflows.engine import WorkflowEngine
from app.portal.db import script_session

logger = logging.getLogger("check_due_dates")


def run(database_url: str | None = None) -> int:
    load_dotenv()
    config = load_config()
    db_url = (database_url or os.environ.get("DATABASE_URL") or config["DATABASE_URL"]).strip()
    with script_session(db_url) as s:
        executed = WorkflowEngine(s, config).check_due_date_workflows()
    logger.info("due date workflows executed=%s", executed)
    return executed


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    executed = run()
    print(f"Due date workflows executed: {executed}", flush=True)


if __name__ == "__main__":
    main()
