#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from otms.models import ROUTE_B_ONLY_STATUSES
from otms.settings import get_settings

EXPECTED_HEAD = "0002_ot_request_versioning"
SAMPLE_LIMIT = 20


def _sample_ids(conn: Connection, sql: str, params: dict[str, Any] | None = None) -> list[int]:
    return [row[0] for row in conn.execute(text(sql), params or {}).fetchall()]


def run_checks(conn: Connection) -> list[dict[str, Any]]:
    checks: list[dict[str, Any]] = []

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        checks.append({"name": name, "status": status, "details": details})

    current_versions = [row[0] for row in conn.execute(text("select version_num from alembic_version")).fetchall()]
    add(
        "migration_up_to_date",
        "ok" if EXPECTED_HEAD in current_versions else "warn",
        {"expected_head": EXPECTED_HEAD, "current": current_versions},
    )

    route_b_statuses = sorted(status.value for status in ROUTE_B_ONLY_STATUSES)
    placeholders = ", ".join(f":status_{index}" for index in range(len(route_b_statuses)))
    route_violations = _sample_ids(
        conn,
        f"""
        select id
        from ot_requests
        where respective_supervisor_id is null
          and status in ({placeholders})
        order by id
        limit {SAMPLE_LIMIT}
        """,
        {f"status_{index}": value for index, value in enumerate(route_b_statuses)},
    )
    add(
        "route_a_request_in_route_b_status",
        "fail" if route_violations else "ok",
        {"sample_ids": route_violations},
    )

    missing_rejection_stage = _sample_ids(
        conn,
        f"""
        select id
        from ot_requests
        where status = 'rejected' and rejection_stage is null
        order by id
        limit {SAMPLE_LIMIT}
        """,
    )
    add(
        "rejected_without_stage",
        "fail" if missing_rejection_stage else "ok",
        {"sample_ids": missing_rejection_stage},
    )

    legacy_count = conn.execute(
        text(
            """
            select count(*)
            from ot_requests
            where status = 'supervisor_verified' and supervisor_confirmation_at is null
            """
        )
    ).scalar_one()
    add("legacy_verified_requests", "warn" if legacy_count else "ok", {"count": int(legacy_count)})

    dead_lettered = _sample_ids(
        conn,
        f"""
        select id
        from notification_jobs
        where status = 'FAILED'
        order by id desc
        limit {SAMPLE_LIMIT}
        """,
    )
    add("dead_lettered_notifications", "warn" if dead_lettered else "ok", {"sample_ids": dead_lettered})

    return checks


def run() -> dict[str, Any]:
    engine = create_engine(get_settings().database_url)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }
    with engine.connect() as conn:
        report["checks"] = run_checks(conn)
    report["ok"] = all(check["status"] != "fail" for check in report["checks"])
    return report


if __name__ == "__main__":
    result = run()
    print(json.dumps(result, ensure_ascii=False, indent=2))
    sys.exit(0 if result["ok"] else 1)
