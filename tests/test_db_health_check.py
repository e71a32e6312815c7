from __future__ import annotations

import unittest
from datetime import datetime, timezone

from sqlalchemy import text

from otms.models import NotificationJob, OTStatus
from scripts.db_health_check import EXPECTED_HEAD, run_checks
from tests.ot_fixtures import EMPLOYEE_ID, RESPECTIVE_ID, OTDatabaseTestCase


class DbHealthCheckTests(OTDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        with self.engine.begin() as connection:
            connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
            connection.execute(text("INSERT INTO alembic_version (version_num) VALUES (:rev)"), {"rev": EXPECTED_HEAD})

    def checks(self) -> dict[str, dict]:
        self.db.close()
        with self.engine.connect() as connection:
            return {check["name"]: check for check in run_checks(connection)}

    def test_clean_database_passes(self) -> None:
        self.add_request(status=OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION, respective_supervisor_id=RESPECTIVE_ID)
        checks = self.checks()
        self.assertTrue(all(check["status"] == "ok" for check in checks.values()), checks)

    def test_route_and_rejection_violations_fail(self) -> None:
        route_a = self.add_request(status=OTStatus.PENDING_SUPERVISOR_REVIEW)
        unstaged = self.add_request(status=OTStatus.REJECTED)
        legacy = self.add_request(status=OTStatus.SUPERVISOR_VERIFIED, respective_supervisor_id=RESPECTIVE_ID)
        self.db.add(
            NotificationJob(
                recipient_id=EMPLOYEE_ID,
                request_id=legacy.id,
                kind="approved",
                payload={},
                scheduled_at_utc=datetime(2026, 1, 6, tzinfo=timezone.utc),
                status="FAILED",
                attempts=5,
                idempotency_key=f"approved:{legacy.id}:{EMPLOYEE_ID}:2",
            )
        )
        self.db.commit()

        checks = self.checks()

        self.assertEqual(checks["route_a_request_in_route_b_status"]["status"], "fail")
        self.assertEqual(checks["route_a_request_in_route_b_status"]["details"]["sample_ids"], [route_a.id])
        self.assertEqual(checks["rejected_without_stage"]["details"]["sample_ids"], [unstaged.id])
        self.assertEqual(checks["legacy_verified_requests"], {
            "name": "legacy_verified_requests",
            "status": "warn",
            "details": {"count": 1},
        })
        self.assertEqual(checks["dead_lettered_notifications"]["status"], "warn")
        self.assertEqual(checks["migration_up_to_date"]["status"], "ok")


if __name__ == "__main__":
    unittest.main()
