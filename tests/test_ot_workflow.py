from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import event, select, update

from otms.errors import BatchPartialFailureError, ConcurrentModificationError, WorkflowValidationError
from otms.models import AppRole, AuditLog, OTRequest, OTRequestTransition, OTStatus
from otms.services import ot_workflow
from otms.services.ot_workflow import (
    approve,
    confirm,
    confirm_respective_supervisor,
    deny_respective_supervisor,
    reject,
    request_respective_supervisor_confirmation,
    revise_denied_request,
    run_batch_action,
)
from otms.services.transitions import WorkflowAction
from tests.ot_fixtures import (
    EMPLOYEE_ID,
    HR_ID,
    MANAGEMENT_ID,
    OTHER_SUPERVISOR_ID,
    RESPECTIVE_ID,
    SUPERVISOR_ID,
    OTDatabaseTestCase,
    hr_actor,
    management_actor,
    supervisor_actor,
)


class BatchProcessorTests(OTDatabaseTestCase):
    def transitions_for(self, request_id: int) -> list[OTRequestTransition]:
        stmt = (
            select(OTRequestTransition)
            .where(OTRequestTransition.request_id == request_id)
            .order_by(OTRequestTransition.id.asc())
        )
        return list(self.db.scalars(stmt).all())

    def test_one_invalid_request_blocks_whole_batch(self) -> None:
        valid = self.add_request()
        foreign = self.add_request(supervisor_id=OTHER_SUPERVISOR_ID)

        with self.assertRaises(WorkflowValidationError) as ctx:
            approve(self.db, actor=supervisor_actor(), role=AppRole.SUPERVISOR, request_ids=[valid.id, foreign.id])

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.request_ids, [foreign.id])
        untouched = self.reload(valid.id)
        self.assertEqual(untouched.status, OTStatus.PENDING_VERIFICATION)
        self.assertEqual(untouched.version, 1)
        self.assertIsNone(untouched.supervisor_verified_at)
        self.assertEqual(self.transitions_for(valid.id), [])
        self.assertEqual(self.jobs(), [])

    def test_missing_remarks_block_rejection(self) -> None:
        request = self.add_request()
        with self.assertRaises(WorkflowValidationError) as ctx:
            reject(self.db, actor=supervisor_actor(), role=AppRole.SUPERVISOR, request_ids=[request.id], remarks="  ")
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.issues[0].code, "REMARKS_REQUIRED")
        self.assertEqual(self.reload(request.id).status, OTStatus.PENDING_VERIFICATION)

    def test_duplicate_ids_are_applied_once(self) -> None:
        request = self.add_request()
        result = approve(
            self.db,
            actor=supervisor_actor(),
            role=AppRole.SUPERVISOR,
            request_ids=[request.id, request.id],
        )
        self.assertEqual(result.affected_ids, [request.id])
        self.assertEqual(self.reload(request.id).version, 2)
        self.assertEqual(len(self.transitions_for(request.id)), 1)

    def test_supervisor_approve_partitions_by_route(self) -> None:
        route_a = self.add_request()
        route_b = self.add_request(respective_supervisor_id=RESPECTIVE_ID)

        result = approve(
            self.db,
            actor=supervisor_actor(),
            role=AppRole.SUPERVISOR,
            request_ids=[route_a.id, route_b.id],
            remarks="Checked against roster",
        )

        self.assertEqual(
            result.to_dict()["partitions"],
            [
                {"status": "supervisor_confirmed", "request_ids": [route_a.id]},
                {"status": "pending_supervisor_confirmation", "request_ids": [route_b.id]},
            ],
        )
        first = self.reload(route_a.id)
        self.assertEqual(first.status, OTStatus.SUPERVISOR_CONFIRMED)
        self.assertIsNotNone(first.supervisor_confirmation_at)
        self.assertEqual(first.supervisor_confirmation_remarks, "Checked against roster")
        second = self.reload(route_b.id)
        self.assertEqual(second.status, OTStatus.PENDING_SUPERVISOR_CONFIRMATION)
        self.assertIsNotNone(second.supervisor_verified_at)
        self.assertIsNone(second.supervisor_confirmation_at)

    def test_confirm_splits_on_respective_confirmation(self) -> None:
        confirmed_at = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)
        with_confirmation = self.add_request(
            status=OTStatus.PENDING_SUPERVISOR_CONFIRMATION,
            respective_supervisor_id=RESPECTIVE_ID,
            respective_supervisor_confirmed_at=confirmed_at,
        )
        without_confirmation = self.add_request(
            status=OTStatus.PENDING_SUPERVISOR_CONFIRMATION,
            respective_supervisor_id=RESPECTIVE_ID,
        )

        statements: list[str] = []

        def _capture(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-untyped-def]
            if statement.lstrip().upper().startswith("UPDATE OT_REQUESTS"):
                statements.append(statement)

        event.listen(self.engine, "before_cursor_execute", _capture)
        try:
            result = confirm(
                self.db,
                actor=supervisor_actor(),
                request_ids=[with_confirmation.id, without_confirmation.id],
            )
        finally:
            event.remove(self.engine, "before_cursor_execute", _capture)

        self.assertEqual(len(statements), 2)

        statuses = {partition.status: partition.request_ids for partition in result.partitions}
        self.assertEqual(statuses[OTStatus.SUPERVISOR_VERIFIED], [with_confirmation.id])
        self.assertEqual(statuses[OTStatus.SUPERVISOR_CONFIRMED], [without_confirmation.id])
        for request_id in (with_confirmation.id, without_confirmation.id):
            refreshed = self.reload(request_id)
            self.assertEqual(refreshed.version, 2)
            self.assertIsNotNone(refreshed.supervisor_confirmation_at)
        self.assertIn((RESPECTIVE_ID, "confirmed"), self.job_pairs())

    def test_transition_history_is_recorded(self) -> None:
        request = self.add_request()
        approve(self.db, actor=supervisor_actor(), role=AppRole.SUPERVISOR, request_ids=[request.id])

        rows = self.transitions_for(request.id)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].action, "approve")
        self.assertEqual(rows[0].actor_id, SUPERVISOR_ID)
        self.assertEqual(rows[0].actor_role, "supervisor")
        self.assertEqual(rows[0].from_status, "pending_verification")
        self.assertEqual(rows[0].to_status, "supervisor_confirmed")
        self.assertEqual(rows[0].version, 2)

        audit = self.db.scalars(select(AuditLog).where(AuditLog.action == "OT_SUPERVISOR_APPROVE")).one()
        self.assertEqual(audit.entity_id, str(request.id))

    def test_large_batch_writes_one_audit_row_per_request(self) -> None:
        request_ids = [self.add_request(id=10000 + offset).id for offset in range(60)]

        approve(self.db, actor=supervisor_actor(), role=AppRole.SUPERVISOR, request_ids=request_ids)

        audits = self.db.scalars(select(AuditLog).where(AuditLog.action == "OT_SUPERVISOR_APPROVE")).all()
        self.assertEqual(sorted(int(audit.entity_id) for audit in audits), request_ids)
        self.assertTrue(all(len(audit.entity_id) <= 255 for audit in audits))
        self.assertEqual(audits[0].details, {"to_status": "supervisor_confirmed", "batch_size": 60})

    def test_stale_version_raises_conflict(self) -> None:
        fresh = self.add_request()
        stale = self.add_request()
        original_load = ot_workflow._load_requests
        calls: list[list[int]] = []

        def load_then_bump(db, request_ids):  # type: ignore[no-untyped-def]
            loaded = original_load(db, request_ids)
            if not calls:
                calls.append(list(request_ids))
                db.execute(
                    update(OTRequest)
                    .where(OTRequest.id == stale.id)
                    .values(version=OTRequest.version + 1)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            return loaded

        with patch("otms.services.ot_workflow._load_requests", side_effect=load_then_bump):
            with self.assertRaises(ConcurrentModificationError) as ctx:
                approve(
                    self.db,
                    actor=supervisor_actor(),
                    role=AppRole.SUPERVISOR,
                    request_ids=[fresh.id, stale.id],
                )

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.request_ids, [stale.id])
        self.assertEqual(self.reload(fresh.id).status, OTStatus.PENDING_VERIFICATION)
        self.assertEqual(self.reload(fresh.id).version, 1)
        self.assertEqual(self.reload(stale.id).status, OTStatus.PENDING_VERIFICATION)
        self.assertEqual(self.jobs(), [])

    def test_failure_after_first_partition_reports_committed_part(self) -> None:
        route_a = self.add_request()
        route_b = self.add_request(respective_supervisor_id=RESPECTIVE_ID)
        original_apply = ot_workflow._apply_partition
        calls: list[OTStatus] = []

        def apply_once(db, **kwargs):  # type: ignore[no-untyped-def]
            calls.append(kwargs["next_status"])
            if len(calls) > 1:
                raise ConcurrentModificationError([route_b.id])
            original_apply(db, **kwargs)

        with patch("otms.services.ot_workflow._apply_partition", side_effect=apply_once):
            with self.assertRaises(BatchPartialFailureError) as ctx:
                approve(
                    self.db,
                    actor=supervisor_actor(),
                    role=AppRole.SUPERVISOR,
                    request_ids=[route_a.id, route_b.id],
                )

        error = ctx.exception
        self.assertEqual(error.status_code, 500)
        self.assertEqual(error.committed, [{"status": "supervisor_confirmed", "request_ids": [route_a.id]}])
        self.assertEqual(error.failed, {"status": "pending_supervisor_confirmation", "request_ids": [route_b.id]})
        self.assertEqual(self.reload(route_a.id).status, OTStatus.SUPERVISOR_CONFIRMED)
        self.assertEqual(self.reload(route_b.id).status, OTStatus.PENDING_VERIFICATION)
        self.assertIn((EMPLOYEE_ID, "approved"), self.job_pairs())

    def test_supervisor_reject_sets_stage(self) -> None:
        request = self.add_request(
            status=OTStatus.PENDING_SUPERVISOR_CONFIRMATION,
            respective_supervisor_id=RESPECTIVE_ID,
        )
        reject(
            self.db,
            actor=supervisor_actor(),
            role=AppRole.SUPERVISOR,
            request_ids=[request.id],
            remarks="Not authorised in advance",
        )
        refreshed = self.reload(request.id)
        self.assertEqual(refreshed.status, OTStatus.REJECTED)
        self.assertEqual(refreshed.rejection_stage, "supervisor")
        self.assertEqual(refreshed.supervisor_remarks, "Not authorised in advance")
        self.assertEqual(self.job_pairs(), {(EMPLOYEE_ID, "rejected")})


class WorkflowScenarioTests(OTDatabaseTestCase):
    def test_route_a_through_management(self) -> None:
        request = self.add_request()

        approve(self.db, actor=supervisor_actor(), role=AppRole.SUPERVISOR, request_ids=[request.id])
        self.assertEqual(self.reload(request.id).status, OTStatus.SUPERVISOR_CONFIRMED)
        self.assertEqual(
            self.job_pairs(),
            {(HR_ID, "ready-for-certification"), (EMPLOYEE_ID, "approved")},
        )

        approve(self.db, actor=hr_actor(), role=AppRole.HR, request_ids=[request.id], remarks="Certified")
        certified = self.reload(request.id)
        self.assertEqual(certified.status, OTStatus.HR_CERTIFIED)
        self.assertEqual(certified.hr_id, HR_ID)
        self.assertEqual(certified.hr_remarks, "Certified")
        self.assertIn((MANAGEMENT_ID, "ready-for-approval"), self.job_pairs())

        approve(self.db, actor=management_actor(), role=AppRole.MANAGEMENT, request_ids=[request.id])
        final = self.reload(request.id)
        self.assertEqual(final.status, OTStatus.MANAGEMENT_APPROVED)
        self.assertEqual(final.management_id, MANAGEMENT_ID)
        self.assertIsNotNone(final.management_reviewed_at)
        self.assertEqual(final.version, 4)

        approved_keys = sorted(job.idempotency_key for job in self.jobs() if job.kind == "approved")
        self.assertEqual(approved_keys, [f"approved:{request.id}:{EMPLOYEE_ID}:{version}" for version in (2, 3, 4)])

    def test_route_b_with_respective_confirmation(self) -> None:
        request = self.add_request(respective_supervisor_id=RESPECTIVE_ID)
        supervisor = supervisor_actor()
        respective = supervisor_actor(RESPECTIVE_ID)

        approve(self.db, actor=supervisor, role=AppRole.SUPERVISOR, request_ids=[request.id])
        self.assertEqual(self.reload(request.id).status, OTStatus.PENDING_SUPERVISOR_CONFIRMATION)
        self.assertEqual(self.job_pairs(), {(EMPLOYEE_ID, "verification-pending")})

        request_respective_supervisor_confirmation(self.db, actor=supervisor, request_ids=[request.id])
        self.assertEqual(self.reload(request.id).status, OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION)
        self.assertIn((RESPECTIVE_ID, "confirmation-requested"), self.job_pairs())

        confirm_respective_supervisor(self.db, actor=respective, request_ids=[request.id], remarks="Was on site")
        back_to_supervisor = self.reload(request.id)
        self.assertEqual(back_to_supervisor.status, OTStatus.PENDING_SUPERVISOR_CONFIRMATION)
        self.assertEqual(back_to_supervisor.respective_supervisor_remarks, "Was on site")
        self.assertIsNotNone(back_to_supervisor.respective_supervisor_confirmed_at)

        result = confirm(self.db, actor=supervisor, request_ids=[request.id])
        self.assertEqual(result.partitions[0].status, OTStatus.SUPERVISOR_VERIFIED)
        self.assertEqual(self.reload(request.id).status, OTStatus.SUPERVISOR_VERIFIED)

        approve(self.db, actor=hr_actor(), role=AppRole.HR, request_ids=[request.id])
        self.assertEqual(self.reload(request.id).status, OTStatus.HR_CERTIFIED)
        self.assertEqual(self.reload(request.id).version, 6)

    def test_denial_then_revision_then_confirmation(self) -> None:
        request = self.add_request(
            status=OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION,
            respective_supervisor_id=RESPECTIVE_ID,
        )
        supervisor = supervisor_actor()
        respective = supervisor_actor(RESPECTIVE_ID)
        start = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)

        with self.assertRaises(WorkflowValidationError) as ctx:
            deny_respective_supervisor(self.db, actor=respective, request_ids=[request.id], remarks="Too short")
        self.assertEqual(ctx.exception.issues[0].code, "REMARKS_TOO_SHORT")

        run_batch_action(
            self.db,
            actor=respective,
            role=AppRole.SUPERVISOR,
            action=WorkflowAction.DENY_RESPECTIVE,
            request_ids=[request.id],
            remarks="Hours exceed the site log",
            now_utc=start,
        )
        denied = self.reload(request.id)
        self.assertEqual(denied.status, OTStatus.PENDING_SUPERVISOR_REVIEW)
        self.assertEqual(denied.respective_supervisor_denial_remarks, "Hours exceed the site log")
        self.assertEqual(
            self.job_pairs(),
            {(EMPLOYEE_ID, "denied"), (SUPERVISOR_ID, "denied")},
        )

        run_batch_action(
            self.db,
            actor=supervisor,
            role=AppRole.SUPERVISOR,
            action=WorkflowAction.REVISE_DENIED,
            request_ids=[request.id],
            remarks="Adjusted to site log",
            now_utc=start + timedelta(hours=1),
        )
        revised = self.reload(request.id)
        self.assertEqual(revised.status, OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION)
        self.assertEqual(revised.supervisor_revision_remarks, "Adjusted to site log")

        run_batch_action(
            self.db,
            actor=respective,
            role=AppRole.SUPERVISOR,
            action=WorkflowAction.CONFIRM_RESPECTIVE,
            request_ids=[request.id],
            now_utc=start + timedelta(hours=2),
        )
        confirm(self.db, actor=supervisor, request_ids=[request.id])
        self.assertEqual(self.reload(request.id).status, OTStatus.SUPERVISOR_VERIFIED)

    def test_revise_is_limited_to_direct_supervisor(self) -> None:
        request = self.add_request(
            status=OTStatus.PENDING_SUPERVISOR_REVIEW,
            respective_supervisor_id=RESPECTIVE_ID,
        )
        with self.assertRaises(WorkflowValidationError) as ctx:
            revise_denied_request(self.db, actor=supervisor_actor(RESPECTIVE_ID), request_ids=[request.id])
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.issues[0].code, "NOT_DIRECT_SUPERVISOR")

    def test_hr_send_back_follows_route(self) -> None:
        route_a = self.add_request(status=OTStatus.SUPERVISOR_CONFIRMED)
        route_b = self.add_request(
            status=OTStatus.SUPERVISOR_VERIFIED,
            respective_supervisor_id=RESPECTIVE_ID,
            supervisor_confirmation_at=datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc),
        )

        result = reject(
            self.db,
            actor=hr_actor(),
            role=AppRole.HR,
            request_ids=[route_a.id, route_b.id],
            remarks="Missing timesheet",
        )

        self.assertEqual(len(result.partitions), 2)
        sent_back_a = self.reload(route_a.id)
        self.assertEqual(sent_back_a.status, OTStatus.PENDING_VERIFICATION)
        self.assertEqual(sent_back_a.rejection_stage, "hr")
        self.assertEqual(sent_back_a.hr_remarks, "Missing timesheet")
        sent_back_b = self.reload(route_b.id)
        self.assertEqual(sent_back_b.status, OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION)
        pairs = self.job_pairs()
        self.assertIn((SUPERVISOR_ID, "verification-pending"), pairs)
        self.assertIn((RESPECTIVE_ID, "confirmation-requested"), pairs)
        self.assertIn((EMPLOYEE_ID, "rejected"), pairs)

    def test_management_reject_returns_to_hr(self) -> None:
        request = self.add_request(status=OTStatus.HR_CERTIFIED)

        reject(
            self.db,
            actor=management_actor(),
            role=AppRole.MANAGEMENT,
            request_ids=[request.id],
            remarks="Exceeds monthly OT cap",
        )
        returned = self.reload(request.id)
        self.assertEqual(returned.status, OTStatus.PENDING_HR_RECERTIFICATION)
        self.assertEqual(returned.rejection_stage, "management")
        self.assertEqual(returned.management_remarks, "Exceeds monthly OT cap")
        self.assertIn((HR_ID, "ready-for-certification"), self.job_pairs())

        approve(self.db, actor=hr_actor(), role=AppRole.HR, request_ids=[request.id])
        self.assertEqual(self.reload(request.id).status, OTStatus.HR_CERTIFIED)

    def test_hr_cannot_act_on_pending_verification(self) -> None:
        request = self.add_request()
        with self.assertRaises(WorkflowValidationError) as ctx:
            approve(self.db, actor=hr_actor(), role=AppRole.HR, request_ids=[request.id])
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.issues[0].code, "INVALID_STATUS")


if __name__ == "__main__":
    unittest.main()
