from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from otms.models import AppRole, AuditLog, OTStatus, Profile
from otms.services.notifications import (
    EmailNotificationChannel,
    LoggingNotificationChannel,
    NotificationKind,
    NotificationTarget,
    dispatch_submission_notifications,
    dispatch_transition_notifications,
    enqueue_notifications,
    get_notification_channel,
    get_notification_queue_health,
    resolve_transition_recipients,
    send_pending_notifications,
)
from otms.services.transitions import WorkflowAction, get_rule
from tests.ot_fixtures import (
    EMPLOYEE_ID,
    HR_ID,
    MANAGEMENT_ID,
    RESPECTIVE_ID,
    SUPERVISOR_ID,
    OTDatabaseTestCase,
)


class _RecordingChannel:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str, dict]] = []

    def notify(self, recipient_id, kind, payload):  # type: ignore[no-untyped-def]
        self.calls.append((recipient_id, kind, payload))
        return {"mode": "recorded", "sent": 1}


class _FailingChannel:
    def notify(self, recipient_id, kind, payload):  # type: ignore[no-untyped-def]
        raise RuntimeError("smtp unavailable")


def _smtp_settings(**overrides):  # type: ignore[no-untyped-def]
    values = {
        "smtp_host": "smtp.example.com",
        "smtp_port": 587,
        "smtp_username": "mailer",
        "smtp_password": "secret",
        "smtp_from_email": "ot@example.com",
        "smtp_use_tls": True,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class NotificationTestCase(OTDatabaseTestCase):
    def target(self, *, respective: int | None = None, version: int = 2) -> NotificationTarget:
        request = self.add_request(respective_supervisor_id=respective)
        return NotificationTarget(
            request_id=request.id,
            ticket_number=request.ticket_number,
            ot_date=request.ot_date,
            employee_id=EMPLOYEE_ID,
            supervisor_id=SUPERVISOR_ID,
            respective_supervisor_id=respective,
            version=version,
        )


class RecipientResolutionTests(NotificationTestCase):
    def recipients(self, role: AppRole, action: WorkflowAction, next_status: OTStatus, *, respective=None):  # type: ignore[no-untyped-def]
        rule = get_rule(role, action)
        assert rule is not None
        target = self.target(respective=respective)
        return [
            (recipient_id, kind.value)
            for recipient_id, kind in resolve_transition_recipients(
                self.db, rule=rule, next_status=next_status, target=target
            )
        ]

    def test_supervisor_approve_route_a_reaches_hr_and_employee(self) -> None:
        self.assertEqual(
            self.recipients(AppRole.SUPERVISOR, WorkflowAction.APPROVE, OTStatus.SUPERVISOR_CONFIRMED),
            [(HR_ID, "ready-for-certification"), (EMPLOYEE_ID, "approved")],
        )

    def test_supervisor_approve_route_b_only_tells_employee(self) -> None:
        self.assertEqual(
            self.recipients(
                AppRole.SUPERVISOR,
                WorkflowAction.APPROVE,
                OTStatus.PENDING_SUPERVISOR_CONFIRMATION,
                respective=RESPECTIVE_ID,
            ),
            [(EMPLOYEE_ID, "verification-pending")],
        )

    def test_hr_approve_reaches_management(self) -> None:
        self.assertEqual(
            self.recipients(AppRole.HR, WorkflowAction.APPROVE, OTStatus.HR_CERTIFIED),
            [(MANAGEMENT_ID, "ready-for-approval"), (EMPLOYEE_ID, "approved")],
        )

    def test_management_reject_reaches_hr(self) -> None:
        self.assertEqual(
            self.recipients(AppRole.MANAGEMENT, WorkflowAction.REJECT, OTStatus.PENDING_HR_RECERTIFICATION),
            [(EMPLOYEE_ID, "rejected"), (HR_ID, "ready-for-certification")],
        )

    def test_inactive_role_holders_are_skipped(self) -> None:
        hr_profile = self.db.get(Profile, HR_ID)
        assert hr_profile is not None
        hr_profile.is_active = False
        self.db.commit()
        self.assertEqual(
            self.recipients(AppRole.SUPERVISOR, WorkflowAction.APPROVE, OTStatus.SUPERVISOR_CONFIRMED),
            [(EMPLOYEE_ID, "approved")],
        )

    def test_deny_reaches_employee_and_supervisor(self) -> None:
        self.assertEqual(
            self.recipients(
                AppRole.SUPERVISOR,
                WorkflowAction.DENY_RESPECTIVE,
                OTStatus.PENDING_SUPERVISOR_REVIEW,
                respective=RESPECTIVE_ID,
            ),
            [(EMPLOYEE_ID, "denied"), (SUPERVISOR_ID, "denied")],
        )


class EnqueueTests(NotificationTestCase):
    def test_submission_notifies_both_supervisors(self) -> None:
        target = self.target(respective=RESPECTIVE_ID, version=1)
        jobs = dispatch_submission_notifications(self.db, targets=[target], actor_id=EMPLOYEE_ID)
        self.assertEqual(
            [(job.recipient_id, job.kind) for job in jobs],
            [(RESPECTIVE_ID, "submission"), (SUPERVISOR_ID, "submission")],
        )
        self.assertEqual(jobs[0].payload["recipient_email"], "sup-02@example.com")
        self.assertEqual(jobs[0].payload["action"], "employee:submit")

    def test_same_transition_is_enqueued_once(self) -> None:
        rule = get_rule(AppRole.SUPERVISOR, WorkflowAction.APPROVE)
        assert rule is not None
        target = self.target()
        for _ in range(2):
            dispatch_transition_notifications(
                self.db,
                rule=rule,
                next_status=OTStatus.SUPERVISOR_CONFIRMED,
                targets=[target],
                actor_id=SUPERVISOR_ID,
                remarks=None,
            )
        keys = sorted(job.idempotency_key for job in self.jobs())
        self.assertEqual(
            keys,
            [
                f"approved:{target.request_id}:{EMPLOYEE_ID}:2",
                f"ready-for-certification:{target.request_id}:{HR_ID}:2",
            ],
        )

    def test_failed_recipient_does_not_block_others(self) -> None:
        target = self.target()
        recipients = [(EMPLOYEE_ID, NotificationKind.APPROVED), (HR_ID, NotificationKind.READY_FOR_CERTIFICATION)]
        with patch("otms.services.notifications._job_exists", side_effect=[RuntimeError("lookup failed"), False]):
            with self.assertLogs("otms.notifications", level="ERROR") as captured:
                created = enqueue_notifications(
                    self.db,
                    target=target,
                    recipients=recipients,
                    status=OTStatus.SUPERVISOR_CONFIRMED,
                    action="supervisor:approve",
                )
        self.assertEqual([(job.recipient_id, job.kind) for job in created], [(HR_ID, "ready-for-certification")])
        self.assertEqual(self.job_pairs(), {(HR_ID, "ready-for-certification")})
        self.assertTrue(any("notification_enqueue_failed" in line for line in captured.output))


class DeliveryTests(NotificationTestCase):
    def enqueue_one(self, now: datetime) -> int:
        target = self.target()
        created = enqueue_notifications(
            self.db,
            target=target,
            recipients=[(EMPLOYEE_ID, NotificationKind.APPROVED)],
            status=OTStatus.SUPERVISOR_CONFIRMED,
            action="supervisor:approve",
            remarks="Looks fine",
            now_utc=now,
        )
        return created[0].id

    def test_due_job_is_sent(self) -> None:
        now = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)
        job_id = self.enqueue_one(now)
        channel = _RecordingChannel()

        processed = send_pending_notifications(now_utc=now, db=self.db, channel=channel)

        self.assertEqual([job.id for job in processed], [job_id])
        self.assertEqual(processed[0].status, "SENT")
        self.assertEqual(processed[0].attempts, 0)
        self.assertEqual(processed[0].payload["delivery"], {"mode": "recorded"})
        recipient_id, kind, payload = channel.calls[0]
        self.assertEqual((recipient_id, kind), (EMPLOYEE_ID, "approved"))
        self.assertEqual(payload["remarks"], "Looks fine")

    def test_future_job_is_not_claimed(self) -> None:
        now = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)
        self.enqueue_one(now + timedelta(minutes=5))
        channel = _RecordingChannel()
        self.assertEqual(send_pending_notifications(now_utc=now, db=self.db, channel=channel), [])
        self.assertEqual(channel.calls, [])

    def test_failure_backs_off_then_dead_letters(self) -> None:
        now = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)
        job_id = self.enqueue_one(now)

        first = send_pending_notifications(now_utc=now, db=self.db, channel=_FailingChannel())
        self.assertEqual(first[0].status, "PENDING")
        self.assertEqual(first[0].attempts, 1)
        self.assertEqual(first[0].last_error, "smtp unavailable")
        self.assertEqual(
            first[0].scheduled_at_utc.replace(tzinfo=None),
            (now + timedelta(minutes=2)).replace(tzinfo=None),
        )

        for hour in range(1, 5):
            send_pending_notifications(now_utc=now + timedelta(hours=hour), db=self.db, channel=_FailingChannel())

        job = next(job for job in self.jobs() if job.id == job_id)
        self.assertEqual(job.status, "FAILED")
        self.assertEqual(job.attempts, 5)
        audit = self.db.scalars(select(AuditLog).where(AuditLog.action == "NOTIFICATION_JOB_DEAD_LETTERED")).one()
        self.assertEqual(audit.entity_id, str(job_id))
        self.assertFalse(audit.success)

        self.assertEqual(
            send_pending_notifications(now_utc=now + timedelta(days=1), db=self.db, channel=_RecordingChannel()),
            [],
        )

    def test_queue_health_counts_by_status(self) -> None:
        now = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)
        self.enqueue_one(now)
        self.enqueue_one(now)
        send_pending_notifications(limit=1, now_utc=now, db=self.db, channel=_RecordingChannel())
        self.assertEqual(
            get_notification_queue_health(self.db),
            {"PENDING": 1, "SENDING": 0, "SENT": 1, "FAILED": 0},
        )


class ChannelTests(unittest.TestCase):
    def test_logging_channel_is_default(self) -> None:
        with patch(
            "otms.services.notifications.get_settings",
            return_value=SimpleNamespace(notification_email_enabled=False),
        ):
            self.assertIsInstance(get_notification_channel(), LoggingNotificationChannel)

    def test_email_channel_requires_smtp(self) -> None:
        with patch("otms.services.notifications.get_settings", return_value=_smtp_settings(smtp_host=None)):
            channel = EmailNotificationChannel()
        with self.assertRaises(RuntimeError):
            channel.notify(EMPLOYEE_ID, "approved", {"recipient_email": "emp-01@example.com"})

    def test_email_channel_requires_recipient_address(self) -> None:
        with patch("otms.services.notifications.get_settings", return_value=_smtp_settings()):
            channel = EmailNotificationChannel()
        with self.assertRaises(RuntimeError):
            channel.notify(EMPLOYEE_ID, "approved", {"request_id": 7})

    def test_email_channel_sends_message(self) -> None:
        with patch("otms.services.notifications.get_settings", return_value=_smtp_settings()):
            channel = EmailNotificationChannel()
        smtp_client = MagicMock()
        with patch("otms.services.notifications.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = smtp_client
            result = channel.notify(
                EMPLOYEE_ID,
                "ready-for-certification",
                {
                    "request_id": 7,
                    "ticket_number": "OT-20260105-AB12",
                    "ot_date": "2026-01-05",
                    "status": "supervisor_confirmed",
                    "recipient_email": "emp-01@example.com",
                },
            )

        self.assertEqual(result, {"mode": "sent", "sent": 1})
        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=15)
        smtp_client.starttls.assert_called_once()
        smtp_client.login.assert_called_once_with("mailer", "secret")
        message = smtp_client.send_message.call_args.args[0]
        self.assertEqual(message["To"], "emp-01@example.com")
        self.assertEqual(message["Subject"], "OT OT-20260105-AB12: ready for certification")


if __name__ == "__main__":
    unittest.main()
