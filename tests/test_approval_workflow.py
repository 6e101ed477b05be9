from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from pointage.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from pointage.models import (
    Account,
    AccountRole,
    AccountStatus,
    AuditLog,
    Decision,
    DecisionKind,
    EmployeeProfile,
    Notification,
    NotificationType,
    ProfileStatus,
)
from pointage.services.approvals import approve, reject, resubmit_profile, submit_profile


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _FakeApprovalDB:
    def __init__(self, *, commit_errors=()):
        self.scalar_values: list[object] = []
        self.scalars_values: list[list[object]] = []
        self.commit_errors = list(commit_errors)
        self.pending: list[object] = []
        self.committed: list[object] = []
        self.rollback_count = 0
        self.locked: list[str] = []
        self._next_id = 500

    def queue(self, *values):  # type: ignore[no-untyped-def]
        self.scalar_values.extend(values)

    def scalar(self, statement):  # type: ignore[no-untyped-def]
        if "FOR UPDATE" in str(statement):
            self.locked.append(statement.column_descriptions[0]["entity"].__name__)
        if not self.scalar_values:
            return None
        value = self.scalar_values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        rows = self.scalars_values.pop(0) if self.scalars_values else []
        return _ScalarRows(rows)

    def add(self, obj):  # type: ignore[no-untyped-def]
        self.pending.append(obj)

    def flush(self):  # type: ignore[no-untyped-def]
        self._assign_ids()

    def commit(self):  # type: ignore[no-untyped-def]
        if self.commit_errors:
            raise self.commit_errors.pop(0)
        self._assign_ids()
        self.committed.extend(self.pending)
        self.pending = []

    def rollback(self):  # type: ignore[no-untyped-def]
        self.pending = []
        self.rollback_count += 1

    def refresh(self, _obj):  # type: ignore[no-untyped-def]
        return None

    def _assign_ids(self):  # type: ignore[no-untyped-def]
        for obj in self.pending:
            if getattr(obj, "id", None) is None:
                obj.id = self._next_id
                self._next_id += 1

    def committed_of(self, kind):  # type: ignore[no-untyped-def]
        return [item for item in self.committed if isinstance(item, kind)]


def _employee(
    account_status: AccountStatus = AccountStatus.PENDING,
    profile_status: ProfileStatus = ProfileStatus.EN_ATTENTE,
) -> tuple[Account, EmployeeProfile]:
    account = Account(id=3, email="amira@example.tn", role=AccountRole.USER, status=account_status)
    profile = EmployeeProfile(
        id=10,
        account_id=3,
        first_name="Amira",
        last_name="Ben Salah",
        status=profile_status,
    )
    return account, profile


@patch("pointage.services.approvals.deliver_notifications")
class ApprovalWorkflowTests(unittest.TestCase):
    def test_reject_resubmit_then_approve_keeps_full_history(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        fake_db = _FakeApprovalDB()

        fake_db.queue(profile, account)
        reject(
            fake_db,  # type: ignore[arg-type]
            employee_id=10,
            approver_id=1,
            approver_role=AccountRole.RH,
            reason="incomplete documents",
        )
        self.assertEqual(profile.status, ProfileStatus.REJETE)
        self.assertEqual(account.status, AccountStatus.REJECTED)
        self.assertEqual(profile.rejection_reason, "incomplete documents")

        fake_db.queue(profile, account)
        fake_db.scalars_values.append([1, 2])
        resubmit_profile(
            fake_db,  # type: ignore[arg-type]
            account_id=3,
            data={"phone": "+216 20 000 000"},
        )
        self.assertEqual(profile.status, ProfileStatus.EN_ATTENTE)
        self.assertEqual(account.status, AccountStatus.PENDING)
        self.assertEqual(profile.phone, "+216 20 000 000")

        fake_db.queue(profile, account)
        approve(
            fake_db,  # type: ignore[arg-type]
            employee_id=10,
            approver_id=2,
            approver_role=AccountRole.SUPER_ADMIN,
        )
        self.assertEqual(profile.status, ProfileStatus.APPROUVE)
        self.assertEqual(account.status, AccountStatus.ACTIVE)
        self.assertIsNone(profile.rejection_reason)
        self.assertEqual(profile.approved_by_id, 2)

        decisions = fake_db.committed_of(Decision)
        self.assertEqual([item.decision for item in decisions], [DecisionKind.REJECTED, DecisionKind.APPROVED])
        self.assertEqual([item.decider_id for item in decisions], [1, 2])
        self.assertEqual(decisions[0].reason, "incomplete documents")

        audit_actions = [item.action for item in fake_db.committed_of(AuditLog)]
        self.assertEqual(audit_actions, ["EMPLOYEE_REJECTED", "PROFILE_RESUBMITTED", "EMPLOYEE_APPROVED"])

        employee_notifications = [
            item.type for item in fake_db.committed_of(Notification) if item.recipient_id == 3
        ]
        self.assertIn(NotificationType.PROFILE_REJECTED, employee_notifications)
        self.assertIn(NotificationType.PROFILE_APPROVED, employee_notifications)

    def test_second_approval_names_the_first_approver(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee(AccountStatus.ACTIVE, ProfileStatus.APPROUVE)
        earlier = Decision(id=9, profile_id=10, decider_id=1, decision=DecisionKind.APPROVED)
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, account, earlier)

        with self.assertRaises(ConflictError) as ctx:
            approve(
                fake_db,  # type: ignore[arg-type]
                employee_id=10,
                approver_id=2,
                approver_role=AccountRole.RH,
            )

        self.assertEqual(ctx.exception.code, "CONFLICT")
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertIn("#1", ctx.exception.message)
        self.assertEqual(ctx.exception.details["decided_by"], 1)
        self.assertEqual(fake_db.committed_of(Decision), [])
        self.assertEqual(fake_db.rollback_count, 1)
        self.assertEqual(profile.approved_by_id, None)

    def test_approved_profile_can_still_be_rejected(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee(AccountStatus.ACTIVE, ProfileStatus.APPROUVE)
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, account)

        reject(
            fake_db,  # type: ignore[arg-type]
            employee_id=10,
            approver_id=1,
            approver_role=AccountRole.RH,
            reason="contract ended",
        )

        self.assertEqual(profile.status, ProfileStatus.REJETE)
        self.assertEqual(account.status, AccountStatus.REJECTED)

    def test_reject_requires_reason(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, account)

        with self.assertRaises(ValidationError) as ctx:
            reject(
                fake_db,  # type: ignore[arg-type]
                employee_id=10,
                approver_id=1,
                approver_role=AccountRole.RH,
                reason="   ",
            )

        self.assertEqual(ctx.exception.code, "REASON_REQUIRED")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(profile.status, ProfileStatus.EN_ATTENTE)
        self.assertEqual(account.status, AccountStatus.PENDING)
        self.assertEqual(fake_db.committed, [])

    def test_self_approval_is_forbidden(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, account)

        with self.assertRaises(AuthorizationError) as ctx:
            approve(
                fake_db,  # type: ignore[arg-type]
                employee_id=10,
                approver_id=3,
                approver_role=AccountRole.RH,
            )

        self.assertEqual(ctx.exception.code, "SELF_APPROVAL_FORBIDDEN")
        self.assertEqual(profile.status, ProfileStatus.EN_ATTENTE)
        self.assertEqual(fake_db.rollback_count, 1)

    def test_plain_user_cannot_decide(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, account)

        with self.assertRaises(AuthorizationError) as ctx:
            approve(
                fake_db,  # type: ignore[arg-type]
                employee_id=10,
                approver_id=4,
                approver_role=AccountRole.USER,
            )

        self.assertEqual(ctx.exception.code, "FORBIDDEN")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(len(fake_db.scalar_values), 2)

    def test_unknown_employee(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        with self.assertRaises(NotFoundError) as ctx:
            approve(
                _FakeApprovalDB(),  # type: ignore[arg-type]
                employee_id=999,
                approver_id=1,
                approver_role=AccountRole.RH,
            )
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

    def test_failed_commit_rolls_back_without_audit(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        lost = OperationalError("COMMIT", {}, Exception("connection reset"))
        fake_db = _FakeApprovalDB(commit_errors=[lost])
        fake_db.queue(profile, account)

        with patch("pointage.services.approvals.log_audit") as audit_mock:
            with self.assertRaises(TransientStoreError):
                approve(
                    fake_db,  # type: ignore[arg-type]
                    employee_id=10,
                    approver_id=1,
                    approver_role=AccountRole.RH,
                )

        audit_mock.assert_not_called()
        self.assertEqual(fake_db.committed, [])
        self.assertGreaterEqual(fake_db.rollback_count, 1)

    def test_decide_and_resubmit_lock_rows_in_the_same_order(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        decide_db = _FakeApprovalDB()
        decide_db.queue(profile, account)
        reject(
            decide_db,  # type: ignore[arg-type]
            employee_id=10,
            approver_id=1,
            approver_role=AccountRole.RH,
            reason="incomplete documents",
        )

        resubmit_db = _FakeApprovalDB()
        resubmit_db.queue(profile, account)
        resubmit_profile(resubmit_db, account_id=3, data={})  # type: ignore[arg-type]

        self.assertEqual(decide_db.locked, ["EmployeeProfile", "Account"])
        self.assertEqual(resubmit_db.locked, decide_db.locked)

    def test_deadlock_victim_surfaces_as_transient_error(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        deadlock = OperationalError("SELECT ... FOR UPDATE", {}, Exception("deadlock detected"))
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, deadlock)

        with self.assertRaises(TransientStoreError) as ctx:
            approve(
                fake_db,  # type: ignore[arg-type]
                employee_id=10,
                approver_id=1,
                approver_role=AccountRole.RH,
            )

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(profile.status, ProfileStatus.EN_ATTENTE)
        self.assertEqual(fake_db.committed, [])
        self.assertGreaterEqual(fake_db.rollback_count, 1)


@patch("pointage.services.approvals.deliver_notifications")
class ProfileSubmissionTests(unittest.TestCase):
    def test_submit_moves_account_to_pending(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account = Account(id=3, email="amira@example.tn", role=AccountRole.USER, status=AccountStatus.INACTIVE)
        fake_db = _FakeApprovalDB()
        fake_db.queue(account)
        fake_db.scalars_values.append([1])

        profile = submit_profile(
            fake_db,  # type: ignore[arg-type]
            account_id=3,
            data={"first_name": "Amira", "last_name": "Ben Salah", "position": "Comptable"},
        )

        self.assertEqual(profile.status, ProfileStatus.EN_ATTENTE)
        self.assertEqual(profile.position, "Comptable")
        self.assertEqual(account.status, AccountStatus.PENDING)
        approver_notifications = [
            item for item in fake_db.committed_of(Notification) if item.recipient_id == 1
        ]
        self.assertEqual(len(approver_notifications), 1)
        self.assertEqual(approver_notifications[0].type, NotificationType.RH_ACTION_REQUIRED)
        self.assertEqual(
            [item.action for item in fake_db.committed_of(AuditLog)],
            ["PROFILE_SUBMITTED"],
        )

    def test_submit_twice_is_a_conflict(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account = Account(id=3, email="amira@example.tn", role=AccountRole.USER, status=AccountStatus.PENDING)
        fake_db = _FakeApprovalDB()
        fake_db.queue(account)

        with self.assertRaises(ConflictError) as ctx:
            submit_profile(fake_db, account_id=3, data={"first_name": "A", "last_name": "B"})  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.code, "PROFILE_ALREADY_SUBMITTED")

    def test_resubmit_requires_rejected_profile(self, _deliver) -> None:  # type: ignore[no-untyped-def]
        account, profile = _employee()
        fake_db = _FakeApprovalDB()
        fake_db.queue(profile, account)

        with self.assertRaises(ConflictError) as ctx:
            resubmit_profile(fake_db, account_id=3, data={})  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.code, "PROFILE_NOT_REJECTED")
        self.assertEqual(profile.status, ProfileStatus.EN_ATTENTE)


if __name__ == "__main__":
    unittest.main()
