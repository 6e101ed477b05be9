from __future__ import annotations

import unittest
from datetime import datetime, timezone

from sqlalchemy.exc import OperationalError

from pointage.audit import log_audit, query_audit_logs
from pointage.errors import TransientStoreError
from pointage.models import AuditLog, AuditSeverity


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _FakeAuditDB:
    def __init__(self, *, fail_commit: bool = False, rows=None, read_errors=()):
        self.fail_commit = fail_commit
        self.read_errors = list(read_errors)
        self.rows = rows or []
        self.added = []
        self.commits = 0
        self.rollbacks = 0
        self.statements = []

    def add(self, obj):  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def commit(self):  # type: ignore[no-untyped-def]
        if self.fail_commit:
            raise RuntimeError("disk full")
        self.commits += 1

    def rollback(self):  # type: ignore[no-untyped-def]
        self.rollbacks += 1

    def scalars(self, statement):  # type: ignore[no-untyped-def]
        self.statements.append(statement)
        if self.read_errors:
            raise self.read_errors.pop(0)
        return _ScalarRows(self.rows)


class AuditLogTests(unittest.TestCase):
    def test_log_audit_commits_entry(self) -> None:
        fake_db = _FakeAuditDB()

        entry = log_audit(
            fake_db,  # type: ignore[arg-type]
            actor_id="1",
            action="EMPLOYEE_APPROVED",
            entity_type="employee_profile",
            entity_id="10",
            changes={"profile_status": {"from": "EN_ATTENTE", "to": "APPROUVE"}},
            ip="10.0.0.5",
            user_agent="pytest",
        )

        self.assertIsInstance(entry, AuditLog)
        assert entry is not None
        self.assertEqual(entry.severity, AuditSeverity.INFO)
        self.assertEqual(entry.ip, "10.0.0.5")
        self.assertEqual(fake_db.commits, 1)
        self.assertEqual(fake_db.added, [entry])

    def test_failed_audit_write_is_logged_not_raised(self) -> None:
        fake_db = _FakeAuditDB(fail_commit=True)

        with self.assertLogs("pointage.audit", level="ERROR") as captured:
            entry = log_audit(
                fake_db,  # type: ignore[arg-type]
                actor_id="3",
                action="ATTENDANCE_CHECK_IN",
                entity_type="attendance_session",
                entity_id="55",
            )

        self.assertIsNone(entry)
        self.assertEqual(fake_db.rollbacks, 1)
        self.assertTrue(any("audit_log_write_failed" in line for line in captured.output))

    def test_query_orders_newest_first_and_caps_limit(self) -> None:
        fake_db = _FakeAuditDB(rows=["row"])

        rows = query_audit_logs(
            fake_db,  # type: ignore[arg-type]
            action="EMPLOYEE_REJECTED",
            since=datetime(2026, 10, 1, tzinfo=timezone.utc),
            limit=5000,
        )

        self.assertEqual(rows, ["row"])
        compiled = fake_db.statements[0].compile()
        sql = str(compiled)
        self.assertIn("ORDER BY audit_logs.ts_utc DESC", sql)
        self.assertIn("audit_logs.action =", sql)
        self.assertIn("audit_logs.ts_utc >=", sql)
        self.assertIn(500, compiled.params.values())

    def test_query_retries_once_after_dropped_connection(self) -> None:
        dropped = OperationalError("SELECT", {}, Exception("server closed the connection"))
        fake_db = _FakeAuditDB(rows=["row"], read_errors=[dropped])

        with self.assertLogs("pointage.store", level="WARNING"):
            rows = query_audit_logs(fake_db, actor_id="1")  # type: ignore[arg-type]

        self.assertEqual(rows, ["row"])
        self.assertEqual(len(fake_db.statements), 2)
        self.assertEqual(fake_db.rollbacks, 1)

    def test_query_gives_up_after_second_failure(self) -> None:
        errors = [OperationalError("SELECT", {}, Exception("server closed the connection")) for _ in range(2)]
        fake_db = _FakeAuditDB(read_errors=errors)

        with self.assertLogs("pointage.store", level="WARNING"):
            with self.assertRaises(TransientStoreError):
                query_audit_logs(fake_db)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
