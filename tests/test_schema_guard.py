from __future__ import annotations

import unittest
from unittest.mock import patch

from pointage.db import Base
from pointage.services.schema_guard import (
    required_enum_values,
    required_table_columns,
    verify_runtime_schema,
)


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table, enums, unique_constraints):
        self._columns_by_table = columns_by_table
        self._enums = enums
        self._unique_constraints = unique_constraints

    def get_table_names(self):  # type: ignore[no-untyped-def]
        return list(self._columns_by_table)

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._columns_by_table[table_name]]

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._unique_constraints.get(table_name, [])]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _complete_schema() -> tuple[dict[str, set[str]], list[dict[str, object]], dict[str, list[str]]]:
    columns = {name: set(items) for name, items in required_table_columns(Base.metadata).items()}
    enums = [
        {"name": name, "labels": sorted(values)}
        for name, values in required_enum_values(Base.metadata).items()
    ]
    constraints = {"attendance_sessions": ["uq_attendance_sessions_account_date_type"]}
    return columns, enums, constraints


class SchemaGuardTests(unittest.TestCase):
    def test_required_columns_follow_models(self) -> None:
        required = required_table_columns(Base.metadata)

        self.assertIn("session_type", required["attendance_sessions"])
        self.assertIn("metadata", required["notifications"])
        self.assertEqual(required["alembic_version"], {"version_num"})
        self.assertIn("ORDERING_VIOLATION", required_enum_values(Base.metadata)["anomaly_type"])

    def test_verify_runtime_schema_ok_when_everything_exists(self) -> None:
        columns, enums, constraints = _complete_schema()
        fake_inspector = _FakeInspector(columns_by_table=columns, enums=enums, unique_constraints=constraints)

        with patch("pointage.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0003_leave_requests"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_drift(self) -> None:
        columns, enums, _constraints = _complete_schema()
        columns["anomalies"].discard("severity")
        del columns["leave_requests"]
        for item in enums:
            if item["name"] == "anomaly_type":
                item["labels"] = [label for label in item["labels"] if label != "ORDERING_VIOLATION"]  # type: ignore[union-attr]
        fake_inspector = _FakeInspector(columns_by_table=columns, enums=enums, unique_constraints={})

        with patch("pointage.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:anomalies:severity", result.issues)
        self.assertIn("MISSING_TABLE:leave_requests", result.issues)
        self.assertIn(
            "MISSING_UNIQUE_CONSTRAINT:attendance_sessions:uq_attendance_sessions_account_date_type",
            result.issues,
        )
        self.assertIn("MISSING_ENUM_VALUES:anomaly_type:ORDERING_VIOLATION", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)


if __name__ == "__main__":
    unittest.main()
