from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Enum as SAEnum
from sqlalchemy import MetaData, inspect, text
from sqlalchemy.engine import Engine

from pointage.db import Base


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_UNIQUE_CONSTRAINTS: dict[str, set[str]] = {
    "attendance_sessions": {"uq_attendance_sessions_account_date_type"},
}


def required_table_columns(metadata: MetaData) -> dict[str, set[str]]:
    required = {table.name: {column.name for column in table.columns} for table in metadata.sorted_tables}
    required["alembic_version"] = {"version_num"}
    return required


def required_enum_values(metadata: MetaData) -> dict[str, set[str]]:
    required: dict[str, set[str]] = {}
    for table in metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, SAEnum) and column.type.name:
                required.setdefault(column.type.name, set()).update(column.type.enums)
    return required


def verify_runtime_schema(engine: Engine, metadata: MetaData | None = None) -> SchemaGuardResult:
    metadata = metadata if metadata is not None else Base.metadata
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_columns in required_table_columns(metadata).items():
        if table_name not in existing_tables:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, constraint_names in REQUIRED_UNIQUE_CONSTRAINTS.items():
        if table_name not in existing_tables:
            continue
        present = {str(item.get("name")) for item in inspector.get_unique_constraints(table_name)}
        for constraint_name in sorted(constraint_names - present):
            issues.append(f"MISSING_UNIQUE_CONSTRAINT:{table_name}:{constraint_name}")

    try:
        enums = inspector.get_enums() or []
    except NotImplementedError:
        warnings.append("ENUM_INSPECTION_UNSUPPORTED")
        enums = []

    enum_values_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        if not name:
            continue
        labels = enum_item.get("labels")
        if isinstance(labels, list):
            enum_values_by_name[name] = {str(label) for label in labels}

    for enum_name, required_values in required_enum_values(metadata).items():
        if enum_name not in enum_values_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    if "alembic_version" in existing_tables:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        if not (str(row).strip() if row is not None else ""):
            issues.append("ALEMBIC_VERSION_EMPTY")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
