#!/usr/bin/env python
"""Refuse a deploy whose migrations, settings or database are out of shape.

Prints a JSON report and exits non-zero when any check has problems.
Warnings are reported but never block.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pointage.services.schema_guard import verify_runtime_schema
from pointage.settings import Settings, get_settings, parse_hhmm

MIGRATIONS_DIR = ROOT_DIR / "pointage" / "migrations"
# alembic_version.version_num is VARCHAR(32)
MAX_REVISION_ID_LENGTH = 32
MIN_JWT_SECRET_LENGTH = 32


@dataclass(slots=True)
class GuardCheck:
    name: str
    problems: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.problems:
            return "fail"
        return "warn" if self.warnings else "ok"

    def as_report(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "problems": self.problems,
            "warnings": self.warnings,
            "details": self.details,
        }


def load_revision_pairs(migrations_dir: Path = MIGRATIONS_DIR) -> list[tuple[str, str | None]]:
    script = ScriptDirectory(str(migrations_dir))
    pairs: list[tuple[str, str | None]] = []
    for revision in script.walk_revisions():
        down = revision.down_revision
        if isinstance(down, (tuple, list)):
            pairs.extend((revision.revision, parent) for parent in down)
        else:
            pairs.append((revision.revision, down))
    return pairs


def check_migration_chain(pairs: Iterable[tuple[str, str | None]]) -> GuardCheck:
    """One linear history whose ids fit the alembic version column."""
    check = GuardCheck(name="migration_chain")
    pairs = list(pairs)
    revisions = {revision for revision, _ in pairs}
    parents = {down for _, down in pairs if down is not None}

    if not revisions:
        check.problems.append("NO_REVISIONS")
    for revision in sorted(revisions):
        if len(revision) > MAX_REVISION_ID_LENGTH:
            check.problems.append(f"REVISION_ID_TOO_LONG:{revision}")
    for revision, down in pairs:
        if down is not None and down not in revisions:
            check.problems.append(f"UNKNOWN_DOWN_REVISION:{revision}->{down}")

    heads = sorted(revisions - parents)
    bases = sorted(revision for revision, down in pairs if down is None)
    if len(heads) > 1:
        check.problems.append("MULTIPLE_HEADS")
    if len(bases) > 1:
        check.problems.append("MULTIPLE_BASES")
    check.details = {"total": len(revisions), "heads": heads, "bases": bases}
    return check


def check_security_settings(settings: Settings) -> GuardCheck:
    check = GuardCheck(name="security_settings")
    secret = (settings.jwt_secret or "").strip()
    if not secret:
        check.problems.append("JWT_SECRET_NOT_SET")
    elif len(secret) < MIN_JWT_SECRET_LENGTH:
        check.warnings.append("JWT_SECRET_SHORT")
    if not (settings.jwt_issuer or "").strip():
        check.problems.append("JWT_ISSUER_NOT_SET")
    if not (settings.jwt_audience or "").strip():
        check.problems.append("JWT_AUDIENCE_NOT_SET")
    check.details = {"jwt_secret_length": len(secret)}
    return check


def check_workday_settings(settings: Settings) -> GuardCheck:
    """Schedule windows, timezone, holidays and session thresholds."""
    check = GuardCheck(name="workday_settings")

    try:
        ZoneInfo(settings.attendance_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        check.problems.append(f"UNKNOWN_TIMEZONE:{settings.attendance_timezone}")

    labels = ("morning_start", "morning_end", "afternoon_start", "afternoon_end")
    bounds = []
    for label in labels:
        try:
            bounds.append(parse_hhmm(getattr(settings, label)))
        except ValueError:
            check.problems.append(f"BAD_TIME:{label}")
    if len(bounds) == len(labels):
        morning_start, morning_end, afternoon_start, afternoon_end = bounds
        if not morning_start < morning_end <= afternoon_start < afternoon_end:
            check.problems.append("WINDOWS_OUT_OF_ORDER")
        morning_minutes = (morning_end.hour - morning_start.hour) * 60 + morning_end.minute - morning_start.minute
        if settings.late_grace_minutes >= morning_minutes:
            check.warnings.append("LATE_GRACE_COVERS_MORNING")
        if settings.earliest_checkin_hour > morning_start.hour:
            check.problems.append("EARLIEST_CHECKIN_AFTER_MORNING_START")
        if settings.latest_checkout_hour < afternoon_end.hour:
            check.problems.append("LATEST_CHECKOUT_BEFORE_AFTERNOON_END")

    if settings.min_session_minutes > settings.full_session_threshold_minutes:
        check.problems.append("MIN_SESSION_ABOVE_FULL_THRESHOLD")
    if not 0 <= settings.face_score_threshold <= 100:
        check.problems.append("FACE_THRESHOLD_OUT_OF_RANGE")

    holidays = [item.strip() for item in settings.public_holidays.split(",") if item.strip()]
    for item in holidays:
        month_text, _, day_text = item.partition("-")
        try:
            datetime(2024, int(month_text), int(day_text))
        except ValueError:
            check.problems.append(f"BAD_HOLIDAY:{item}")
    check.details = {"timezone": settings.attendance_timezone, "holiday_count": len(holidays)}
    return check


def check_delivery_settings(settings: Settings) -> GuardCheck:
    check = GuardCheck(name="delivery_settings")
    public_key_set = bool((settings.push_vapid_public_key or "").strip())
    private_key_set = bool((settings.push_vapid_private_key or "").strip())
    if public_key_set != private_key_set:
        check.problems.append("VAPID_KEY_PAIR_INCOMPLETE")
    elif not public_key_set:
        check.warnings.append("PUSH_DISABLED")
    if public_key_set and not settings.push_vapid_subject.startswith(("mailto:", "https://")):
        check.problems.append("VAPID_SUBJECT_INVALID")

    redis_url = (settings.redis_url or "").strip()
    if not redis_url:
        check.warnings.append("STREAM_DISABLED")
    elif not redis_url.startswith(("redis://", "rediss://", "unix://")):
        check.problems.append("REDIS_URL_INVALID")
    check.details = {"push_enabled": public_key_set and private_key_set, "stream_enabled": bool(redis_url)}
    return check


def check_database(database_url: str | None, expected_heads: list[str]) -> GuardCheck:
    check = GuardCheck(name="database")
    if not (database_url or "").strip():
        check.warnings.append("DATABASE_URL_NOT_SET")
        return check

    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            applied = sorted(
                str(version).strip()
                for version in connection.execute(text("SELECT version_num FROM alembic_version")).scalars()
                if version is not None
            )
        schema_result = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    if applied != sorted(expected_heads):
        check.problems.append("DATABASE_NOT_AT_HEAD")
    check.problems.extend(schema_result.issues)
    check.warnings.extend(schema_result.warnings)
    check.details = {"applied": applied, "expected_heads": sorted(expected_heads)}
    return check


def run_checks(settings: Settings, database_url: str | None) -> list[GuardCheck]:
    chain = check_migration_chain(load_revision_pairs())
    return [
        chain,
        check_security_settings(settings),
        check_workday_settings(settings),
        check_delivery_settings(settings),
        check_database(database_url, chain.details["heads"]),
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--skip-database", action="store_true", help="only check migrations and settings")
    args = parser.parse_args(argv)

    database_url = None if args.skip_database else os.getenv("DATABASE_URL")
    checks = run_checks(get_settings(), database_url)
    report = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": all(check.status != "fail" for check in checks),
        "counts": {status: sum(1 for check in checks if check.status == status) for status in ("ok", "warn", "fail")},
        "checks": [check.as_report() for check in checks],
    }
    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0 if report["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
