from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from pointage.errors import ValidationError
from pointage.models import AttendanceSession, SessionStatus, SessionType
from pointage.services.attendance import compute_day_status, get_month_summary, get_today_status


def _session(day: date, session_type: SessionType, minutes: int) -> AttendanceSession:
    return AttendanceSession(
        account_id=3,
        work_date=day,
        session_type=session_type,
        status=SessionStatus.FULL if minutes >= 135 else SessionStatus.PARTIAL,
        duration_minutes=minutes,
    )


TUESDAY = date(2026, 10, 20)


class DayStatusTests(unittest.TestCase):
    def test_full_day(self) -> None:
        status, worked, expected = compute_day_status(
            TUESDAY,
            morning=_session(TUESDAY, SessionType.MORNING, 180),
            afternoon=_session(TUESDAY, SessionType.AFTERNOON, 240),
        )
        self.assertEqual((status, worked, expected), ("FULL_DAY", 420, 420))

    def test_half_days(self) -> None:
        morning_only = compute_day_status(
            TUESDAY, morning=_session(TUESDAY, SessionType.MORNING, 180), afternoon=None
        )
        afternoon_only = compute_day_status(
            TUESDAY, morning=None, afternoon=_session(TUESDAY, SessionType.AFTERNOON, 60)
        )

        self.assertEqual(morning_only[0], "HALF_DAY_AM")
        self.assertEqual(afternoon_only, ("HALF_DAY_PM", 60, 420))

    def test_absent_when_nothing_recorded(self) -> None:
        self.assertEqual(compute_day_status(TUESDAY, morning=None, afternoon=None), ("ABSENT", 0, 420))

    def test_weekend_and_holiday_expect_nothing(self) -> None:
        saturday = date(2026, 10, 24)
        labour_day = date(2026, 5, 1)

        self.assertEqual(
            compute_day_status(saturday, morning=_session(saturday, SessionType.MORNING, 120), afternoon=None),
            ("WEEKEND", 0, 0),
        )
        self.assertEqual(compute_day_status(labour_day, morning=None, afternoon=None), ("HOLIDAY", 0, 0))

    def test_approved_leave_counts_as_expected_day(self) -> None:
        self.assertEqual(
            compute_day_status(TUESDAY, morning=None, afternoon=None, on_leave=True),
            ("LEAVE_FULL", 420, 420),
        )


class MonthSummaryTests(unittest.TestCase):
    def test_month_totals(self) -> None:
        sessions = [
            _session(date(2026, 10, 20), SessionType.MORNING, 180),
            _session(date(2026, 10, 20), SessionType.AFTERNOON, 240),
            _session(date(2026, 10, 21), SessionType.MORNING, 170),
        ]

        with (
            patch("pointage.services.attendance.list_sessions_between", return_value=sessions),
            patch(
                "pointage.services.attendance.approved_leave_days",
                return_value={date(2026, 10, 22)},
            ),
        ):
            summary = get_month_summary(None, account_id=3, year=2026, month=10)  # type: ignore[arg-type]

        self.assertEqual(len(summary["days"]), 31)
        by_date = {item["date"]: item for item in summary["days"]}
        self.assertEqual(by_date[date(2026, 10, 20)]["status"], "FULL_DAY")
        self.assertEqual(by_date[date(2026, 10, 21)]["status"], "HALF_DAY_AM")
        self.assertEqual(by_date[date(2026, 10, 21)]["afternoon_status"], SessionStatus.NOT_STARTED)
        self.assertEqual(by_date[date(2026, 10, 22)]["status"], "LEAVE_FULL")
        self.assertEqual(by_date[date(2026, 10, 15)]["status"], "HOLIDAY")

        totals = summary["totals"]
        self.assertEqual(totals["full_days"], 1)
        self.assertEqual(totals["half_days"], 1)
        self.assertEqual(totals["leave_days"], 1)
        self.assertEqual(totals["worked_minutes"], 180 + 240 + 170 + 420)

    def test_invalid_month(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            get_month_summary(None, account_id=3, year=2026, month=13)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "INVALID_PERIOD")


class TodayStatusTests(unittest.TestCase):
    def test_reports_both_sessions(self) -> None:
        morning = _session(TUESDAY, SessionType.MORNING, 180)
        morning.check_in_at = datetime(2026, 10, 20, 8, 0, tzinfo=timezone.utc)
        morning.check_out_at = datetime(2026, 10, 20, 11, 0, tzinfo=timezone.utc)

        with patch("pointage.services.attendance.list_sessions_between", return_value=[morning]):
            status = get_today_status(
                None,  # type: ignore[arg-type]
                account_id=3,
                now=datetime(2026, 10, 20, 12, 30, tzinfo=timezone.utc),
            )

        self.assertEqual(status["date"], TUESDAY)
        self.assertTrue(status["morning"]["has_checked_in"])
        self.assertTrue(status["morning"]["has_checked_out"])
        self.assertEqual(status["morning"]["duration_minutes"], 180)
        self.assertFalse(status["afternoon"]["has_checked_in"])
        self.assertEqual(status["afternoon"]["status"], SessionStatus.NOT_STARTED)


if __name__ == "__main__":
    unittest.main()
