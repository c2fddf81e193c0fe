from __future__ import annotations

import datetime
import random
import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, GateAssignment, HourlySlot, OnCallSlot, Person, WeeklyDuty  # noqa: E402
from generator.api import ensure_generated  # noqa: E402
from validation import validate_rota_state  # noqa: E402

POLICY = {"weekly_duty": {"window_weeks": 4}, "on_call": {"window_weeks": 1}}


class RotaValidationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        with self.SessionLocal() as session:
            people = [Person(display_name=name) for name in ("Avery", "Blake", "Casey")]
            session.add_all(people)
            session.commit()
            self.a, self.b, self.c = (person.id for person in people)
        self.day = datetime.date(2024, 1, 9)
        ensure_generated(self.SessionLocal, self.day - datetime.timedelta(days=1), policy=POLICY, rng=random.Random(1))
        ensure_generated(self.SessionLocal, self.day, policy=POLICY, rng=random.Random(2))
        self.session = self.SessionLocal()

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _report(self):
        return validate_rota_state(self.session, self.day, policy=POLICY)

    def test_generated_state_is_clean(self) -> None:
        report = self._report()

        self.assertEqual(report["issues"], [])
        self.assertEqual(report["warnings"], [])
        self.assertEqual(report["week_start"], "2024-01-08")
        self.assertTrue(all(check["status"] == "pass" for check in report["checks"]))

    def test_flags_auto_slot_with_pin_metadata(self) -> None:
        slot = self.session.scalars(select(HourlySlot).where(HourlySlot.slot_date == self.day)).first()
        slot.reason = "left over"
        self.session.commit()

        report = self._report()

        self.assertTrue(any(issue["type"] == "pin_latch" and issue["table"] == "hourly" for issue in report["issues"]))

    def test_flags_off_week_with_occupant(self) -> None:
        duty = self.session.scalars(
            select(WeeklyDuty).where(WeeklyDuty.week_start_date == datetime.date(2024, 1, 15))
        ).first()
        duty.is_off_week = True
        self.session.commit()

        report = self._report()

        messages = [issue["message"] for issue in report["issues"] if issue["type"] == "off_week"]
        self.assertIn("Off week still names an occupant.", messages)
        self.assertIn("Off week was not set by an override.", messages)

    def test_flags_broken_gate_handover(self) -> None:
        gate = self.session.scalars(select(GateAssignment).where(GateAssignment.assignment_date == self.day)).first()
        gate.main_person_id = self.c
        self.session.commit()

        report = self._report()

        self.assertTrue(any(issue["type"] == "gate_continuity" for issue in report["issues"]))
        statuses = {check["label"]: check["status"] for check in report["checks"]}
        self.assertEqual(statuses["Gate backup steps up to main?"], "fail")

    def test_flags_missing_on_call_day(self) -> None:
        self.session.execute(delete(OnCallSlot).where(OnCallSlot.weekday == "wed"))
        self.session.commit()

        report = self._report()

        gaps = [issue for issue in report["issues"] if issue["type"] == "on_call_gap"]
        self.assertEqual(gaps[0]["missing"], ["wed"])

    def test_warns_on_weekly_repeat(self) -> None:
        duty = self.session.scalars(
            select(WeeklyDuty).where(WeeklyDuty.week_start_date == datetime.date(2024, 1, 15))
        ).first()
        duty.person_id = self.b
        self.session.commit()

        report = self._report()

        self.assertEqual(report["issues"], [])
        repeats = [warning for warning in report["warnings"] if warning["type"] == "weekly_repeat"]
        self.assertEqual(repeats[0]["people"], [self.b])


if __name__ == "__main__":
    unittest.main()
