from __future__ import annotations

import datetime
import random
import sys
import unittest
from collections import Counter
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    Absence,
    Base,
    GateAssignment,
    HourlySlot,
    OnCallSlot,
    Person,
    WeeklyDuty,
    upsert_policy,
)
from errors import ConflictError, StorageError, ValidationError  # noqa: E402
import generator.api as rota_api  # noqa: E402
from generator.api import (  # noqa: E402
    ensure_generated,
    get_daily_view,
    list_upcoming_weekly_duties,
    override_hourly_slot,
)
from policy import build_default_policy  # noqa: E402

POLICY = {"weekly_duty": {"window_weeks": 4}, "on_call": {"window_weeks": 2}}


class EnsureGeneratedTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        with self.SessionLocal() as session:
            people = [Person(display_name=name) for name in ("A", "B", "C")]
            session.add_all(people)
            session.commit()
            self.a, self.b, self.c = (person.id for person in people)
        self.monday = datetime.date(2024, 1, 8)

    def tearDown(self) -> None:
        self.engine.dispose()

    def _snapshot(self):
        with self.SessionLocal() as session:
            return {
                "hourly": [
                    (r.slot_date, r.hour, r.person_id, r.is_pinned, r.original_person_id, r.reason)
                    for r in session.scalars(select(HourlySlot).order_by(HourlySlot.slot_date, HourlySlot.hour))
                ],
                "gate": [
                    (r.assignment_date, r.main_person_id, r.backup_person_id)
                    for r in session.scalars(select(GateAssignment).order_by(GateAssignment.assignment_date))
                ],
                "weekly": [
                    (r.week_start_date, r.person_id, r.is_off_week, r.is_pinned)
                    for r in session.scalars(select(WeeklyDuty).order_by(WeeklyDuty.week_start_date))
                ],
                "on_call": [
                    (r.slot_date, r.person_id)
                    for r in session.scalars(select(OnCallSlot).order_by(OnCallSlot.slot_date))
                ],
            }

    def test_cold_start_monday(self) -> None:
        summary = ensure_generated(self.SessionLocal, "2024-01-08", policy=POLICY, rng=random.Random(42))

        self.assertEqual(summary["attempts"], 1)
        self.assertEqual(summary["roster_size"], 3)
        snapshot = self._snapshot()
        self.assertEqual(snapshot["gate"], [(self.monday, self.a, self.b)])
        self.assertEqual(snapshot["weekly"][0][:2], (self.monday, self.b))
        counts = Counter(row[2] for row in snapshot["hourly"])
        self.assertEqual(len(snapshot["hourly"]), 6)
        self.assertEqual(set(counts), {self.a, self.b, self.c})
        self.assertTrue(all(1 <= count <= 2 for count in counts.values()))
        self.assertEqual(len(snapshot["on_call"]), 14)

    def test_second_call_changes_nothing(self) -> None:
        ensure_generated(self.SessionLocal, self.monday, policy=POLICY, rng=random.Random(1))
        before = self._snapshot()

        summary = ensure_generated(self.SessionLocal, self.monday, policy=POLICY, rng=random.Random(2))

        self.assertEqual(self._snapshot(), before)
        self.assertFalse(summary["gate_created"])
        self.assertEqual(summary["hourly_created"], 0)
        self.assertEqual(summary["weekly_written"], 0)
        self.assertEqual(summary["on_call_written"], 0)

    def test_stored_policy_drives_windows(self) -> None:
        params = build_default_policy()
        params.pop("name")
        params["hourly"]["slots"] = [9, 10]
        params["weekly_duty"]["window_weeks"] = 2
        params["on_call"]["window_weeks"] = 1
        with self.SessionLocal() as session:
            upsert_policy(session, "Short", params, edited_by="tests")

        ensure_generated(self.SessionLocal, self.monday)

        snapshot = self._snapshot()
        self.assertEqual([row[1] for row in snapshot["hourly"]], [9, 10])
        self.assertEqual(len(snapshot["weekly"]), 2)
        self.assertEqual(len(snapshot["on_call"]), 7)

    def test_pinned_hour_survives_new_days(self) -> None:
        ensure_generated(self.SessionLocal, self.monday, policy=POLICY)
        override_hourly_slot(self.SessionLocal, self.monday, 9, self.c, "Training")
        pinned = [row for row in self._snapshot()["hourly"] if row[1] == 9]

        ensure_generated(self.SessionLocal, self.monday, policy=POLICY)
        ensure_generated(self.SessionLocal, self.monday + datetime.timedelta(days=1), policy=POLICY)

        self.assertEqual([row for row in self._snapshot()["hourly"] if row[0] == self.monday and row[1] == 9], pinned)
        self.assertEqual(pinned[0][2:4], (self.c, True))

    def test_override_on_unscheduled_day_creates_pinned_slot(self) -> None:
        day = datetime.date(2024, 2, 1)

        slot = override_hourly_slot(self.SessionLocal, day, 8, self.a, "Cover")

        self.assertTrue(slot["is_pinned"])
        self.assertIsNone(slot["original_person_id"])
        view = get_daily_view(self.SessionLocal, day, policy=POLICY, rng=random.Random(3))
        self.assertEqual(len(view["hourly"]), 1)

    def test_daily_view_payload(self) -> None:
        with self.SessionLocal() as session:
            session.add(Absence(person_id=self.c, absence_date=self.monday))
            session.commit()

        view = get_daily_view(self.SessionLocal, "2024-01-08", policy=POLICY, rng=random.Random(9))

        self.assertEqual(view["date"], self.monday)
        self.assertEqual(view["absences"], [self.c])
        self.assertNotIn(self.c, {row["person_id"] for row in view["hourly"]})
        self.assertEqual(view["gate"]["main_id"], self.a)
        self.assertEqual(view["weeklyDuty"]["person_id"], self.b)
        self.assertEqual(view["weeklyDuty"]["week_number"], 2)
        self.assertIsNone(view["audit"])

    def test_upcoming_duties(self) -> None:
        ensure_generated(self.SessionLocal, self.monday, policy=POLICY)

        rows = list_upcoming_weekly_duties(self.SessionLocal, "2024-01-10", 3, policy=POLICY)

        self.assertEqual([row["person_id"] for row in rows], [self.b, self.c, self.a])
        self.assertTrue(rows[0]["label"].startswith("2024 W02"))
        with self.assertRaises(ValidationError):
            list_upcoming_weekly_duties(self.SessionLocal, "2024-01-10", -1, policy=POLICY)

    def test_malformed_dates_are_rejected(self) -> None:
        for value in ("2024-13-01", "01/08/2024", "", None):
            with self.assertRaises(ValidationError):
                ensure_generated(self.SessionLocal, value, policy=POLICY)
        self.assertEqual(self._snapshot()["gate"], [])

    def test_conflict_is_retried_once(self) -> None:
        real = rota_api._generate_all
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConflictError("UNIQUE constraint failed: gate_assignments.assignment_date")
            return real(*args, **kwargs)

        with mock.patch.object(rota_api, "_generate_all", side_effect=flaky):
            summary = ensure_generated(self.SessionLocal, self.monday, policy=POLICY)

        self.assertEqual(summary["attempts"], 2)
        self.assertEqual(len(self._snapshot()["gate"]), 1)

    def test_repeated_conflict_surfaces_as_storage_error(self) -> None:
        with mock.patch.object(rota_api, "_generate_all", side_effect=ConflictError("busy")):
            with self.assertRaises(StorageError) as ctx:
                ensure_generated(self.SessionLocal, self.monday, policy=POLICY)
        self.assertTrue(ctx.exception.retryable)

    def test_failed_pass_leaves_no_partial_state(self) -> None:
        real = rota_api._generate_all

        def explode(session, *args, **kwargs):
            real(session, *args, **kwargs)
            raise RuntimeError("disk went away")

        with mock.patch.object(rota_api, "_generate_all", side_effect=explode):
            with self.assertRaises(RuntimeError):
                ensure_generated(self.SessionLocal, self.monday, policy=POLICY)

        snapshot = self._snapshot()
        self.assertEqual(snapshot["hourly"], [])
        self.assertEqual(snapshot["weekly"], [])
        self.assertEqual(snapshot["on_call"], [])


if __name__ == "__main__":
    unittest.main()
