from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import ON_CALL_STREAM, Absence, Base, OnCallSlot, Person, RotationCursor  # noqa: E402
from generator.api import get_on_call_week  # noqa: E402
from generator.oncall import OnCallRotaGenerator  # noqa: E402
from roster import get_full_roster  # noqa: E402

MONDAY = datetime.date(2024, 1, 8)


class OnCallRotaTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.session = self.SessionLocal()
        self.people = [Person(display_name=name) for name in ("Avery", "Blake", "Casey")]
        self.session.add_all(self.people)
        self.session.commit()
        self.a, self.b, self.c = (person.id for person in self.people)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _generate(self, trigger: datetime.date, weeks: int = 1, days=None) -> int:
        generator = OnCallRotaGenerator(self.session, weeks, days) if days else OnCallRotaGenerator(self.session, weeks)
        written = generator.generate(trigger, get_full_roster(self.session))
        self.session.commit()
        return written

    def _week(self, week_start: datetime.date):
        stmt = (
            select(OnCallSlot.weekday, OnCallSlot.person_id)
            .where(OnCallSlot.week_start_date == week_start)
            .order_by(OnCallSlot.slot_date)
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt)]

    def _cursor(self):
        return self.session.scalars(
            select(RotationCursor.last_person_id).where(RotationCursor.stream == ON_CALL_STREAM)
        ).first()

    def test_cold_start_begins_with_first_member(self) -> None:
        written = self._generate(MONDAY + datetime.timedelta(days=3))

        self.assertEqual(written, 7)
        self.assertEqual(
            self._week(MONDAY),
            [
                ("mon", self.a),
                ("tue", self.b),
                ("wed", self.c),
                ("thu", self.a),
                ("fri", self.b),
                ("sat", self.c),
                ("sun", self.a),
            ],
        )
        self.assertEqual(self._cursor(), self.a)

    def test_next_week_continues_from_cursor(self) -> None:
        self._generate(MONDAY)
        self._generate(MONDAY + datetime.timedelta(weeks=1))

        next_week = self._week(MONDAY + datetime.timedelta(weeks=1))
        self.assertEqual([person for _, person in next_week[:3]], [self.b, self.c, self.a])
        self.assertEqual(self._cursor(), self.b)

    def test_regeneration_is_idempotent(self) -> None:
        self._generate(MONDAY, weeks=2)
        before = self._week(MONDAY) + self._week(MONDAY + datetime.timedelta(weeks=1))
        cursor = self._cursor()

        written = self._generate(MONDAY, weeks=2)

        self.assertEqual(written, 0)
        self.assertEqual(self._week(MONDAY) + self._week(MONDAY + datetime.timedelta(weeks=1)), before)
        self.assertEqual(self._cursor(), cursor)

    def test_earlier_window_does_not_rewind_cursor(self) -> None:
        self._generate(MONDAY, weeks=2)
        cursor = self._cursor()

        self._generate(MONDAY, weeks=1)

        self.assertEqual(self._cursor(), cursor)

    def test_absent_people_still_hold_on_call(self) -> None:
        self.session.add(Absence(person_id=self.a, absence_date=MONDAY))
        self.session.commit()

        self._generate(MONDAY)

        self.assertEqual(self._week(MONDAY)[0], ("mon", self.a))

    def test_configured_days_only(self) -> None:
        self._generate(MONDAY, days=["sat", "sun"])

        self.assertEqual(self._week(MONDAY), [("sat", self.a), ("sun", self.b)])

    def test_week_view_lists_seven_dated_days(self) -> None:
        payload = get_on_call_week(
            self.SessionLocal,
            "2024-01-10",
            policy={"weekly_duty": {"window_weeks": 1}, "on_call": {"window_weeks": 1}},
        )

        self.assertEqual(payload["week_start"], MONDAY)
        self.assertEqual([row["day"] for row in payload["data"]], ["mon", "tue", "wed", "thu", "fri", "sat", "sun"])
        self.assertEqual(payload["data"][6]["date"], MONDAY + datetime.timedelta(days=6))
        self.assertEqual(payload["data"][0]["name"], "Avery")

    def test_slot_stored_by_another_writer_is_adopted(self) -> None:
        self.session.add(
            OnCallSlot(week_start_date=MONDAY, weekday="tue", slot_date=MONDAY + datetime.timedelta(days=1), person_id=self.c)
        )
        self.session.commit()

        with mock.patch.object(OnCallRotaGenerator, "_existing", return_value={}):
            written = self._generate(MONDAY)

        self.assertEqual(written, 6)
        self.assertEqual(
            [person_id for _, person_id in self._week(MONDAY)],
            [self.a, self.c, self.a, self.b, self.c, self.a, self.b],
        )
        self.assertEqual(self._cursor(), self.b)


if __name__ == "__main__":
    unittest.main()
