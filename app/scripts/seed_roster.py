from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Dict, List

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import Absence, Person, SessionLocal, _normalize_week_start, init_database  # noqa: E402
from policy import WEEKDAY_TOKENS, ensure_default_policy  # noqa: E402


# Insertion order becomes id order, which is the rotation order.
SAMPLE_PEOPLE: List[Dict] = [
    {"name": "Avery Brooks", "absent": ["fri"]},
    {"name": "Blake Moreno", "absent": []},
    {"name": "Casey Nguyen", "absent": ["mon", "tue"]},
    {"name": "Devon Patel", "absent": []},
    {"name": "Emery Walsh", "absent": ["wed"]},
    {"name": "Finley Ortiz", "absent": []},
]


def add_absences(session, person: Person, days: List[str], week_start: datetime.date) -> int:
    added = 0
    for token in days:
        absence_date = week_start + datetime.timedelta(days=WEEKDAY_TOKENS.index(token))
        stmt = select(Absence).where(Absence.person_id == person.id, Absence.absence_date == absence_date)
        if session.scalars(stmt).first():
            continue
        session.add(Absence(person_id=person.id, absence_date=absence_date))
        added += 1
    return added


def seed_roster(week_start: datetime.date) -> None:
    init_database()
    ensure_default_policy(SessionLocal)
    created = 0
    absences = 0
    with SessionLocal() as session:
        for entry in SAMPLE_PEOPLE:
            person = session.scalars(select(Person).where(Person.display_name == entry["name"])).first()
            if not person:
                person = Person(display_name=entry["name"])
                session.add(person)
                session.flush()
                created += 1
            absences += add_absences(session, person, entry.get("absent", []), week_start)
        session.commit()
    print(f"[seed] Seed complete. Created {created} people, recorded {absences} absences for week of {week_start}.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Populate the roster with sample people and a week of absences.")
    parser.add_argument(
        "--week-start",
        help="ISO date inside the week that receives the sample absences. Defaults to this week.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.week_start:
        try:
            target = datetime.date.fromisoformat(args.week_start)
        except ValueError as exc:
            raise SystemExit(f"Invalid --week-start value: {exc}") from exc
    else:
        target = datetime.date.today()
    seed_roster(_normalize_week_start(target))


if __name__ == "__main__":
    main()
