"""Roster snapshots consumed by every rotator.

The full roster is ordered by ascending id and that order *is* the rotation
order. Changing it changes every future assignment.
"""

from __future__ import annotations

import datetime
from typing import List, Optional, Sequence, Set

from sqlalchemy import select

from database import Absence, Person


def get_full_roster(session) -> List[Person]:
    return list(session.scalars(select(Person).order_by(Person.id.asc())))


def absent_person_ids(session, on_date: datetime.date) -> Set[int]:
    stmt = select(Absence.person_id).where(Absence.absence_date == on_date)
    return set(session.scalars(stmt))


def get_present_roster(session, on_date: datetime.date) -> List[Person]:
    """Full roster minus the people absent on ``on_date``, same relative order."""
    absent = absent_person_ids(session, on_date)
    return [person for person in get_full_roster(session) if person.id not in absent]


def roster_ids(people: Sequence[Person]) -> List[int]:
    return [person.id for person in people]


def find_person(session, person_id: Optional[int]) -> Optional[Person]:
    if person_id is None:
        return None
    return session.get(Person, person_id)
