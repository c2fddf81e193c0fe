from __future__ import annotations

import datetime
import logging
import random
from typing import List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert

from database import HourlySlot, Person

log = logging.getLogger(__name__)


class HourlySlotDistributor:
    """Randomized fair spread of the present roster over the intraday hour slots.

    Each pass shuffles the present roster and walks the free hours in order,
    so nobody repeats until everyone has had a slot. Pinned slots are never
    touched.
    """

    def __init__(self, session, hours: Sequence[int], *, rng: Optional[random.Random] = None) -> None:
        self.session = session
        self.hours: List[int] = sorted(set(int(hour) for hour in hours))
        self.random = rng or random.Random()

    def has_slots(self, slot_date: datetime.date) -> bool:
        stmt = select(HourlySlot.id).where(HourlySlot.slot_date == slot_date).limit(1)
        return self.session.scalars(stmt).first() is not None

    def generate(self, slot_date: datetime.date, present: Sequence[Person]) -> int:
        """Fill a date that has no hourly data yet; a date with any slot is left alone."""
        if self.has_slots(slot_date):
            return 0
        return self._distribute(slot_date, self.hours, present)

    def regenerate_from(self, slot_date: datetime.date, cutoff_hour: int, present: Sequence[Person]) -> int:
        """Drop unpinned slots at or after ``cutoff_hour`` and redistribute those hours."""
        self.session.execute(
            delete(HourlySlot).where(
                HourlySlot.slot_date == slot_date,
                HourlySlot.hour >= cutoff_hour,
                HourlySlot.is_pinned.is_(False),
            )
        )
        pinned = set(
            self.session.scalars(
                select(HourlySlot.hour).where(
                    HourlySlot.slot_date == slot_date,
                    HourlySlot.hour >= cutoff_hour,
                )
            )
        )
        free_hours = [hour for hour in self.hours if hour >= cutoff_hour and hour not in pinned]
        return self._distribute(slot_date, free_hours, present)

    def _distribute(self, slot_date: datetime.date, hours: Sequence[int], present: Sequence[Person]) -> int:
        if not present or not hours:
            return 0
        shuffled = list(present)
        self.random.shuffle(shuffled)
        created = 0
        for index, hour in enumerate(hours):
            person = shuffled[index % len(shuffled)]
            stmt = (
                insert(HourlySlot)
                .values(slot_date=slot_date, hour=hour, person_id=person.id, is_pinned=False)
                .on_conflict_do_nothing(index_elements=["slot_date", "hour"])
            )
            result = self.session.execute(stmt)
            created += result.rowcount or 0
        log.debug("hourly %s: %d slot(s) over %d present", slot_date, created, len(shuffled))
        return created
