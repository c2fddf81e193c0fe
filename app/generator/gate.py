from __future__ import annotations

import datetime
import logging
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from database import GateAssignment, Person

log = logging.getLogger(__name__)


class GateDutyAssigner:
    """Day-over-day main/backup rotation over the present roster.

    Yesterday's backup steps up to main when present; otherwise the person
    after yesterday's main takes over, falling back to the top of today's
    list. The backup is whoever follows the main in today's order.
    """

    def __init__(self, session) -> None:
        self.session = session

    def _record_for(self, assignment_date: datetime.date) -> Optional[GateAssignment]:
        stmt = select(GateAssignment).where(GateAssignment.assignment_date == assignment_date)
        return self.session.scalars(stmt).first()

    @staticmethod
    def choose(previous: Optional[GateAssignment], present: Sequence[Person]) -> tuple[Optional[int], Optional[int]]:
        ids = [person.id for person in present]
        if not ids:
            return None, None
        main_id: Optional[int] = None
        if previous is not None:
            if previous.backup_person_id is not None and previous.backup_person_id in ids:
                main_id = previous.backup_person_id
            elif previous.main_person_id in ids:
                main_id = ids[(ids.index(previous.main_person_id) + 1) % len(ids)]
        if main_id is None:
            main_id = ids[0]
        backup_id = None
        if len(ids) > 1:
            backup_id = ids[(ids.index(main_id) + 1) % len(ids)]
        return main_id, backup_id

    def generate(self, assignment_date: datetime.date, present: Sequence[Person]) -> bool:
        """Compute the pair for ``assignment_date`` once; returns True when a row was written."""
        if self._record_for(assignment_date) is not None:
            return False
        previous = self._record_for(assignment_date - datetime.timedelta(days=1))
        main_id, backup_id = self.choose(previous, present)
        if main_id is None:
            return False
        stmt = (
            insert(GateAssignment)
            .values(assignment_date=assignment_date, main_person_id=main_id, backup_person_id=backup_id)
            .on_conflict_do_nothing(index_elements=["assignment_date"])
        )
        created = bool(self.session.execute(stmt).rowcount)
        log.debug("gate %s: main=%s backup=%s", assignment_date, main_id, backup_id)
        return created
