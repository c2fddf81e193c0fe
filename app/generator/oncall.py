from __future__ import annotations

import datetime
import logging
from typing import Dict, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from database import ON_CALL_STREAM, OnCallSlot, Person, _normalize_week_start
from policy import WEEKDAY_TOKENS
from roster import roster_ids
from rotation import PersistedCursorPointer

log = logging.getLogger(__name__)

DEFAULT_WINDOW_WEEKS = 52


class OnCallRotaGenerator:
    """Seven-slots-per-week round robin continuing a single persisted cursor."""

    def __init__(
        self,
        session,
        window_weeks: int = DEFAULT_WINDOW_WEEKS,
        days: Sequence[str] = WEEKDAY_TOKENS,
    ) -> None:
        self.session = session
        self.window_weeks = max(1, int(window_weeks))
        self.days = [day for day in WEEKDAY_TOKENS if day in set(days)] or list(WEEKDAY_TOKENS)

    def _existing(self, window_start: datetime.date) -> Dict[Tuple[datetime.date, str], int]:
        window_end = window_start + datetime.timedelta(weeks=self.window_weeks)
        stmt = select(OnCallSlot.week_start_date, OnCallSlot.weekday, OnCallSlot.person_id).where(
            OnCallSlot.week_start_date >= window_start,
            OnCallSlot.week_start_date < window_end,
        )
        return {(row[0], row[1]): row[2] for row in self.session.execute(stmt)}

    def generate(self, trigger_date: datetime.date, roster: Sequence[Person]) -> int:
        ids = roster_ids(roster)
        if not ids:
            return 0
        window_start = _normalize_week_start(trigger_date)
        pointer = PersistedCursorPointer(self.session, ids, ON_CALL_STREAM)
        existing = self._existing(window_start)
        written = 0
        for offset in range(self.window_weeks):
            week_start = window_start + datetime.timedelta(weeks=offset)
            for day in self.days:
                occupant = existing.get((week_start, day))
                if occupant is not None:
                    pointer.advance(occupant)
                    continue
                next_id = pointer.next_person()
                stmt = (
                    insert(OnCallSlot)
                    .values(
                        week_start_date=week_start,
                        weekday=day,
                        slot_date=week_start + datetime.timedelta(days=WEEKDAY_TOKENS.index(day)),
                        person_id=next_id,
                    )
                    .on_conflict_do_nothing(index_elements=["week_start_date", "weekday"])
                )
                if self.session.execute(stmt).rowcount:
                    written += 1
                else:
                    next_id = self.session.scalars(
                        select(OnCallSlot.person_id).where(
                            OnCallSlot.week_start_date == week_start,
                            OnCallSlot.weekday == day,
                        )
                    ).first()
                pointer.advance(next_id)
        # The cursor tracks the latest stored slot; a pass over an earlier window must not rewind it.
        window_end = window_start + datetime.timedelta(weeks=self.window_weeks)
        later = self.session.scalars(
            select(OnCallSlot.id).where(OnCallSlot.week_start_date >= window_end).limit(1)
        ).first()
        if later is None:
            pointer.persist()
        log.debug("on-call from %s: %d slot(s) written, cursor=%s", window_start, written, pointer.peek())
        return written
