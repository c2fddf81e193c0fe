from __future__ import annotations

import datetime
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert

from database import Person, WeeklyDuty, _normalize_week_start
from errors import ValidationError
from pins import Assigned, pin_slot, weekly_outcome
from roster import roster_ids
from rotation import HistoryScanPointer

log = logging.getLogger(__name__)

DEFAULT_WINDOW_WEEKS = 52


def iso_week_number(week_start: datetime.date) -> int:
    return week_start.isocalendar()[1]


class WeeklyDutyRotator:
    """Round-robin weekly duty over the full roster across a rolling window.

    The pointer is the occupant of the last served week before the window.
    Walking the window in order, pinned weeks and already populated weeks
    move the pointer to their occupant (pinned off weeks leave it alone),
    every other week receives the next roster member.
    """

    def __init__(self, session, window_weeks: int = DEFAULT_WINDOW_WEEKS) -> None:
        self.session = session
        self.window_weeks = max(1, int(window_weeks))

    def generate(self, trigger_date: datetime.date, roster: Sequence[Person]) -> int:
        return self._run(_normalize_week_start(trigger_date), roster)

    def _window_rows(self, window_start: datetime.date) -> Dict[datetime.date, WeeklyDuty]:
        window_end = window_start + datetime.timedelta(weeks=self.window_weeks)
        stmt = select(WeeklyDuty).where(
            WeeklyDuty.week_start_date >= window_start,
            WeeklyDuty.week_start_date < window_end,
        )
        return {row.week_start_date: row for row in self.session.scalars(stmt)}

    def _run(self, window_start: datetime.date, roster: Sequence[Person]) -> int:
        ids = roster_ids(roster)
        if not ids:
            return 0
        pointer = HistoryScanPointer(self.session, ids, window_start)
        rows = self._window_rows(window_start)
        written = 0
        for offset in range(self.window_weeks):
            week_start = window_start + datetime.timedelta(weeks=offset)
            row = rows.get(week_start)
            if row is not None:
                outcome = weekly_outcome(row)
                if row.is_pinned:
                    if isinstance(outcome, Assigned):
                        pointer.advance(outcome.person_id)
                    continue
                if isinstance(outcome, Assigned):
                    pointer.advance(outcome.person_id)
                    continue
            next_id = pointer.next_person()
            if self._write_auto(week_start, row, next_id):
                pointer.advance(next_id)
                written += 1
                continue
            # Another writer materialized the week first; follow what it stored.
            outcome = self._stored_outcome(week_start)
            if isinstance(outcome, Assigned):
                pointer.advance(outcome.person_id)
        log.debug("weekly duty from %s: %d week(s) written", window_start, written)
        return written

    def _stored_outcome(self, week_start: datetime.date):
        existing = self.session.scalars(
            select(WeeklyDuty).where(WeeklyDuty.week_start_date == week_start)
        ).first()
        return weekly_outcome(existing) if existing is not None else None

    def _write_auto(self, week_start: datetime.date, row: Optional[WeeklyDuty], person_id: Optional[int]) -> bool:
        """Store an automatic assignment; False when the insert lost to an existing row."""
        if row is not None:
            row.person_id = person_id
            row.is_off_week = False
            row.original_person_id = None
            row.reason = None
            row.week_number = iso_week_number(week_start)
            return True
        stmt = (
            insert(WeeklyDuty)
            .values(
                week_start_date=week_start,
                week_number=iso_week_number(week_start),
                person_id=person_id,
                is_off_week=False,
                is_pinned=False,
            )
            .on_conflict_do_nothing(index_elements=["week_start_date"])
        )
        return bool(self.session.execute(stmt).rowcount)

    def override(
        self,
        week_start: datetime.date,
        person_id: Optional[int],
        is_off_week: bool,
        reason: str,
        roster: Sequence[Person],
    ) -> WeeklyDuty:
        """Pin one week to a person or to off; re-shift downstream weeks when off status flips."""
        week_start = _normalize_week_start(week_start)
        row = self.session.scalars(select(WeeklyDuty).where(WeeklyDuty.week_start_date == week_start)).first()
        was_off = bool(row.is_off_week) if row is not None else False
        if row is None:
            row = WeeklyDuty(
                week_start_date=week_start,
                week_number=iso_week_number(week_start),
                person_id=None,
                is_off_week=False,
                is_pinned=False,
            )
            self.session.add(row)
        pin_slot(row, None if is_off_week else person_id, reason)
        row.is_off_week = bool(is_off_week)
        row.week_number = iso_week_number(week_start)
        self.session.flush()
        if was_off != bool(is_off_week):
            removed = self.session.execute(
                delete(WeeklyDuty).where(
                    WeeklyDuty.week_start_date > week_start,
                    WeeklyDuty.is_pinned.is_(False),
                )
            ).rowcount
            self.session.expire_all()
            written = self._run(week_start, roster)
            log.info(
                "weekly duty %s off-week %s -> %s: re-shifted (%s removed, %d written)",
                week_start,
                was_off,
                bool(is_off_week),
                removed,
                written,
            )
        return row

    def postpone(self, week_start: datetime.date) -> List[WeeklyDuty]:
        """Move the head of the upcoming unpinned queue to its back, shifting everyone else up a week."""
        week_start = _normalize_week_start(week_start)
        stmt = (
            select(WeeklyDuty)
            .where(
                WeeklyDuty.week_start_date >= week_start,
                WeeklyDuty.is_pinned.is_(False),
                WeeklyDuty.is_off_week.is_(False),
                WeeklyDuty.person_id.is_not(None),
            )
            .order_by(WeeklyDuty.week_start_date.asc())
        )
        rows = list(self.session.scalars(stmt))
        if len(rows) < 2:
            raise ValidationError("Not enough future duties to postpone.", field="week_start_date")
        occupants = [row.person_id for row in rows]
        for row, person_id in zip(rows, occupants[1:] + occupants[:1]):
            row.person_id = person_id
        self.session.flush()
        log.info("weekly duty postponed person %s from %s", occupants[0], rows[0].week_start_date)
        return rows
