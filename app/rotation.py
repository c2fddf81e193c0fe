"""Round-robin rotation pointers.

Both rotations keep "who was assigned last" and hand out the next roster
member after it. Weekly duty derives that person from stored history; the
on-call rota keeps it in a persisted cursor row. Only a generation pass that
holds the session's transaction may advance either one.
"""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from sqlalchemy import select

from database import RotationCursor, WeeklyDuty


def next_in_rotation(roster_ids: Sequence[int], pointer: Optional[int]) -> Optional[int]:
    """Return the roster member after ``pointer``; an unknown pointer restarts at the top."""
    if not roster_ids:
        return None
    try:
        index = list(roster_ids).index(pointer)
    except ValueError:
        index = -1
    return roster_ids[(index + 1) % len(roster_ids)]


class RotationPointer(ABC):
    def __init__(self, roster_ids: Sequence[int]) -> None:
        self.roster_ids: List[int] = list(roster_ids)
        self._current: Optional[int] = None

    @abstractmethod
    def _bootstrap(self) -> Optional[int]:
        """Pointer value to use when no history exists."""

    def peek(self) -> Optional[int]:
        return self._current

    def advance(self, person_id: Optional[int]) -> None:
        self._current = person_id

    def next_person(self) -> Optional[int]:
        return next_in_rotation(self.roster_ids, self._current)


class HistoryScanPointer(RotationPointer):
    """Weekly duty pointer derived from the last served week before ``window_start``.

    Off weeks and empty rows are skipped. With no history the pointer sits on
    the first roster member, so the first computed week goes to the second.
    """

    def __init__(self, session, roster_ids: Sequence[int], window_start: datetime.date) -> None:
        super().__init__(roster_ids)
        self.session = session
        self.window_start = window_start
        self._current = self._load()

    def _load(self) -> Optional[int]:
        stmt = (
            select(WeeklyDuty.person_id)
            .where(
                WeeklyDuty.week_start_date < self.window_start,
                WeeklyDuty.is_off_week.is_(False),
                WeeklyDuty.person_id.is_not(None),
            )
            .order_by(WeeklyDuty.week_start_date.desc())
            .limit(1)
        )
        found = self.session.scalars(stmt).first()
        if found is not None:
            return found
        return self._bootstrap()

    def _bootstrap(self) -> Optional[int]:
        return self.roster_ids[0] if self.roster_ids else None


class PersistedCursorPointer(RotationPointer):
    """Pointer stored in a single ``rotation_cursor`` row per stream.

    With no row the pointer starts on the last roster member, so the first
    computed slot goes to the first member. ``persist`` writes the final value
    back so the next pass continues instead of restarting.
    """

    def __init__(self, session, roster_ids: Sequence[int], stream: str) -> None:
        super().__init__(roster_ids)
        self.session = session
        self.stream = stream
        self._row: Optional[RotationCursor] = session.scalars(
            select(RotationCursor).where(RotationCursor.stream == stream)
        ).first()
        if self._row is not None and self._row.last_person_id is not None:
            self._current = self._row.last_person_id
        else:
            self._current = self._bootstrap()

    def _bootstrap(self) -> Optional[int]:
        return self.roster_ids[-1] if self.roster_ids else None

    def persist(self) -> RotationCursor:
        if self._row is None:
            self._row = RotationCursor(stream=self.stream, last_person_id=self._current)
            self.session.add(self._row)
        else:
            self._row.last_person_id = self._current
        self.session.flush()
        return self._row
