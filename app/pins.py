"""Pin tracking for hourly and weekly slots.

A slot is either automatic or pinned. Pinning is a one-way latch: the first
pin records whoever held the slot at that moment, later pins only replace the
occupant and the reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from errors import ValidationError


@dataclass(frozen=True)
class AutoSlot:
    occupant_id: Optional[int]


@dataclass(frozen=True)
class PinnedSlot:
    occupant_id: Optional[int]
    original_occupant_id: Optional[int]
    reason: str


SlotState = Union[AutoSlot, PinnedSlot]


@dataclass(frozen=True)
class Assigned:
    person_id: int


@dataclass(frozen=True)
class Off:
    pass


WeeklyOutcome = Union[Assigned, Off]


def require_reason(reason: Optional[str]) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("A reason is required to pin a slot.", field="reason")
    return cleaned


def slot_state(row) -> SlotState:
    if row.is_pinned:
        return PinnedSlot(row.person_id, row.original_person_id, row.reason or "")
    return AutoSlot(row.person_id)


def weekly_outcome(row) -> Optional[WeeklyOutcome]:
    """Return what a weekly row resolves to, or None when it has no usable occupant."""
    if row.is_off_week:
        return Off()
    if row.person_id is None:
        return None
    return Assigned(row.person_id)


def pin_slot(row, occupant_id: Optional[int], reason: str) -> PinnedSlot:
    """Pin ``row`` to ``occupant_id``; the original occupant is captured on the first pin only."""
    if not row.is_pinned:
        row.original_person_id = row.person_id
        row.is_pinned = True
    row.person_id = occupant_id
    row.reason = reason
    return PinnedSlot(occupant_id, row.original_person_id, reason)
