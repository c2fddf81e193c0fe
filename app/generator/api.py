from __future__ import annotations

import datetime
import logging
import random
import re
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .gate import GateDutyAssigner
from .hourly import HourlySlotDistributor
from .oncall import OnCallRotaGenerator
from .weekly import WeeklyDutyRotator
from database import (
    SHUFFLE_ACTION,
    HourlySlot,
    _normalize_week_start,
    describe_weekly_duties,
    get_gate_for_date,
    get_hourly_for_date,
    get_latest_shuffle_audit,
    get_on_call_for_week,
    get_weekly_duty,
    list_weekly_duties_from,
    record_audit_log,
)
from errors import ConflictError, StorageError, UnknownPersonError, ValidationError
from pins import pin_slot, require_reason
from policy import (
    hourly_slots,
    load_active_policy,
    on_call_days,
    on_call_window_weeks,
    upcoming_default_count,
    weekly_window_weeks,
)
from roster import absent_person_ids, find_person, get_full_roster, get_present_roster

log = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
GENERATION_ATTEMPTS = 2


def coerce_date(value: Any, field: str = "date") -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str) and DATE_PATTERN.match(value.strip()):
        try:
            return datetime.date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a valid YYYY-MM-DD date.", field=field)


def _coerce_hour(value: Any, field: str = "hour") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an hour between 0 and 23.", field=field)
    try:
        hour = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an hour between 0 and 23.", field=field) from None
    if not 0 <= hour <= 23:
        raise ValidationError(f"{field} must be an hour between 0 and 23.", field=field)
    return hour


def _coerce_person_id(value: Any) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError("person_id is required.", field="person_id")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("person_id must be an integer.", field="person_id") from None


def _require_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required.", field=field)
    return cleaned


@contextmanager
def transaction(session_factory: Callable) -> Iterator[Any]:
    """One session, one commit. Any failure rolls everything back."""
    with session_factory() as session:
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning("transaction rolled back: %s", exc)
            raise StorageError(f"Datastore failure: {exc}") from exc
        except Exception:
            session.rollback()
            raise


def _policy_for(session, policy: Optional[Dict]) -> Dict:
    return policy if policy is not None else load_active_policy(session)


def _generate_all(session, on_date: datetime.date, policy: Dict, rng: Optional[random.Random]) -> Dict[str, Any]:
    full_roster = get_full_roster(session)
    present = get_present_roster(session, on_date)
    gate_created = GateDutyAssigner(session).generate(on_date, present)
    hourly_created = HourlySlotDistributor(session, hourly_slots(policy), rng=rng).generate(on_date, present)
    weekly_written = WeeklyDutyRotator(session, weekly_window_weeks(policy)).generate(on_date, full_roster)
    on_call_written = OnCallRotaGenerator(
        session,
        on_call_window_weeks(policy),
        on_call_days(policy),
    ).generate(on_date, full_roster)
    return {
        "date": on_date,
        "roster_size": len(full_roster),
        "present_size": len(present),
        "gate_created": gate_created,
        "hourly_created": hourly_created,
        "weekly_written": weekly_written,
        "on_call_written": on_call_written,
    }


def ensure_generated(
    session_factory: Callable,
    on_date: Any,
    *,
    policy: Optional[Dict] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """Materialize or repair every slot covering ``on_date``; safe to call repeatedly."""
    target = coerce_date(on_date)
    last_error: Exception | None = None
    for attempt in range(1, GENERATION_ATTEMPTS + 1):
        try:
            with transaction(session_factory) as session:
                summary = _generate_all(session, target, _policy_for(session, policy), rng)
        except ConflictError as exc:
            # A concurrent pass got there first; the re-run adopts what it wrote.
            log.info("generation for %s hit an existing slot (attempt %d); re-running", target, attempt)
            last_error = exc
            continue
        summary["attempts"] = attempt
        return summary
    raise StorageError(f"Generation for {target.isoformat()} kept conflicting.") from last_error


def reshuffle(
    session_factory: Callable,
    on_date: Any,
    cutoff_hour: Any,
    actor: Optional[str],
    reason: Optional[str],
    *,
    policy: Optional[Dict] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """Redistribute unpinned hourly slots from ``cutoff_hour`` on and record who asked."""
    target = coerce_date(on_date)
    cutoff = _coerce_hour(0 if cutoff_hour in (None, "") else cutoff_hour, field="hour")
    actor_name = _require_text(actor, "user_name")
    why = _require_text(reason, "reason")
    with transaction(session_factory) as session:
        cfg = _policy_for(session, policy)
        present = get_present_roster(session, target)
        distributor = HourlySlotDistributor(session, hourly_slots(cfg), rng=rng)
        # An ungenerated day gets its full set first so hours before the cutoff are not left empty.
        distributor.generate(target, present)
        created = distributor.regenerate_from(target, cutoff, present)
        record_audit_log(
            session,
            actor_name,
            SHUFFLE_ACTION,
            action_date=target,
            reason=why,
            payload={"from_hour": cutoff, "slots_created": created, "present": len(present)},
        )
        log.info("reshuffle %s from %02d:00 by %s: %d slot(s)", target, cutoff, actor_name, created)
        return {
            "hourly": get_hourly_for_date(session, target),
            "audit": get_latest_shuffle_audit(session, target),
        }


def override_hourly_slot(
    session_factory: Callable,
    on_date: Any,
    hour: Any,
    person_id: Any,
    reason: Optional[str],
    *,
    policy: Optional[Dict] = None,
) -> Dict[str, Any]:
    target = coerce_date(on_date)
    slot_hour = _coerce_hour(hour)
    occupant = _coerce_person_id(person_id)
    why = require_reason(reason)
    with transaction(session_factory) as session:
        if slot_hour not in hourly_slots(_policy_for(session, policy)):
            raise ValidationError(f"{slot_hour}:00 is not a scheduled hour.", field="hour")
        if find_person(session, occupant) is None:
            raise UnknownPersonError(occupant)
        row = session.scalars(
            select(HourlySlot).where(HourlySlot.slot_date == target, HourlySlot.hour == slot_hour)
        ).first()
        if row is None:
            row = HourlySlot(slot_date=target, hour=slot_hour, person_id=None, is_pinned=False)
            session.add(row)
        pinned = pin_slot(row, occupant, why)
        session.flush()
        log.info("hourly %s %02d:00 pinned to %s (original %s)", target, slot_hour, occupant, pinned.original_occupant_id)
        return next(item for item in get_hourly_for_date(session, target) if item["hour"] == slot_hour)


def override_weekly_duty(
    session_factory: Callable,
    week_start: Any,
    person_id: Any,
    is_off_week: bool,
    reason: Optional[str],
    *,
    policy: Optional[Dict] = None,
) -> Dict[str, Any]:
    target = _normalize_week_start(coerce_date(week_start, field="week_start_date"))
    off = bool(is_off_week)
    occupant = None if off else _coerce_person_id(person_id)
    why = require_reason(reason)
    with transaction(session_factory) as session:
        if occupant is not None and find_person(session, occupant) is None:
            raise UnknownPersonError(occupant)
        rotator = WeeklyDutyRotator(session, weekly_window_weeks(_policy_for(session, policy)))
        rotator.override(target, occupant, off, why, get_full_roster(session))
        session.flush()
        return get_weekly_duty(session, target)


def postpone_weekly_duty(session_factory: Callable, week_start: Any) -> List[Dict[str, Any]]:
    target = _normalize_week_start(coerce_date(week_start, field="week_start_date"))
    with transaction(session_factory) as session:
        rows = WeeklyDutyRotator(session).postpone(target)
        return describe_weekly_duties(session, rows)


def get_daily_view(
    session_factory: Callable,
    on_date: Any,
    *,
    policy: Optional[Dict] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    target = coerce_date(on_date)
    ensure_generated(session_factory, target, policy=policy, rng=rng)
    with session_factory() as session:
        return {
            "date": target,
            "hourly": get_hourly_for_date(session, target),
            "gate": get_gate_for_date(session, target),
            "weeklyDuty": get_weekly_duty(session, target),
            "audit": get_latest_shuffle_audit(session, target),
            "absences": sorted(absent_person_ids(session, target)),
        }


def get_on_call_week(
    session_factory: Callable,
    on_date: Any,
    *,
    policy: Optional[Dict] = None,
) -> Dict[str, Any]:
    target = coerce_date(on_date)
    ensure_generated(session_factory, target, policy=policy)
    week_start = _normalize_week_start(target)
    with session_factory() as session:
        return {"week_start": week_start, "data": get_on_call_for_week(session, week_start)}


def list_upcoming_weekly_duties(
    session_factory: Callable,
    start: Any = None,
    count: Any = None,
    *,
    policy: Optional[Dict] = None,
) -> List[Dict[str, Any]]:
    first = datetime.date.today() if start is None else coerce_date(start, field="start")
    with session_factory() as session:
        if count is None:
            limit = upcoming_default_count(_policy_for(session, policy))
        else:
            try:
                limit = int(count)
            except (TypeError, ValueError):
                raise ValidationError("count must be an integer.", field="count") from None
            if limit < 0:
                raise ValidationError("count must not be negative.", field="count")
        return list_weekly_duties_from(session, first, limit)
