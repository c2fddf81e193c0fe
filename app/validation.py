from __future__ import annotations

import datetime
from collections import Counter
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from database import GateAssignment, HourlySlot, OnCallSlot, WeeklyDuty, _normalize_week_start
from policy import on_call_days
from roster import get_full_roster, get_present_roster


def validate_rota_state(session, on_date: datetime.date, *, policy: Optional[Dict] = None) -> Dict[str, Any]:
    """Return findings about the stored rota around ``on_date``."""
    week_start = _normalize_week_start(on_date)
    roster = get_full_roster(session)
    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []

    hourly = list(session.scalars(select(HourlySlot).where(HourlySlot.slot_date == on_date)))
    issues.extend(_pin_latch_issues(hourly, "hourly"))
    warnings.extend(_hourly_spread_warnings(hourly))

    window_end = week_start + datetime.timedelta(weeks=max(1, len(roster)))
    weekly = list(
        session.scalars(
            select(WeeklyDuty)
            .where(WeeklyDuty.week_start_date >= week_start, WeeklyDuty.week_start_date < window_end)
            .order_by(WeeklyDuty.week_start_date.asc())
        )
    )
    issues.extend(_pin_latch_issues(weekly, "weekly_duty"))
    issues.extend(_off_week_issues(weekly))
    warnings.extend(_weekly_repeat_warnings(weekly, len(roster)))

    gate_issues = _gate_continuity_issues(session, on_date)
    issues.extend(gate_issues)

    on_call_issues = _on_call_gap_issues(session, week_start, on_call_days(policy or {}))
    issues.extend(on_call_issues)

    checks = [
        _check("Pinned slots keep their original occupant?", not any(i["type"] == "pin_latch" for i in issues)),
        _check("Off weeks are pinned and empty?", not any(i["type"] == "off_week" for i in issues)),
        _check("Gate backup steps up to main?", not gate_issues),
        _check("On-call week fully staffed?", not on_call_issues),
        _check(
            "Weekly duty covers the roster without repeats?",
            not any(w["type"] == "weekly_repeat" for w in warnings),
            warn_only=True,
        ),
    ]
    return {
        "date": on_date.isoformat(),
        "week_start": week_start.isoformat(),
        "checks": checks,
        "issues": issues,
        "warnings": warnings,
    }


def _check(label: str, passed: bool, *, warn_only: bool = False) -> Dict[str, str]:
    if passed:
        status = "pass"
    else:
        status = "warn" if warn_only else "fail"
    return {"label": label, "status": status}


def _slot_label(row, table: str) -> str:
    if table == "hourly":
        return f"{row.slot_date.isoformat()} {row.hour:02d}:00"
    return row.week_start_date.isoformat()


def _pin_latch_issues(rows, table: str) -> List[Dict[str, Any]]:
    found = []
    for row in rows:
        if row.is_pinned:
            continue
        if row.original_person_id is not None or row.reason:
            found.append(
                {
                    "type": "pin_latch",
                    "severity": "error",
                    "table": table,
                    "slot": _slot_label(row, table),
                    "message": "Automatic slot carries pin metadata.",
                }
            )
    return found


def _off_week_issues(rows: List[WeeklyDuty]) -> List[Dict[str, Any]]:
    found = []
    for row in rows:
        if not row.is_off_week:
            continue
        if row.person_id is not None:
            found.append(
                {
                    "type": "off_week",
                    "severity": "error",
                    "slot": row.week_start_date.isoformat(),
                    "message": "Off week still names an occupant.",
                }
            )
        if not row.is_pinned:
            found.append(
                {
                    "type": "off_week",
                    "severity": "error",
                    "slot": row.week_start_date.isoformat(),
                    "message": "Off week was not set by an override.",
                }
            )
    return found


def _hourly_spread_warnings(rows: List[HourlySlot]) -> List[Dict[str, Any]]:
    counts = Counter(row.person_id for row in rows if not row.is_pinned)
    if len(counts) < 2:
        return []
    if max(counts.values()) - min(counts.values()) <= 1:
        return []
    return [
        {
            "type": "hourly_spread",
            "severity": "warning",
            "message": f"Automatic hourly slots are uneven: {dict(sorted(counts.items()))}.",
        }
    ]


def _weekly_repeat_warnings(rows: List[WeeklyDuty], roster_size: int) -> List[Dict[str, Any]]:
    served = [row.person_id for row in rows if not row.is_pinned and not row.is_off_week and row.person_id is not None]
    repeats = sorted(person for person, seen in Counter(served[:roster_size]).items() if seen > 1)
    if not repeats:
        return []
    return [
        {
            "type": "weekly_repeat",
            "severity": "warning",
            "people": repeats,
            "message": "Some people serve weekly duty twice before everyone has served once.",
        }
    ]


def _gate_continuity_issues(session, on_date: datetime.date) -> List[Dict[str, Any]]:
    today = session.scalars(select(GateAssignment).where(GateAssignment.assignment_date == on_date)).first()
    yesterday = session.scalars(
        select(GateAssignment).where(GateAssignment.assignment_date == on_date - datetime.timedelta(days=1))
    ).first()
    if today is None or yesterday is None or yesterday.backup_person_id is None:
        return []
    present_ids = {person.id for person in get_present_roster(session, on_date)}
    if yesterday.backup_person_id not in present_ids or today.main_person_id == yesterday.backup_person_id:
        return []
    return [
        {
            "type": "gate_continuity",
            "severity": "error",
            "message": (
                f"Backup {yesterday.backup_person_id} on {yesterday.assignment_date.isoformat()} is present "
                f"but main on {on_date.isoformat()} is {today.main_person_id}."
            ),
        }
    ]


def _on_call_gap_issues(session, week_start: datetime.date, days: List[str]) -> List[Dict[str, Any]]:
    stored = set(session.scalars(select(OnCallSlot.weekday).where(OnCallSlot.week_start_date == week_start)))
    if not stored:
        return []
    missing = [day for day in days if day not in stored]
    if not missing:
        return []
    return [
        {
            "type": "on_call_gap",
            "severity": "error",
            "week_start": week_start.isoformat(),
            "missing": missing,
            "message": f"On-call week is missing {', '.join(missing)}.",
        }
    ]
