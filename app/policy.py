from __future__ import annotations

import copy
from typing import Any, Dict, List

from database import get_active_policy, upsert_policy


WEEKDAY_TOKENS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Baseline Rota",
    "hourly": {
        "slots": [8, 9, 10, 11, 12, 13],
    },
    "weekly_duty": {
        "window_weeks": 52,
    },
    "on_call": {
        "window_weeks": 52,
        "days": list(WEEKDAY_TOKENS),
    },
    "upcoming": {
        "default_count": 12,
    },
}


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _normalize_policy(policy: Dict) -> Dict:
    """Merge stored params over the baseline and repair values the engine cannot use."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(BASELINE_POLICY, policy)
    baseline_hours = BASELINE_POLICY["hourly"]["slots"]
    raw_hours = normalized["hourly"].get("slots")
    hours: List[int] = []
    if isinstance(raw_hours, list):
        for value in raw_hours:
            try:
                hour = int(value)
            except (TypeError, ValueError):
                continue
            if 0 <= hour <= 23:
                hours.append(hour)
    normalized["hourly"]["slots"] = sorted(set(hours)) or list(baseline_hours)
    normalized["weekly_duty"]["window_weeks"] = _positive_int(
        normalized["weekly_duty"].get("window_weeks"), BASELINE_POLICY["weekly_duty"]["window_weeks"]
    )
    normalized["on_call"]["window_weeks"] = _positive_int(
        normalized["on_call"].get("window_weeks"), BASELINE_POLICY["on_call"]["window_weeks"]
    )
    raw_days = normalized["on_call"].get("days")
    days = []
    if isinstance(raw_days, list):
        wanted = {str(day).strip().lower()[:3] for day in raw_days}
        # Keep chronological order regardless of how the list was stored.
        days = [token for token in WEEKDAY_TOKENS if token in wanted]
    normalized["on_call"]["days"] = days or list(WEEKDAY_TOKENS)
    normalized["upcoming"]["default_count"] = _positive_int(
        normalized["upcoming"].get("default_count"), BASELINE_POLICY["upcoming"]["default_count"]
    )
    return normalized


def hourly_slots(policy: Dict) -> List[int]:
    return list(_normalize_policy(policy)["hourly"]["slots"])


def weekly_window_weeks(policy: Dict) -> int:
    return _normalize_policy(policy)["weekly_duty"]["window_weeks"]


def on_call_window_weeks(policy: Dict) -> int:
    return _normalize_policy(policy)["on_call"]["window_weeks"]


def on_call_days(policy: Dict) -> List[str]:
    return list(_normalize_policy(policy)["on_call"]["days"])


def upcoming_default_count(policy: Dict) -> int:
    return _normalize_policy(policy)["upcoming"]["default_count"]


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so the rotators have their parameters."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Baseline Rota")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")
