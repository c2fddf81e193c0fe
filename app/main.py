"""Command line entry point for the duty rota.

Every subcommand opens the rota database, runs one operation and prints the
result. ``serve`` starts the HTTP API under uvicorn instead.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import get_active_policy, init_database  # noqa: E402
from errors import RotaError  # noqa: E402
from generator.api import (  # noqa: E402
    coerce_date,
    ensure_generated,
    get_daily_view,
    get_on_call_week,
    list_upcoming_weekly_duties,
    override_hourly_slot,
    override_weekly_duty,
    postpone_weekly_duty,
    reshuffle,
)
from policy import ensure_default_policy, load_active_policy  # noqa: E402
from validation import validate_rota_state  # noqa: E402

log = logging.getLogger("rota")


def _today() -> str:
    return datetime.date.today().isoformat()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_daily(view: Dict[str, Any]) -> None:
    print(f"[rota] {view['date']}")
    gate = view.get("gate")
    if gate:
        backup = gate.get("backup_name") or "-"
        print(f"  gate      main={gate['main_name']} backup={backup}")
    duty = view.get("weeklyDuty")
    if duty:
        holder = "OFF" if duty["is_off_week"] else (duty.get("name") or "-")
        marker = " (pinned)" if duty["is_pinned"] else ""
        print(f"  weekly    {duty['label']}: {holder}{marker}")
    for slot in view.get("hourly", []):
        marker = f"  pinned: {slot['reason']}" if slot["is_pinned"] else ""
        print(f"  {slot['hour']:02d}:00     {slot['name']}{marker}")
    audit = view.get("audit")
    if audit:
        print(f"  last shuffle by {audit['user_name']}: {audit['reason']}")


def _print_weekly(rows: Sequence[Dict[str, Any]]) -> None:
    for row in rows:
        holder = "OFF" if row["is_off_week"] else (row.get("name") or "-")
        marker = " (pinned)" if row["is_pinned"] else ""
        print(f"  {row['label']}: {holder}{marker}")


def cmd_init(args: argparse.Namespace) -> int:
    ensure_default_policy(database.SessionLocal)
    with database.SessionLocal() as session:
        policy = get_active_policy(session)
    print(f"[rota] Database ready at {database.ROTA_DATABASE_URL} (policy: {policy.name}).")
    return 0


def cmd_ensure(args: argparse.Namespace) -> int:
    summary = ensure_generated(database.SessionLocal, args.date)
    _dump(summary)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    view = get_daily_view(database.SessionLocal, args.date)
    if args.json:
        _dump(view)
    else:
        _print_daily(view)
    return 0


def cmd_reshuffle(args: argparse.Namespace) -> int:
    result = reshuffle(database.SessionLocal, args.date, args.hour, args.actor, args.reason)
    print(f"[rota] Reshuffled {args.date} from {int(args.hour):02d}:00.")
    for slot in result["hourly"]:
        print(f"  {slot['hour']:02d}:00     {slot['name']}")
    return 0


def cmd_override_hour(args: argparse.Namespace) -> int:
    slot = override_hourly_slot(database.SessionLocal, args.date, args.hour, args.person, args.reason)
    print(f"[rota] {args.date} {slot['hour']:02d}:00 pinned to {slot['name']} (was {slot['original_name']}).")
    return 0


def cmd_override_week(args: argparse.Namespace) -> int:
    duty = override_weekly_duty(database.SessionLocal, args.week, args.person, args.off, args.reason)
    _print_weekly([duty])
    return 0


def cmd_postpone(args: argparse.Namespace) -> int:
    rows = postpone_weekly_duty(database.SessionLocal, args.week)
    print(f"[rota] Postponed {len(rows)} week(s).")
    _print_weekly(rows)
    return 0


def cmd_upcoming(args: argparse.Namespace) -> int:
    rows = list_upcoming_weekly_duties(database.SessionLocal, args.start, args.count)
    _print_weekly(rows)
    return 0


def cmd_on_call(args: argparse.Namespace) -> int:
    payload = get_on_call_week(database.SessionLocal, args.date)
    print(f"[rota] On-call week of {payload['week_start']}")
    for slot in payload["data"]:
        print(f"  {slot['day']} {slot['date']}: {slot['name']}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    target = coerce_date(args.date)
    with database.SessionLocal() as session:
        report = validate_rota_state(session, target, policy=load_active_policy(session))
    for check in report["checks"]:
        print(f"  [{check['status']}] {check['label']}")
    for issue in report["issues"]:
        print(f"[rota][validation-error] {issue['message']}")
    for warning in report["warnings"]:
        print(f"[rota][warning] {warning['message']}")
    return 1 if report["issues"] else 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api:app", host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate and maintain the hourly, gate, weekly and on-call rota.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create tables and the baseline policy.")
    init.set_defaults(func=cmd_init)

    ensure = sub.add_parser("ensure", help="Generate every slot covering a date.")
    ensure.add_argument("date", nargs="?", default=_today(), help="ISO date (YYYY-MM-DD). Defaults to today.")
    ensure.set_defaults(func=cmd_ensure)

    show = sub.add_parser("show", help="Print the daily view for a date.")
    show.add_argument("date", nargs="?", default=_today(), help="ISO date (YYYY-MM-DD). Defaults to today.")
    show.add_argument("--json", action="store_true", help="Print the raw payload.")
    show.set_defaults(func=cmd_show)

    shuffle = sub.add_parser("reshuffle", help="Redistribute unpinned hourly slots from an hour onwards.")
    shuffle.add_argument("date", nargs="?", default=_today())
    shuffle.add_argument("--hour", type=int, default=0, help="First hour to redistribute.")
    shuffle.add_argument("--actor", required=True, help="Who asked for the reshuffle.")
    shuffle.add_argument("--reason", required=True)
    shuffle.set_defaults(func=cmd_reshuffle)

    hour = sub.add_parser("override-hour", help="Pin an hourly slot to a person.")
    hour.add_argument("date", nargs="?", default=_today())
    hour.add_argument("--hour", type=int, required=True)
    hour.add_argument("--person", type=int, required=True, help="Person id.")
    hour.add_argument("--reason", required=True)
    hour.set_defaults(func=cmd_override_hour)

    week = sub.add_parser("override-week", help="Pin a weekly duty to a person or mark it off.")
    week.add_argument("--week", required=True, help="Any date inside the week.")
    week.add_argument("--person", type=int, help="Person id. Omit with --off.")
    week.add_argument("--off", action="store_true", help="Mark the week as an off week.")
    week.add_argument("--reason", required=True)
    week.set_defaults(func=cmd_override_week)

    postpone = sub.add_parser("postpone", help="Shift future weekly duties back by one week.")
    postpone.add_argument("--week", required=True, help="First week to postpone.")
    postpone.set_defaults(func=cmd_postpone)

    upcoming = sub.add_parser("upcoming", help="List upcoming weekly duties.")
    upcoming.add_argument("--start", default=None, help="First week to list. Defaults to this week.")
    upcoming.add_argument("--count", type=int, default=None)
    upcoming.set_defaults(func=cmd_upcoming)

    on_call = sub.add_parser("on-call", help="Print the on-call week containing a date.")
    on_call.add_argument("date", nargs="?", default=_today())
    on_call.set_defaults(func=cmd_on_call)

    validate = sub.add_parser("validate", help="Check stored rota state around a date.")
    validate.add_argument("date", nargs="?", default=_today())
    validate.set_defaults(func=cmd_validate)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_database()
    try:
        return args.func(args)
    except RotaError as exc:
        log.debug("command %s failed", args.command, exc_info=True)
        print(f"[rota][error] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
