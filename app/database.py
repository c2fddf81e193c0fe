from __future__ import annotations

import datetime
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, aliased, mapped_column, relationship, sessionmaker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
ROTA_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'rota.db').as_posix()}"
UTC = datetime.timezone.utc
SHUFFLE_ACTION = "shuffle"
ON_CALL_STREAM = "on_call"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def _normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


def _format_week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=6)
    start_str = week_start.strftime("%b %d")
    end_str = end.strftime("%b %d")
    if week_start.year != end.year:
        start_str = week_start.strftime("%b %d %Y")
        end_str = end.strftime("%b %d %Y")
    return f"{iso_year} W{iso_week:02d} ({start_str} - {end_str})"


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    # SQLite ships with FK enforcement off; cascades depend on it.
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Base(DeclarativeBase):
    """Metadata for every rota table living in rota.db."""

    pass


class Person(Base):
    __tablename__ = "people"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    absences: Mapped[List["Absence"]] = relationship(
        back_populates="person", cascade="all, delete-orphan", passive_deletes=True
    )


class Absence(Base):
    __tablename__ = "absences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    absence_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)

    person: Mapped[Person] = relationship(back_populates="absences")

    __table_args__ = (UniqueConstraint("person_id", "absence_date", name="uq_absence_person_date"),)


class HourlySlot(Base):
    __tablename__ = "hourly_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slot_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_person_id: Mapped[int | None] = mapped_column(
        ForeignKey("people.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (UniqueConstraint("slot_date", "hour", name="uq_hourly_slot_date_hour"),)


class GateAssignment(Base):
    __tablename__ = "gate_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assignment_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    main_person_id: Mapped[int] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    backup_person_id: Mapped[int | None] = mapped_column(
        ForeignKey("people.id", ondelete="SET NULL"), nullable=True
    )


class WeeklyDuty(Base):
    __tablename__ = "weekly_duty"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    week_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Null while the week is off.
    person_id: Mapped[int | None] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=True)
    is_off_week: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_person_id: Mapped[int | None] = mapped_column(
        ForeignKey("people.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)


class OnCallSlot(Base):
    __tablename__ = "on_call_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    weekday: Mapped[str] = mapped_column(String(3), nullable=False)
    slot_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (UniqueConstraint("week_start_date", "weekday", name="uq_on_call_week_day"),)


class RotationCursor(Base):
    __tablename__ = "rotation_cursor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    last_person_id: Mapped[int | None] = mapped_column(
        ForeignKey("people.id", ondelete="SET NULL"), nullable=True
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    user_name: Mapped[str] = mapped_column(String(120), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


rota_engine = create_engine(
    ROTA_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=rota_engine, expire_on_commit=False, future=True)


def init_database(engine: Engine | None = None) -> None:
    target = engine or rota_engine
    Base.metadata.create_all(target)
    with target.begin() as conn:
        # Databases created before off-weeks and ISO week numbers existed.
        columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(weekly_duty)"))}
        if "week_number" not in columns:
            conn.execute(text("ALTER TABLE weekly_duty ADD COLUMN week_number INTEGER"))
        if "is_off_week" not in columns:
            conn.execute(text("ALTER TABLE weekly_duty ADD COLUMN is_off_week BOOLEAN NOT NULL DEFAULT 0"))


def record_audit_log(
    session,
    user_name: str,
    action: str,
    *,
    action_date: datetime.date,
    reason: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Append an audit entry inside the caller's transaction."""
    log = AuditLog(
        action_date=action_date,
        action=action,
        user_name=user_name,
        reason=reason,
        payloadJSON=json.dumps(payload or {}),
    )
    session.add(log)
    session.flush()
    return log


def _audit_to_dict(log: Optional[AuditLog]) -> Optional[Dict[str, Any]]:
    if log is None:
        return None
    return {
        "user_name": log.user_name,
        "reason": log.reason,
        "timestamp": log.created_at,
    }


def get_latest_shuffle_audit(session, action_date: datetime.date) -> Optional[Dict[str, Any]]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.action_date == action_date, AuditLog.action == SHUFFLE_ACTION)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(1)
    )
    return _audit_to_dict(session.scalars(stmt).first())


def _people_names(session, ids: Iterable[Optional[int]]) -> Dict[int, str]:
    wanted = {value for value in ids if value is not None}
    if not wanted:
        return {}
    rows = session.execute(select(Person.id, Person.display_name).where(Person.id.in_(wanted)))
    return {row.id: row.display_name for row in rows}


def list_people(session) -> List[Dict[str, Any]]:
    stmt = select(Person).order_by(Person.id.asc())
    return [{"id": person.id, "name": person.display_name} for person in session.scalars(stmt)]


def get_hourly_for_date(session, slot_date: datetime.date) -> List[Dict[str, Any]]:
    slots = list(
        session.scalars(
            select(HourlySlot).where(HourlySlot.slot_date == slot_date).order_by(HourlySlot.hour.asc())
        )
    )
    names = _people_names(session, [s.person_id for s in slots] + [s.original_person_id for s in slots])
    payload = []
    for slot in slots:
        payload.append(
            {
                "hour": slot.hour,
                "person_id": slot.person_id,
                "name": names.get(slot.person_id),
                "is_pinned": bool(slot.is_pinned),
                "reason": slot.reason,
                "original_person_id": slot.original_person_id,
                "original_name": names.get(slot.original_person_id),
            }
        )
    return payload


def get_gate_for_date(session, assignment_date: datetime.date) -> Optional[Dict[str, Any]]:
    main = aliased(Person)
    backup = aliased(Person)
    stmt = (
        select(
            GateAssignment.main_person_id,
            main.display_name,
            GateAssignment.backup_person_id,
            backup.display_name,
        )
        .join(main, GateAssignment.main_person_id == main.id)
        .outerjoin(backup, GateAssignment.backup_person_id == backup.id)
        .where(GateAssignment.assignment_date == assignment_date)
    )
    row = session.execute(stmt).first()
    if row is None:
        return None
    return {"main_id": row[0], "main_name": row[1], "backup_id": row[2], "backup_name": row[3]}


def _weekly_to_dict(duty: WeeklyDuty, names: Dict[int, str]) -> Dict[str, Any]:
    return {
        "week_start_date": duty.week_start_date,
        "week_number": duty.week_number,
        "label": _format_week_label(duty.week_start_date),
        "person_id": duty.person_id,
        "name": names.get(duty.person_id) if duty.person_id is not None else None,
        "is_off_week": bool(duty.is_off_week),
        "is_pinned": bool(duty.is_pinned),
        "reason": duty.reason,
        "original_person_id": duty.original_person_id,
        "original_name": names.get(duty.original_person_id),
    }


def get_weekly_duty(session, any_date: datetime.date) -> Optional[Dict[str, Any]]:
    week_start = _normalize_week_start(any_date)
    duty = session.scalars(select(WeeklyDuty).where(WeeklyDuty.week_start_date == week_start)).first()
    if duty is None:
        return None
    names = _people_names(session, [duty.person_id, duty.original_person_id])
    return _weekly_to_dict(duty, names)


def list_weekly_duties_from(session, start: datetime.date, count: int) -> List[Dict[str, Any]]:
    stmt = (
        select(WeeklyDuty)
        .where(WeeklyDuty.week_start_date >= _normalize_week_start(start))
        .order_by(WeeklyDuty.week_start_date.asc())
        .limit(max(0, int(count)))
    )
    return describe_weekly_duties(session, list(session.scalars(stmt)))


def describe_weekly_duties(session, duties: Iterable[WeeklyDuty]) -> List[Dict[str, Any]]:
    duties = list(duties)
    names = _people_names(session, [d.person_id for d in duties] + [d.original_person_id for d in duties])
    return [_weekly_to_dict(duty, names) for duty in duties]


def get_on_call_for_week(session, any_date: datetime.date) -> List[Dict[str, Any]]:
    week_start = _normalize_week_start(any_date)
    stmt = (
        select(OnCallSlot, Person.display_name)
        .join(Person, OnCallSlot.person_id == Person.id)
        .where(OnCallSlot.week_start_date == week_start)
        .order_by(OnCallSlot.slot_date.asc())
    )
    return [
        {
            "day": slot.weekday,
            "date": slot.slot_date,
            "person_id": slot.person_id,
            "name": name,
        }
        for slot, name in session.execute(stmt)
    ]


def get_policies(session) -> List[Policy]:
    stmt = select(Policy).order_by(Policy.name.asc(), Policy.id.asc())
    return list(session.scalars(stmt))


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    existing: Optional[Policy] = session.execute(select(Policy).where(Policy.name == name)).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()
