"""Thin FastAPI wrapper over the rota operations.

Every route maps one request onto one operation in ``generator.api``; the
routes themselves never touch rotation state.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure legacy absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import get_active_policy, init_database, list_people, upsert_policy  # noqa: E402
from errors import ConflictError, StorageError, UnknownPersonError, ValidationError  # noqa: E402
from generator.api import (  # noqa: E402
    coerce_date,
    get_daily_view,
    get_on_call_week,
    list_upcoming_weekly_duties,
    override_hourly_slot,
    override_weekly_duty,
    postpone_weekly_duty,
    reshuffle,
)
from policy import ensure_default_policy  # noqa: E402
from validation import validate_rota_state  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(database.SessionLocal)
    yield


app = FastAPI(title="Duty Rota API", version="0.1", lifespan=lifespan)


def get_session_factory() -> Callable:
    return database.SessionLocal


def get_db(session_factory: Callable = Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc), "field": exc.field})


@app.exception_handler(UnknownPersonError)
async def _unknown_person(_: Request, exc: UnknownPersonError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc), "field": exc.field})


@app.exception_handler(ConflictError)
async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": "Slot was changed concurrently.", "details": str(exc)})


@app.exception_handler(StorageError)
async def _storage(_: Request, exc: StorageError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "Datastore unavailable, try again.", "details": str(exc), "retryable": exc.retryable},
    )


def _person_field(payload: Dict[str, Any]) -> Optional[Any]:
    if payload.get("person_id") is not None:
        return payload.get("person_id")
    return payload.get("name_id")


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/names")
def names(db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"data": list_people(db)}))


@app.get("/api/daily-data")
def daily_data(date: str = Query(...), session_factory: Callable = Depends(get_session_factory)) -> JSONResponse:
    view = get_daily_view(session_factory, date)
    return JSONResponse(content=jsonable_encoder(view))


@app.get("/api/oncall-table")
def on_call_table(date: str = Query(...), session_factory: Callable = Depends(get_session_factory)) -> JSONResponse:
    payload = get_on_call_week(session_factory, date)
    return JSONResponse(content=jsonable_encoder(payload))


@app.get("/api/weekly-duties/upcoming")
def upcoming_weekly_duties(
    count: Optional[int] = Query(None),
    start: Optional[str] = Query(None),
    session_factory: Callable = Depends(get_session_factory),
) -> JSONResponse:
    rows = list_upcoming_weekly_duties(session_factory, start, count)
    return JSONResponse(content=jsonable_encoder({"data": rows}))


@app.get("/api/validate")
def validate(date: str = Query(...), db=Depends(get_db)) -> JSONResponse:
    target = coerce_date(date)
    policy = get_active_policy(db)
    report = validate_rota_state(db, target, policy=policy.params_dict() if policy else None)
    return JSONResponse(content=jsonable_encoder(report))


@app.post("/api/schedule/regenerate")
def regenerate(payload: Dict[str, Any], session_factory: Callable = Depends(get_session_factory)) -> JSONResponse:
    result = reshuffle(
        session_factory,
        payload.get("date"),
        payload.get("hour"),
        payload.get("userName") or payload.get("user_name"),
        payload.get("reason"),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(result))


@app.post("/api/schedule/override")
def override_slot(payload: Dict[str, Any], session_factory: Callable = Depends(get_session_factory)) -> JSONResponse:
    hour = payload.get("time") if payload.get("time") is not None else payload.get("hour")
    slot = override_hourly_slot(
        session_factory,
        payload.get("date"),
        hour,
        _person_field(payload),
        payload.get("reason"),
    )
    return JSONResponse(content=jsonable_encoder({"message": "Slot updated.", "slot": slot}))


@app.post("/api/weekly-duty/override")
def override_week(payload: Dict[str, Any], session_factory: Callable = Depends(get_session_factory)) -> JSONResponse:
    duty = override_weekly_duty(
        session_factory,
        payload.get("week_start_date"),
        _person_field(payload),
        _truthy(payload.get("is_off_week")),
        payload.get("reason"),
    )
    return JSONResponse(content=jsonable_encoder({"message": "Weekly duty slot updated successfully.", "duty": duty}))


@app.post("/api/weekly-duty/postpone")
def postpone_week(payload: Dict[str, Any], session_factory: Callable = Depends(get_session_factory)) -> JSONResponse:
    rows = postpone_weekly_duty(session_factory, payload.get("week_start_date"))
    return JSONResponse(content=jsonable_encoder({"message": "Weekly duty postponed successfully.", "data": rows}))


@app.get("/api/v1/policy/active")
def active_policy(db=Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    payload = {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/policy/active")
def set_active_policy(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": policy.id,
                "name": policy.name,
                "params": policy.params_dict(),
                "lastEditedBy": policy.lastEditedBy,
                "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
            }
        )
    )
