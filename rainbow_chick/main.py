from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse

from rainbow_chick import db
from rainbow_chick.config import Settings
from rainbow_chick.engine import AttendanceEngine, ParticipantLocks
from rainbow_chick.errors import ConflictError, NotFoundError, RainbowError, StoreUnavailableError, ValidationError
from rainbow_chick.models import to_dict
from rainbow_chick.morale import mood_state
from rainbow_chick.notifier import build_notifier
from rainbow_chick.progression import color_progress, colors_to_next_stage

SETTINGS = Settings.from_env()
LOCKS = ParticipantLocks()

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    StoreUnavailableError: 503,
}

app = FastAPI(title="Rainbow Chick")


@app.on_event("startup")
def startup() -> None:
    db.DB_PATH = SETTINGS.db_path
    db.DB_TIMEOUT_S = SETTINGS.db_timeout_s
    db.init_db()


@app.exception_handler(RainbowError)
def rainbow_error(request: Request, exc: RainbowError) -> JSONResponse:
    status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
    return JSONResponse({"error": type(exc).__name__, "detail": str(exc)}, status_code=status)


def get_engine() -> AttendanceEngine:
    return AttendanceEngine(db.SqliteRepository(), SETTINGS, build_notifier(SETTINGS), LOCKS)


def _date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Not an ISO date: {raw!r}") from exc


def character_context(state) -> dict:
    current, total = color_progress(state.color)
    return {
        **to_dict(state),
        "mood_state": mood_state(state.mood_level),
        "color_progress": {"current": current, "total": total},
        "colors_to_next_stage": colors_to_next_stage(state.color),
    }


@app.get("/participants/{participant_id}/character", response_class=JSONResponse)
def character(participant_id: str) -> JSONResponse:
    return JSONResponse(character_context(get_engine().get_character(participant_id)))


@app.post("/participants/{participant_id}/session-start", response_class=JSONResponse)
def session_start(participant_id: str) -> JSONResponse:
    result = get_engine().start_session(participant_id)
    return JSONResponse({"replayed_days": result.replayed_days, "character": character_context(result.state)})


@app.post("/participants/{participant_id}/check-in", response_class=JSONResponse)
def check_in(
    participant_id: str,
    photo_ref: str = Form(...),
    start_time: Optional[str] = Form(None),
    end_time: Optional[str] = Form(None),
) -> JSONResponse:
    result = get_engine().check_in(participant_id, photo_ref, start_time=start_time, end_time=end_time)
    return JSONResponse(
        {
            "character": character_context(result.state),
            "session": to_dict(result.session),
            "replayed_days": result.replayed_days,
            "promoted": result.promoted,
            "already_checked_in": result.already_checked_in,
        }
    )


@app.post("/participants/{participant_id}/sessions/{study_date}", response_class=JSONResponse)
def edit_session(
    participant_id: str,
    study_date: str,
    is_present: bool = Form(...),
    extra_amount: int = Form(0),
    start_time: Optional[str] = Form(None),
    end_time: Optional[str] = Form(None),
) -> JSONResponse:
    session = get_engine().edit_session(
        participant_id,
        _date(study_date),
        is_present,
        extra_amount=extra_amount,
        start_time=start_time,
        end_time=end_time,
    )
    return JSONResponse(to_dict(session))


@app.post("/participants/{participant_id}/tests", response_class=JSONResponse)
def submit_test(participant_id: str, score: float = Form(...), photo_refs: List[str] = Form([])) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().submit_test(participant_id, score, photo_refs)))


@app.post("/participants/{participant_id}/tests/{test_date}/approve", response_class=JSONResponse)
def approve_test(
    participant_id: str,
    test_date: str,
    approved_by: str = Form(...),
    score: Optional[float] = Form(None),
) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().approve_test(participant_id, _date(test_date), approved_by, score=score)))


@app.post("/participants/{participant_id}/bonus-requests", response_class=JSONResponse)
def request_bonus(participant_id: str, reason: str = Form(...)) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().request_bonus(participant_id, reason)))


@app.post("/bonus-requests/{request_id}/approve", response_class=JSONResponse)
def approve_bonus(request_id: int, reviewer: str = Form(...), amount: Optional[int] = Form(None)) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().approve_bonus(request_id, reviewer, amount=amount)))


@app.post("/bonus-requests/{request_id}/reject", response_class=JSONResponse)
def reject_bonus(request_id: int, reviewer: str = Form(...), reason: str = Form("")) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().reject_bonus(request_id, reviewer, reason)))


@app.post("/participants/{participant_id}/settlements", response_class=JSONResponse)
def create_settlement(participant_id: str, week_of: str = Form(...)) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().create_settlement(participant_id, _date(week_of))))


@app.post("/settlements/{settlement_id}/recalculate", response_class=JSONResponse)
def recalculate_settlement(settlement_id: int) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().recalculate_settlement(settlement_id)))


@app.post("/settlements/{settlement_id}/pay", response_class=JSONResponse)
def pay_settlement(
    settlement_id: int,
    paid_amount: int = Form(...),
    proof_ref: Optional[str] = Form(None),
    note: Optional[str] = Form(None),
) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().process_payment(settlement_id, paid_amount, proof_ref=proof_ref, note=note)))


@app.post("/settlements/{settlement_id}/cancel", response_class=JSONResponse)
def cancel_settlement_payment(settlement_id: int) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().cancel_payment(settlement_id)))


@app.delete("/settlements/{settlement_id}", response_class=JSONResponse)
def delete_settlement(settlement_id: int) -> JSONResponse:
    get_engine().delete_settlement(settlement_id)
    return JSONResponse({"deleted": settlement_id})


@app.get("/participants/{participant_id}/events", response_class=JSONResponse)
def recent_events(participant_id: str, limit: int = 12) -> JSONResponse:
    return JSONResponse({"events": get_engine().recent_events(participant_id, limit)})


@app.get("/participants/{participant_id}/settlements/summary", response_class=JSONResponse)
def settlement_summary(participant_id: str) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().settlement_summary(participant_id)))


@app.get("/participants/{participant_id}/reports/{year}/{month}", response_class=JSONResponse)
def monthly_report(participant_id: str, year: int, month: int) -> JSONResponse:
    return JSONResponse(to_dict(get_engine().monthly_report(participant_id, year, month)))
