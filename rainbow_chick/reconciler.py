from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Optional

from rainbow_chick.calendar_rules import WeekCalendar
from rainbow_chick.errors import ValidationError
from rainbow_chick.models import CharacterState
from rainbow_chick.morale import on_absence_morale, on_attend_morale
from rainbow_chick.progression import on_absence, on_attend


@dataclass(frozen=True)
class ReplayResult:
    state: CharacterState
    replayed_days: int = 0
    missed_dates: tuple = ()


def replay_anchor(state: CharacterState) -> Optional[date]:
    if state.last_active_date is None:
        return None
    if state.last_reconciled_date and state.last_reconciled_date > state.last_active_date:
        return state.last_reconciled_date
    return state.last_active_date


def _already_replayed(state: CharacterState, calendar: WeekCalendar) -> int:
    anchor = replay_anchor(state)
    if anchor is None or anchor == state.last_active_date:
        return 0
    return len(calendar.missed_study_days(state.last_active_date, anchor + timedelta(days=1)))


def reconcile(state: CharacterState, today: date, calendar: WeekCalendar) -> ReplayResult:
    """Replay every study day missed since the last evaluation, oldest first.

    Today is never part of the replay. Absence ordinals count from the last
    attendance, so a run replayed in several sittings ends where a single
    replay would.
    """
    anchor = replay_anchor(state)
    if anchor is None:
        return ReplayResult(state)
    if today < anchor:
        raise ValidationError(f"Evaluation date {today} is before last activity {anchor}")

    missed = calendar.missed_study_days(anchor, today)
    if not missed:
        return ReplayResult(state)

    stage, color, absence = state.stage, state.color, state.consecutive_absence
    mood = state.mood_level
    offset = _already_replayed(state, calendar)
    for ordinal, _ in enumerate(missed, start=offset + 1):
        stage, color, absence = on_absence(stage, color, absence)
        mood = on_absence_morale(mood, ordinal)

    replayed = replace(
        state,
        stage=stage,
        color=color,
        consecutive_absence=absence,
        consecutive_days=0,
        mood_level=mood,
        last_reconciled_date=missed[-1],
    )
    return ReplayResult(replayed, len(missed), tuple(missed))


def apply_attendance(state: CharacterState, today: date) -> CharacterState:
    """One attended day on an already reconciled state.

    The very first attendance lights the red slot of the egg instead of
    stepping past it. A repeat on the same day changes nothing.
    """
    if state.last_active_date == today:
        return state
    if state.last_active_date is not None and today < state.last_active_date:
        raise ValidationError(f"Attendance {today} is before last activity {state.last_active_date}")

    if state.total_days == 0:
        stage, color = state.stage, state.color
    else:
        stage, color = on_attend(state.stage, state.color)
    streak = state.consecutive_days + 1
    return replace(
        state,
        stage=stage,
        color=color,
        consecutive_days=streak,
        consecutive_absence=0,
        total_days=state.total_days + 1,
        mood_level=on_attend_morale(state.mood_level, streak),
        last_active_date=today,
    )
