from __future__ import annotations

import unittest
from datetime import date

from rainbow_chick.calendar_rules import WeekCalendar
from rainbow_chick.errors import ValidationError
from rainbow_chick.models import CharacterState
from rainbow_chick.morale import on_absence_morale
from rainbow_chick.progression import Color, Stage, on_absence
from rainbow_chick.reconciler import apply_attendance, reconcile

MON = date(2026, 10, 19)
THU = date(2026, 10, 22)
FRI = date(2026, 10, 23)
NEXT_MON = date(2026, 10, 26)


def _state(**kwargs) -> CharacterState:
    base = dict(participant_id="p1", stage=Stage.BABY, color=Color.GREEN, consecutive_days=4, total_days=20, mood_level=80, last_active_date=MON, version=3)
    base.update(kwargs)
    return CharacterState(**base)


class ReconcileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cal = WeekCalendar()

    def test_no_last_active_means_no_replay(self) -> None:
        state = CharacterState(participant_id="p1")
        result = reconcile(state, FRI, self.cal)
        self.assertIs(result.state, state)
        self.assertEqual(result.replayed_days, 0)

    def test_zero_missed_days_is_noop(self) -> None:
        state = _state(last_active_date=FRI)
        result = reconcile(state, NEXT_MON, self.cal)
        self.assertEqual(result.state, state)
        self.assertEqual(result.replayed_days, 0)

    def test_replays_in_order_with_escalating_morale(self) -> None:
        result = reconcile(_state(), FRI, self.cal)
        self.assertEqual(result.replayed_days, 3)
        self.assertEqual(result.missed_dates, (date(2026, 10, 20), date(2026, 10, 21), THU))
        state = result.state
        self.assertEqual((state.stage, state.color, state.consecutive_absence), (Stage.BABY, Color.RED, 0))
        self.assertEqual(state.mood_level, 5)
        self.assertEqual(state.consecutive_days, 0)
        self.assertEqual(state.last_reconciled_date, THU)
        self.assertEqual(state.last_active_date, MON)
        self.assertEqual(state.total_days, 20)

    def test_matches_manual_absence_application(self) -> None:
        start = _state(stage=Stage.GOLDEN, color=Color.ORANGE, mood_level=100)
        today = date(2026, 11, 6)
        result = reconcile(start, today, self.cal)

        stage, color, absence, mood = start.stage, start.color, start.consecutive_absence, start.mood_level
        missed = self.cal.missed_study_days(MON, today)
        for ordinal, _ in enumerate(missed, start=1):
            stage, color, absence = on_absence(stage, color, absence)
            mood = on_absence_morale(mood, ordinal)

        self.assertEqual(result.replayed_days, len(missed))
        self.assertEqual(
            (result.state.stage, result.state.color, result.state.consecutive_absence, result.state.mood_level),
            (stage, color, absence, mood),
        )

    def test_split_replay_matches_single_replay(self) -> None:
        single = reconcile(_state(), NEXT_MON, self.cal).state
        first = reconcile(_state(), FRI, self.cal).state
        split = reconcile(first, NEXT_MON, self.cal).state
        self.assertEqual(split.progress_key(), single.progress_key())
        self.assertEqual((split.stage, split.color, split.consecutive_absence, split.mood_level), (Stage.BABY, Color.RED, 1, 0))

    def test_second_evaluation_same_day_is_noop(self) -> None:
        once = reconcile(_state(), FRI, self.cal).state
        again = reconcile(once, FRI, self.cal)
        self.assertEqual(again.replayed_days, 0)
        self.assertEqual(again.state, once)

    def test_rejects_time_running_backwards(self) -> None:
        with self.assertRaises(ValidationError):
            reconcile(_state(last_active_date=FRI), MON, self.cal)


class ApplyAttendanceTests(unittest.TestCase):
    def test_first_attendance_lights_red(self) -> None:
        state = apply_attendance(CharacterState(participant_id="p1"), MON)
        self.assertEqual((state.stage, state.color), (Stage.EGG, Color.RED))
        self.assertEqual((state.consecutive_days, state.total_days, state.mood_level), (1, 1, 60))
        self.assertEqual(state.last_active_date, MON)

    def test_later_attendance_advances_color(self) -> None:
        state = apply_attendance(_state(consecutive_absence=0, last_active_date=THU), FRI)
        self.assertEqual(state.color, Color.BLUE)
        self.assertEqual(state.consecutive_days, 5)
        self.assertEqual(state.total_days, 21)
        self.assertEqual(state.mood_level, 90)

    def test_attendance_clears_absence_counter(self) -> None:
        state = apply_attendance(_state(color=Color.RED, consecutive_absence=1, consecutive_days=0), FRI)
        self.assertEqual(state.consecutive_absence, 0)
        self.assertEqual(state.color, Color.ORANGE)

    def test_same_day_repeat_is_identity(self) -> None:
        state = _state(last_active_date=FRI)
        self.assertIs(apply_attendance(state, FRI), state)

    def test_rejects_earlier_day(self) -> None:
        with self.assertRaises(ValidationError):
            apply_attendance(_state(last_active_date=FRI), THU)

    def test_replay_then_attend(self) -> None:
        replayed = reconcile(_state(), FRI, WeekCalendar()).state
        attended = apply_attendance(replayed, FRI)
        self.assertEqual((attended.stage, attended.color), (Stage.BABY, Color.ORANGE))
        self.assertEqual(attended.consecutive_days, 1)
        self.assertEqual(attended.mood_level, 15)
        self.assertEqual(attended.last_active_date, FRI)
        self.assertEqual(attended.last_reconciled_date, THU)


if __name__ == "__main__":
    unittest.main()
