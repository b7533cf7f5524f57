from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from rainbow_chick.calendar_rules import DayKind, WeekCalendar
from rainbow_chick.config import RewardRates
from rainbow_chick.errors import ValidationError
from rainbow_chick.models import (
    BONUS_APPROVED,
    BonusRequest,
    MonthlyReport,
    Settlement,
    SettlementSummary,
    StudySession,
    TestResult,
    WeeklyTotals,
)

PASS_DELTA = Decimal("0.1")
BASELINE_MIN_DAYS = 7
BASELINE_MAX_DAYS = 14


def validate_score(score: float) -> float:
    try:
        value = float(score)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Score is not a number: {score!r}") from exc
    if value != value or not 0 <= value <= 100:
        raise ValidationError(f"Score must be between 0 and 100, got {score!r}")
    return value


def daily_base(is_present: bool, day_kind: DayKind, rates: RewardRates) -> int:
    if is_present and day_kind is DayKind.STUDY:
        return rates.daily_base
    return 0


def is_test_pass(score: float, prev_score: Optional[float]) -> bool:
    """No baseline passes outright; otherwise the score must rise by at least 0.1."""
    if prev_score is None:
        return True
    return Decimal(str(score)) - Decimal(str(prev_score)) >= PASS_DELTA


def score_reward(passed: bool, rates: RewardRates) -> int:
    return rates.test_pass if passed else rates.test_fail


def baseline_window(test_date: date) -> tuple[date, date]:
    """Inclusive date range holding last week's test."""
    return test_date - timedelta(days=BASELINE_MAX_DAYS - 1), test_date - timedelta(days=BASELINE_MIN_DAYS)


def find_prev_score(test_date: date, results: Iterable[TestResult]) -> Optional[float]:
    lo, hi = baseline_window(test_date)
    candidates = [r for r in results if r.is_approved and lo <= r.test_date <= hi]
    if not candidates:
        return None
    return max(candidates, key=lambda r: r.test_date).score


def grade_test(result: TestResult, prev_score: Optional[float], rates: RewardRates) -> TestResult:
    passed = is_test_pass(result.score, prev_score)
    return replace(
        result,
        prev_score=prev_score,
        is_pass=passed,
        reward_amount=score_reward(passed, rates),
        is_approved=True,
    )


def weekly_totals(
    week_start: date,
    sessions: Iterable[StudySession],
    tests: Iterable[TestResult],
    bonuses: Iterable[BonusRequest],
    calendar: WeekCalendar,
) -> WeeklyTotals:
    week_end = week_start + timedelta(days=6)

    def in_week(d: date) -> bool:
        return week_start <= d <= week_end

    present = [
        s for s in sessions
        if s.is_present and in_week(s.study_date) and calendar.classify(s.study_date) is DayKind.STUDY
    ]
    attendance = sum(s.base_amount + s.extra_amount for s in present)
    test = sum(t.reward_amount for t in tests if t.is_approved and in_week(t.test_date))
    bonus = sum(b.amount for b in bonuses if b.status == BONUS_APPROVED and in_week(b.request_date))
    return WeeklyTotals(attendance=attendance, test=test, bonus=bonus, attendance_days=len(present))


def refresh_settlement(settlement: Settlement, totals: WeeklyTotals) -> Settlement:
    """Refresh expected amounts. Payment fields are left as they are."""
    return replace(
        settlement,
        attendance_amount=totals.attendance,
        test_amount=totals.test,
        bonus_amount=totals.bonus,
        total_amount=totals.total,
    )


def new_settlement(participant_id: str, week_start: date, totals: WeeklyTotals) -> Settlement:
    return refresh_settlement(
        Settlement(participant_id=participant_id, week_start=week_start, week_end=week_start + timedelta(days=6)),
        totals,
    )


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(Decimal(part * 100) / Decimal(whole) + Decimal("0.5"))


def monthly_report(
    month_day: date,
    sessions: Iterable[StudySession],
    tests: Iterable[TestResult],
    calendar: WeekCalendar,
) -> MonthlyReport:
    def in_month(d: date) -> bool:
        return d.year == month_day.year and d.month == month_day.month

    present = [s for s in sessions if s.is_present and in_month(s.study_date)]
    month_tests = [t for t in tests if t.is_approved and in_month(t.test_date)]
    passed = sum(1 for t in month_tests if t.is_pass)
    study_days = calendar.month_study_days_count(month_day)
    return MonthlyReport(
        total_study_days=study_days,
        attended_days=len(present),
        attendance_rate=_percent(len(present), study_days),
        total_test_days=calendar.month_test_days_count(month_day),
        total_tests=len(month_tests),
        passed_tests=passed,
        test_pass_rate=_percent(passed, len(month_tests)),
        base_reward=sum(s.base_amount for s in present),
        extra_reward=sum(s.extra_amount for s in present),
        test_reward=sum(t.reward_amount for t in month_tests),
    )


def settlement_summary(
    today: date,
    current_week: WeeklyTotals,
    settlements: Iterable[Settlement],
    calendar: WeekCalendar,
) -> SettlementSummary:
    week_start, _ = calendar.week_bounds(today)
    current_paid = 0
    monthly_paid = 0
    total_paid = 0
    unpaid = 0
    for s in settlements:
        if s.is_paid:
            total_paid += s.paid_amount
            if s.week_start == week_start:
                current_paid = s.paid_amount
            if s.week_start.year == today.year and s.week_start.month == today.month and s.week_end.month == today.month:
                monthly_paid += s.paid_amount
        else:
            unpaid += s.total_amount
    return SettlementSummary(
        current_week_expected=current_week.total,
        current_week_paid=current_paid,
        monthly_paid=monthly_paid,
        total_paid=total_paid,
        unpaid_amount=unpaid,
    )
