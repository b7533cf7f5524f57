from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Optional

from rainbow_chick.morale import INITIAL_MOOD
from rainbow_chick.progression import Color, Stage

MAX_TEST_PHOTOS = 5

BONUS_PENDING = "pending"
BONUS_APPROVED = "approved"
BONUS_REJECTED = "rejected"


def _plain(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (Stage, Color)):
        return value.value
    if isinstance(value, tuple):
        return list(value)
    return value


def to_dict(record) -> dict:
    return {k: _plain(v) for k, v in asdict(record).items()}


@dataclass(frozen=True)
class CharacterState:
    participant_id: str
    stage: Stage = Stage.EGG
    color: Color = Color.RED
    consecutive_days: int = 0
    consecutive_absence: int = 0
    total_days: int = 0
    mood_level: int = INITIAL_MOOD
    last_active_date: Optional[date] = None
    last_reconciled_date: Optional[date] = None
    last_scored_test_date: Optional[date] = None
    version: int = 0
    updated_at: Optional[str] = None

    def progress_key(self) -> tuple:
        return (
            self.stage,
            self.color,
            self.consecutive_days,
            self.consecutive_absence,
            self.total_days,
            self.mood_level,
            self.last_active_date,
            self.last_reconciled_date,
            self.last_scored_test_date,
        )


@dataclass(frozen=True)
class StudySession:
    participant_id: str
    study_date: date
    is_present: bool = False
    photo_ref: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    base_amount: int = 0
    extra_amount: int = 0


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    participant_id: str
    test_date: date
    score: float
    prev_score: Optional[float] = None
    is_approved: bool = False
    is_pass: bool = False
    reward_amount: int = 0
    photo_refs: tuple = ()
    manual_score_input: bool = False
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None


@dataclass(frozen=True)
class BonusRequest:
    participant_id: str
    request_date: date
    amount: int
    reason: str = ""
    status: str = BONUS_PENDING
    id: Optional[int] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    reject_reason: Optional[str] = None


@dataclass(frozen=True)
class Settlement:
    participant_id: str
    week_start: date
    week_end: date
    attendance_amount: int = 0
    test_amount: int = 0
    bonus_amount: int = 0
    total_amount: int = 0
    is_paid: bool = False
    paid_amount: int = 0
    paid_at: Optional[str] = None
    proof_ref: Optional[str] = None
    note: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class WeeklyTotals:
    attendance: int
    test: int
    bonus: int
    attendance_days: int = 0

    @property
    def total(self) -> int:
        return self.attendance + self.test + self.bonus


@dataclass(frozen=True)
class SettlementSummary:
    current_week_expected: int = 0
    current_week_paid: int = 0
    monthly_paid: int = 0
    total_paid: int = 0
    unpaid_amount: int = 0


@dataclass(frozen=True)
class MonthlyReport:
    total_study_days: int
    attended_days: int
    attendance_rate: int
    total_tests: int
    passed_tests: int
    total_test_days: int
    test_pass_rate: int
    base_reward: int
    extra_reward: int
    test_reward: int
    total_reward: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "total_reward", self.base_reward + self.extra_reward + self.test_reward)
