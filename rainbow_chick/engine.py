from __future__ import annotations

import logging
import threading
import weakref
from calendar import monthrange
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Optional

from rainbow_chick import rewards
from rainbow_chick.calendar_rules import DayKind
from rainbow_chick.config import Settings
from rainbow_chick.db import SqliteRepository
from rainbow_chick.errors import ConflictError, NotFoundError, ValidationError
from rainbow_chick.models import (
    BONUS_APPROVED,
    BONUS_PENDING,
    BONUS_REJECTED,
    MAX_TEST_PHOTOS,
    BonusRequest,
    CharacterState,
    MonthlyReport,
    Settlement,
    SettlementSummary,
    StudySession,
    TestResult,
    WeeklyTotals,
)
from rainbow_chick.morale import on_test_fail, on_test_pass
from rainbow_chick.notifier import NoopNotifier, Notifier, build_notifier
from rainbow_chick.progression import STAGES
from rainbow_chick.reconciler import ReplayResult, apply_attendance, reconcile
from rainbow_chick.repository import Repository, utc_now_iso

logger = logging.getLogger(__name__)


class ParticipantLock:
    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        return self._lock.acquire(blocking, timeout)

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> "ParticipantLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


class ParticipantLocks:
    """One lock per participant; different participants never wait on each other.

    Entries are weak, so a participant's lock is dropped once no caller holds it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, participant_id: str) -> ParticipantLock:
        with self._guard:
            lock = self._locks.get(participant_id)
            if lock is None:
                lock = ParticipantLock()
                self._locks[participant_id] = lock
            return lock


@dataclass(frozen=True)
class CheckInResult:
    state: CharacterState
    session: StudySession
    replayed_days: int = 0
    promoted: bool = False
    already_checked_in: bool = False


def _validate_time(raw: Optional[str]) -> Optional[str]:
    if raw is None or raw == "":
        return None
    try:
        datetime.strptime(raw, "%H:%M")
    except ValueError as exc:
        raise ValidationError(f"Time must be HH:MM, got {raw!r}") from exc
    return raw


class AttendanceEngine:
    def __init__(
        self,
        repo: Repository,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        locks: ParticipantLocks | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings or Settings()
        self.calendar = self.settings.calendar()
        self.rates = self.settings.rates
        self.notifier = notifier or NoopNotifier()
        self.locks = locks or ParticipantLocks()

    def today(self) -> date:
        return self.settings.local_today()

    # -- character ---------------------------------------------------------

    def get_character(self, participant_id: str) -> CharacterState:
        return self.repo.load_character(participant_id)

    def recent_events(self, participant_id: str, limit: int = 12) -> list[dict]:
        if not 1 <= limit <= 100:
            raise ValidationError(f"Event limit must be between 1 and 100, got {limit}")
        return self.repo.recent_events(participant_id, limit)

    def _load_or_new(self, participant_id: str) -> CharacterState:
        try:
            return self.repo.load_character(participant_id)
        except NotFoundError:
            logger.info("Initializing character for new participant %s", participant_id)
            return CharacterState(participant_id=participant_id)

    def _save(self, state: CharacterState) -> CharacterState:
        try:
            return self.repo.save_character(state)
        except ConflictError:
            logger.warning("Concurrent update of %s rejected at version %d", state.participant_id, state.version)
            raise

    def _announce_replay(self, participant_id: str, today: date, result: ReplayResult) -> None:
        state = result.state
        text = f"Replayed {result.replayed_days} missed study day(s): {state.stage.value}/{state.color.value}, mood {state.mood_level}."
        self.repo.log_event(
            participant_id,
            today,
            "absence_replay",
            text,
            {"days": [d.isoformat() for d in result.missed_dates]},
        )
        self.notifier.send(
            f"Missed study days: {participant_id} is {state.stage.value}/{state.color.value}",
            text,
            priority="high",
            tags=("warning", "hatched_chick"),
        )

    def start_session(self, participant_id: str, today: date | None = None) -> ReplayResult:
        """Bring the character up to date with every study day missed before today."""
        today = today or self.today()
        with self.locks.get(participant_id):
            state = self._load_or_new(participant_id)
            if state.version == 0:
                return ReplayResult(self._save(state))
            result = reconcile(state, today, self.calendar)
            if not result.replayed_days:
                return result
            saved = self._save(result.state)
            logger.info("Replayed %d absence(s) for %s", result.replayed_days, participant_id)
            result = replace(result, state=saved)
        self._announce_replay(participant_id, today, result)
        return result

    def check_in(
        self,
        participant_id: str,
        photo_ref: str,
        start_time: str | None = None,
        end_time: str | None = None,
        today: date | None = None,
    ) -> CheckInResult:
        today = today or self.today()
        kind = self.calendar.classify(today)
        if kind is not DayKind.STUDY:
            raise ValidationError(f"{today} is a {kind.value} day; check-in is only open on study days")
        if not photo_ref:
            raise ValidationError("A photo reference is required to check in")
        start_time = _validate_time(start_time)
        end_time = _validate_time(end_time)

        with self.locks.get(participant_id):
            existing = self.repo.get_session(participant_id, today)
            session = StudySession(
                participant_id=participant_id,
                study_date=today,
                is_present=True,
                photo_ref=photo_ref,
                start_time=start_time,
                end_time=end_time,
                base_amount=rewards.daily_base(True, kind, self.rates),
                extra_amount=existing.extra_amount if existing else 0,
            )

            before = self._load_or_new(participant_id)
            replay = reconcile(before, today, self.calendar)
            after = apply_attendance(replay.state, today)
            repeat = after is replay.state

            if repeat and not replay.replayed_days and before.version:
                saved = before
            else:
                saved = self._save(after)
            self.repo.save_session(session)

        promoted = STAGES.index(saved.stage) > STAGES.index(replay.state.stage)
        if replay.replayed_days:
            self._announce_replay(participant_id, today, replay)
        if promoted:
            text = f"Grew into {saved.stage.value} after {saved.total_days} study days."
            self.repo.log_event(participant_id, today, "promotion", text)
            self.notifier.send(
                f"Stage up: {participant_id} is {saved.stage.value}/{saved.color.value}",
                text,
                tags=("tada", "hatching_chick"),
            )
        if not repeat:
            logger.info("Check-in %s on %s: %s/%s streak %d", participant_id, today, saved.stage.value, saved.color.value, saved.consecutive_days)
        return CheckInResult(saved, session, replay.replayed_days, promoted, repeat)

    # -- sessions and tests --------------------------------------------------

    def edit_session(
        self,
        participant_id: str,
        study_date: date,
        is_present: bool,
        extra_amount: int = 0,
        start_time: str | None = None,
        end_time: str | None = None,
        photo_ref: str | None = None,
    ) -> StudySession:
        """Administrative correction. Pay only; the character is left alone."""
        if extra_amount < 0:
            raise ValidationError("Extra amount cannot be negative")
        existing = self.repo.get_session(participant_id, study_date)
        session = StudySession(
            participant_id=participant_id,
            study_date=study_date,
            is_present=is_present,
            photo_ref=photo_ref if photo_ref is not None else (existing.photo_ref if existing else None),
            start_time=_validate_time(start_time),
            end_time=_validate_time(end_time),
            base_amount=rewards.daily_base(is_present, self.calendar.classify(study_date), self.rates),
            extra_amount=extra_amount,
        )
        return self.repo.save_session(session)

    def submit_test(self, participant_id: str, score: float, photo_refs: list[str] | tuple = (), today: date | None = None) -> TestResult:
        today = today or self.today()
        if self.calendar.classify(today) is not DayKind.TEST:
            raise ValidationError(f"{today} is not a test day")
        value = rewards.validate_score(score)
        refs = tuple(r for r in photo_refs if r)
        if len(refs) > MAX_TEST_PHOTOS:
            raise ValidationError(f"At most {MAX_TEST_PHOTOS} photos per test, got {len(refs)}")
        existing = self.repo.get_test(participant_id, today)
        if existing and existing.is_approved:
            raise ValidationError(f"Test on {today} is already approved")
        result = TestResult(
            participant_id=participant_id,
            test_date=today,
            score=value,
            photo_refs=refs,
            manual_score_input=True,
        )
        return self.repo.save_test(result)

    def approve_test(
        self,
        participant_id: str,
        test_date: date,
        approved_by: str,
        score: float | None = None,
        today: date | None = None,
    ) -> TestResult:
        """Grade and approve a test.

        Mood moves once per test, after any missed study days before ``today``
        have been replayed. The character remembers the last test it was scored
        for, so a retry after a failed test write does not score it twice.
        """
        if self.calendar.classify(test_date) is not DayKind.TEST:
            raise ValidationError(f"{test_date} is not a test day")
        if score is not None:
            score = rewards.validate_score(score)
        today = today or self.today()

        replay = None
        with self.locks.get(participant_id):
            existing = self.repo.get_test(participant_id, test_date)
            if existing is None and score is None:
                raise NotFoundError(f"No test submitted by {participant_id} on {test_date}")
            if existing is None:
                existing = TestResult(participant_id=participant_id, test_date=test_date, score=0.0, manual_score_input=True)
            if score is not None:
                existing = replace(existing, score=score)

            lo, hi = rewards.baseline_window(test_date)
            prev_score = rewards.find_prev_score(test_date, self.repo.list_tests(participant_id, lo, hi))
            graded = replace(
                rewards.grade_test(existing, prev_score, self.rates),
                approved_at=utc_now_iso(),
                approved_by=approved_by,
            )

            first_approval = not existing.is_approved
            if first_approval:
                state = self._load_or_new(participant_id)
                if state.last_scored_test_date != test_date:
                    replay = reconcile(state, max(today, test_date), self.calendar)
                    state = replay.state
                    mood = on_test_pass(state.mood_level) if graded.is_pass else on_test_fail(state.mood_level)
                    self._save(replace(state, mood_level=mood, last_scored_test_date=test_date))
            self.repo.save_test(graded)

        if replay is not None and replay.replayed_days:
            self._announce_replay(participant_id, today, replay)
        if first_approval:
            outcome = "passed" if graded.is_pass else "did not pass"
            self.repo.log_event(
                participant_id,
                test_date,
                "test",
                f"Test {outcome} with {graded.score} (+{graded.reward_amount}).",
                {"prev_score": prev_score},
            )
        return graded

    # -- bonus requests ------------------------------------------------------

    def request_bonus(self, participant_id: str, reason: str, today: date | None = None) -> BonusRequest:
        """File a request for one bonus unit; the reviewer may adjust the amount."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A bonus request needs a reason")
        return self.repo.add_bonus(
            BonusRequest(
                participant_id=participant_id,
                request_date=today or self.today(),
                amount=self.rates.bonus_request,
                reason=reason,
            )
        )

    def _review_bonus(
        self,
        request_id: int,
        status: str,
        reviewer: str,
        reject_reason: str | None = None,
        amount: int | None = None,
    ) -> BonusRequest:
        request = self.repo.get_bonus(request_id)
        if request.status != BONUS_PENDING:
            raise ValidationError(f"Bonus request {request_id} is already {request.status}")
        if amount is not None and amount <= 0:
            raise ValidationError("Bonus amount must be positive")
        return self.repo.save_bonus(
            replace(
                request,
                amount=request.amount if amount is None else amount,
                status=status,
                reviewed_by=reviewer,
                reviewed_at=utc_now_iso(),
                reject_reason=reject_reason,
            )
        )

    def approve_bonus(self, request_id: int, reviewer: str, amount: int | None = None) -> BonusRequest:
        return self._review_bonus(request_id, BONUS_APPROVED, reviewer, amount=amount)

    def reject_bonus(self, request_id: int, reviewer: str, reason: str) -> BonusRequest:
        return self._review_bonus(request_id, BONUS_REJECTED, reviewer, reason)

    # -- settlements ---------------------------------------------------------

    def weekly_totals(self, participant_id: str, week_of: date) -> WeeklyTotals:
        start, end = self.calendar.week_bounds(week_of)
        return rewards.weekly_totals(
            start,
            self.repo.list_sessions(participant_id, start, end),
            self.repo.list_tests(participant_id, start, end),
            self.repo.list_bonuses(participant_id, start, end, status=BONUS_APPROVED),
            self.calendar,
        )

    def create_settlement(self, participant_id: str, week_of: date) -> Settlement:
        start, _ = self.calendar.week_bounds(week_of)
        totals = self.weekly_totals(participant_id, start)
        existing = self.repo.find_settlement(participant_id, start)
        if existing is not None:
            settlement = rewards.refresh_settlement(existing, totals)
        else:
            settlement = rewards.new_settlement(participant_id, start, totals)
        return self.repo.save_settlement(settlement)

    def recalculate_settlement(self, settlement_id: int) -> Settlement:
        existing = self.repo.get_settlement(settlement_id)
        totals = self.weekly_totals(existing.participant_id, existing.week_start)
        return self.repo.save_settlement(rewards.refresh_settlement(existing, totals))

    def process_payment(self, settlement_id: int, paid_amount: int, proof_ref: str | None = None, note: str | None = None) -> Settlement:
        if paid_amount < 0:
            raise ValidationError("Paid amount cannot be negative")
        settlement = self.repo.get_settlement(settlement_id)
        if settlement.is_paid:
            raise ValidationError(f"Settlement {settlement_id} is already paid; cancel the payment first")
        paid = self.repo.save_settlement(
            replace(settlement, is_paid=True, paid_amount=paid_amount, paid_at=utc_now_iso(), proof_ref=proof_ref, note=note)
        )
        text = f"Week of {paid.week_start} paid: {paid_amount}."
        self.repo.log_event(paid.participant_id, paid.week_start, "payment", text, {"settlement_id": paid.id})
        self.notifier.send(f"Settlement paid: {paid.participant_id}", text, tags=("moneybag",))
        return paid

    def cancel_payment(self, settlement_id: int) -> Settlement:
        settlement = self.repo.get_settlement(settlement_id)
        return self.repo.save_settlement(
            replace(settlement, is_paid=False, paid_amount=0, paid_at=None, proof_ref=None, note=None)
        )

    def delete_settlement(self, settlement_id: int) -> None:
        self.repo.delete_settlement(settlement_id)

    def settlement_summary(self, participant_id: str, today: date | None = None) -> SettlementSummary:
        today = today or self.today()
        return rewards.settlement_summary(
            today,
            self.weekly_totals(participant_id, today),
            self.repo.list_settlements(participant_id),
            self.calendar,
        )

    def monthly_report(self, participant_id: str, year: int, month: int) -> MonthlyReport:
        try:
            first = date(year, month, 1)
        except ValueError as exc:
            raise ValidationError(f"Invalid month {year}-{month}") from exc
        end = date(year, month, monthrange(year, month)[1])
        return rewards.monthly_report(
            first,
            self.repo.list_sessions(participant_id, first, end),
            self.repo.list_tests(participant_id, first, end),
            self.calendar,
        )


def build_engine(settings: Settings, locks: ParticipantLocks | None = None) -> AttendanceEngine:
    return AttendanceEngine(SqliteRepository(settings.db_path, settings.db_timeout_s), settings, build_notifier(settings), locks)
