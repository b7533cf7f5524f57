from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Optional

from rainbow_chick.errors import ConflictError, NotFoundError
from rainbow_chick.models import BonusRequest, CharacterState, Settlement, StudySession, TestResult


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    """Read-one / write-one access to participant records.

    ``save_character`` inserts when ``state.version`` is 0 and otherwise
    replaces the stored row only if its version still matches, raising
    ``ConflictError`` when it does not. The returned state carries the new
    version.
    """

    def load_character(self, participant_id: str) -> CharacterState:
        raise NotImplementedError

    def save_character(self, state: CharacterState) -> CharacterState:
        raise NotImplementedError

    def list_participants(self) -> list[str]:
        raise NotImplementedError

    def get_session(self, participant_id: str, study_date: date) -> Optional[StudySession]:
        raise NotImplementedError

    def save_session(self, session: StudySession) -> StudySession:
        raise NotImplementedError

    def list_sessions(self, participant_id: str, start: date, end: date) -> list[StudySession]:
        raise NotImplementedError

    def get_test(self, participant_id: str, test_date: date) -> Optional[TestResult]:
        raise NotImplementedError

    def save_test(self, result: TestResult) -> TestResult:
        raise NotImplementedError

    def list_tests(self, participant_id: str, start: date, end: date) -> list[TestResult]:
        raise NotImplementedError

    def add_bonus(self, request: BonusRequest) -> BonusRequest:
        raise NotImplementedError

    def get_bonus(self, request_id: int) -> BonusRequest:
        raise NotImplementedError

    def save_bonus(self, request: BonusRequest) -> BonusRequest:
        raise NotImplementedError

    def list_bonuses(self, participant_id: str, start: date, end: date, status: Optional[str] = None) -> list[BonusRequest]:
        raise NotImplementedError

    def get_settlement(self, settlement_id: int) -> Settlement:
        raise NotImplementedError

    def find_settlement(self, participant_id: str, week_start: date) -> Optional[Settlement]:
        raise NotImplementedError

    def save_settlement(self, settlement: Settlement) -> Settlement:
        raise NotImplementedError

    def delete_settlement(self, settlement_id: int) -> None:
        raise NotImplementedError

    def list_settlements(self, participant_id: str) -> list[Settlement]:
        raise NotImplementedError

    def log_event(self, participant_id: str, event_date: date, kind: str, text: str, meta: dict | None = None) -> None:
        raise NotImplementedError

    def recent_events(self, participant_id: str, limit: int = 12) -> list[dict]:
        raise NotImplementedError


class InMemoryRepository(Repository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.characters: dict[str, CharacterState] = {}
        self.sessions: dict[tuple, StudySession] = {}
        self.tests: dict[tuple, TestResult] = {}
        self.bonuses: dict[int, BonusRequest] = {}
        self.settlements: dict[int, Settlement] = {}
        self.events: list[dict] = []
        self._next_id = 1

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def load_character(self, participant_id: str) -> CharacterState:
        with self._lock:
            state = self.characters.get(participant_id)
        if state is None:
            raise NotFoundError(f"No character for participant {participant_id}")
        return state

    def save_character(self, state: CharacterState) -> CharacterState:
        with self._lock:
            current = self.characters.get(state.participant_id)
            stored_version = current.version if current else 0
            if state.version == 0 and current is not None:
                raise ConflictError(f"Character for {state.participant_id} already exists")
            if state.version != stored_version:
                raise ConflictError(f"Character for {state.participant_id} changed (version {stored_version}, expected {state.version})")
            saved = replace(state, version=stored_version + 1, updated_at=utc_now_iso())
            self.characters[state.participant_id] = saved
            return saved

    def list_participants(self) -> list[str]:
        with self._lock:
            return sorted(self.characters)

    def get_session(self, participant_id: str, study_date: date) -> Optional[StudySession]:
        return self.sessions.get((participant_id, study_date))

    def save_session(self, session: StudySession) -> StudySession:
        with self._lock:
            self.sessions[(session.participant_id, session.study_date)] = session
        return session

    def list_sessions(self, participant_id: str, start: date, end: date) -> list[StudySession]:
        rows = [s for (pid, d), s in self.sessions.items() if pid == participant_id and start <= d <= end]
        return sorted(rows, key=lambda s: s.study_date)

    def get_test(self, participant_id: str, test_date: date) -> Optional[TestResult]:
        return self.tests.get((participant_id, test_date))

    def save_test(self, result: TestResult) -> TestResult:
        with self._lock:
            self.tests[(result.participant_id, result.test_date)] = result
        return result

    def list_tests(self, participant_id: str, start: date, end: date) -> list[TestResult]:
        rows = [t for (pid, d), t in self.tests.items() if pid == participant_id and start <= d <= end]
        return sorted(rows, key=lambda t: t.test_date)

    def add_bonus(self, request: BonusRequest) -> BonusRequest:
        with self._lock:
            saved = replace(request, id=self._new_id())
            self.bonuses[saved.id] = saved
            return saved

    def get_bonus(self, request_id: int) -> BonusRequest:
        request = self.bonuses.get(request_id)
        if request is None:
            raise NotFoundError(f"No bonus request {request_id}")
        return request

    def save_bonus(self, request: BonusRequest) -> BonusRequest:
        with self._lock:
            self.bonuses[request.id] = request
        return request

    def list_bonuses(self, participant_id: str, start: date, end: date, status: Optional[str] = None) -> list[BonusRequest]:
        return [
            b for b in self.bonuses.values()
            if b.participant_id == participant_id and start <= b.request_date <= end and (status is None or b.status == status)
        ]

    def get_settlement(self, settlement_id: int) -> Settlement:
        settlement = self.settlements.get(settlement_id)
        if settlement is None:
            raise NotFoundError(f"No settlement {settlement_id}")
        return settlement

    def find_settlement(self, participant_id: str, week_start: date) -> Optional[Settlement]:
        for s in self.settlements.values():
            if s.participant_id == participant_id and s.week_start == week_start:
                return s
        return None

    def save_settlement(self, settlement: Settlement) -> Settlement:
        with self._lock:
            if settlement.id is None:
                existing = self.find_settlement(settlement.participant_id, settlement.week_start)
                settlement = replace(settlement, id=existing.id if existing else self._new_id())
            self.settlements[settlement.id] = settlement
            return settlement

    def delete_settlement(self, settlement_id: int) -> None:
        with self._lock:
            if self.settlements.pop(settlement_id, None) is None:
                raise NotFoundError(f"No settlement {settlement_id}")

    def list_settlements(self, participant_id: str) -> list[Settlement]:
        rows = [s for s in self.settlements.values() if s.participant_id == participant_id]
        return sorted(rows, key=lambda s: s.week_start, reverse=True)

    def log_event(self, participant_id: str, event_date: date, kind: str, text: str, meta: dict | None = None) -> None:
        self.events.append(
            {"participant_id": participant_id, "date": event_date.isoformat(), "kind": kind, "text": text, "meta": meta or {}}
        )

    def recent_events(self, participant_id: str, limit: int = 12) -> list[dict]:
        rows = [e for e in self.events if e["participant_id"] == participant_id]
        return list(reversed(rows))[:limit]
