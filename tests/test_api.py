from __future__ import annotations

import tempfile
import unittest
from datetime import date
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

import rainbow_chick.db as db
import rainbow_chick.main as main
from rainbow_chick.config import Settings
from rainbow_chick.errors import ConflictError, StoreUnavailableError

MON = date(2026, 10, 19)
SAT = date(2026, 10, 24)


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.old_db = db.DB_PATH
        db.DB_PATH = Path(self.tmp.name) / "test.sqlite3"
        db.init_db()
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        db.DB_PATH = self.old_db
        self.tmp.cleanup()

    def on(self, day: date):
        return patch.object(Settings, "local_today", return_value=day)


class CharacterApiTests(ApiTestCase):
    def test_check_in_and_read_back(self) -> None:
        with self.on(MON):
            response = self.client.post(
                "/participants/p1/check-in",
                data={"photo_ref": "photos/p1/mon.jpg", "start_time": "09:00", "end_time": "12:00"},
            )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["character"]["stage"], "egg")
        self.assertEqual(body["character"]["color"], "red")
        self.assertEqual(body["character"]["mood_level"], 60)
        self.assertEqual(body["character"]["mood_state"], "neutral")
        self.assertEqual(body["character"]["color_progress"], {"current": 1, "total": 7})
        self.assertEqual(body["session"]["base_amount"], 500)
        self.assertFalse(body["already_checked_in"])

        response = self.client.get("/participants/p1/character")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["last_active_date"], "2026-10-19")

    def test_unknown_participant_is_404(self) -> None:
        response = self.client.get("/participants/ghost/character")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "NotFoundError")

    def test_check_in_on_test_day_is_rejected(self) -> None:
        with self.on(SAT):
            response = self.client.post("/participants/p1/check-in", data={"photo_ref": "a.jpg"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"], "ValidationError")

    def test_missing_photo_field(self) -> None:
        with self.on(MON):
            response = self.client.post("/participants/p1/check-in", data={})
        self.assertEqual(response.status_code, 422)

    def test_session_start(self) -> None:
        with self.on(MON):
            response = self.client.post("/participants/p1/session-start")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["replayed_days"], 0)

    def test_conflict_is_409(self) -> None:
        with self.on(MON), patch.object(db.SqliteRepository, "save_character", side_effect=ConflictError("changed")):
            response = self.client.post("/participants/p1/check-in", data={"photo_ref": "a.jpg"})
        self.assertEqual(response.status_code, 409)

    def test_store_unavailable_is_503(self) -> None:
        with patch.object(db.SqliteRepository, "load_character", side_effect=StoreUnavailableError("locked")):
            response = self.client.get("/participants/p1/character")
        self.assertEqual(response.status_code, 503)


class RewardApiTests(ApiTestCase):
    def test_test_bonus_and_settlement(self) -> None:
        with self.on(MON):
            self.client.post("/participants/p1/check-in", data={"photo_ref": "a.jpg"})
            bonus = self.client.post("/participants/p1/bonus-requests", data={"reason": "study group"}).json()
        self.assertEqual(self.client.post(f"/bonus-requests/{bonus['id']}/approve", data={"reviewer": "admin"}).status_code, 200)
        again = self.client.post(f"/bonus-requests/{bonus['id']}/reject", data={"reviewer": "admin", "reason": "dup"})
        self.assertEqual(again.status_code, 422)

        with self.on(SAT):
            submitted = self.client.post("/participants/p1/tests", data={"score": "77.5", "photo_refs": ["t1.jpg", "t2.jpg"]})
            approved = self.client.post("/participants/p1/tests/2026-10-24/approve", data={"approved_by": "admin"})
        self.assertEqual(submitted.status_code, 200)
        self.assertEqual(submitted.json()["photo_refs"], ["t1.jpg", "t2.jpg"])
        self.assertEqual(approved.status_code, 200)
        self.assertTrue(approved.json()["is_pass"])

        edited = self.client.post("/participants/p1/sessions/2026-10-19", data={"is_present": "true", "extra_amount": "200"})
        self.assertEqual(edited.json()["extra_amount"], 200)

        settlement = self.client.post("/participants/p1/settlements", data={"week_of": "2026-10-21"}).json()
        self.assertEqual(settlement["total_amount"], 500 + 200 + 1000 + 200)

        paid = self.client.post(f"/settlements/{settlement['id']}/pay", data={"paid_amount": "1900"})
        self.assertTrue(paid.json()["is_paid"])
        self.assertEqual(self.client.post(f"/settlements/{settlement['id']}/pay", data={"paid_amount": "1"}).status_code, 422)

        with self.on(MON):
            summary = self.client.get("/participants/p1/settlements/summary").json()
        self.assertEqual(summary["current_week_paid"], 1900)

        report = self.client.get("/participants/p1/reports/2026/10").json()
        self.assertEqual(report["attended_days"], 1)
        self.assertEqual(report["total_reward"], 1700)
        self.assertEqual(report["total_test_days"], 5)

        events = self.client.get("/participants/p1/events", params={"limit": 3}).json()["events"]
        self.assertEqual([e["kind"] for e in events], ["payment", "test", "absence_replay"])

        self.assertFalse(self.client.post(f"/settlements/{settlement['id']}/cancel").json()["is_paid"])
        self.assertEqual(self.client.delete(f"/settlements/{settlement['id']}").status_code, 200)
        self.assertEqual(self.client.delete(f"/settlements/{settlement['id']}").status_code, 404)

    def test_bad_date_in_path(self) -> None:
        response = self.client.post("/participants/p1/tests/not-a-date/approve", data={"approved_by": "admin", "score": "50"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"], "ValidationError")


if __name__ == "__main__":
    unittest.main()
