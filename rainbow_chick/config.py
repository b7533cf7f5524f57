from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rainbow_chick.calendar_rules import WeekCalendar, parse_weekday

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent / "data.sqlite3"
DEFAULT_TIMEZONE = "Asia/Seoul"


@dataclass(frozen=True)
class RewardRates:
    daily_base: int = 500
    test_pass: int = 1000
    test_fail: int = 500
    extra_unit: int = 200
    bonus_request: int = 200


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    db_timeout_s: float = 5.0
    timezone: str = DEFAULT_TIMEZONE
    week_start: int = 0
    rates: RewardRates = field(default_factory=RewardRates)
    discord_webhook_url: str = ""
    ntfy_topic_url: str = ""

    @staticmethod
    def from_env(environ: dict | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = RewardRates()
        rates = RewardRates(
            daily_base=int(env.get("RAINBOW_DAILY_BASE", defaults.daily_base)),
            test_pass=int(env.get("RAINBOW_TEST_PASS", defaults.test_pass)),
            test_fail=int(env.get("RAINBOW_TEST_FAIL", defaults.test_fail)),
            extra_unit=int(env.get("RAINBOW_EXTRA_UNIT", defaults.extra_unit)),
            bonus_request=int(env.get("RAINBOW_BONUS_REQUEST", defaults.bonus_request)),
        )
        return Settings(
            db_path=Path(env.get("RAINBOW_DB_PATH") or DEFAULT_DB_PATH),
            db_timeout_s=float(env.get("RAINBOW_DB_TIMEOUT", 5.0)),
            timezone=env.get("RAINBOW_TIMEZONE", DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE,
            week_start=parse_weekday(env.get("RAINBOW_WEEK_START", "monday")),
            rates=rates,
            discord_webhook_url=env.get("RAINBOW_DISCORD_WEBHOOK_URL", "").strip(),
            ntfy_topic_url=env.get("RAINBOW_NTFY_TOPIC_URL", "").strip(),
        )

    def calendar(self) -> WeekCalendar:
        return WeekCalendar(self.week_start)

    def local_now(self) -> datetime:
        try:
            return datetime.now(ZoneInfo(self.timezone))
        except ZoneInfoNotFoundError:
            return datetime.now()

    def local_today(self) -> date:
        return self.local_now().date()
