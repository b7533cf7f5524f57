from __future__ import annotations

import logging

from rainbow_chick.config import Settings
from rainbow_chick.db import init_db
from rainbow_chick.engine import build_engine
from rainbow_chick.jobs.nightly_reconcile import run_nightly_reconcile
from rainbow_chick.jobs.weekly_settlement import run_weekly_settlement


def get_schedule_context(settings: Settings) -> dict:
    now = settings.local_now()
    return {
        "local_date": now.date(),
        "local_hour": now.hour,
        "local_minute": now.minute,
        "weekday_position": settings.calendar().position(now.date()),
        "timezone": settings.timezone,
    }


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    ctx = get_schedule_context(settings)

    # Run this command every 5-10 minutes via cron/systemd timer.
    if ctx["local_hour"] != 0 or ctx["local_minute"] >= 15:
        return

    init_db(settings.db_path)
    engine = build_engine(settings)
    run_nightly_reconcile(engine, ctx["local_date"])
    if ctx["weekday_position"] == 0:
        run_weekly_settlement(engine)


if __name__ == "__main__":
    main()
