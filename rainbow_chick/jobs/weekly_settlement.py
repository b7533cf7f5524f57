from __future__ import annotations

import argparse
import logging
from datetime import date, timedelta

from rainbow_chick.config import Settings
from rainbow_chick.db import init_db
from rainbow_chick.engine import AttendanceEngine, build_engine
from rainbow_chick.errors import RainbowError

logger = logging.getLogger(__name__)


def run_weekly_settlement(engine: AttendanceEngine, week_of: date | None = None) -> dict:
    """Create or refresh last week's settlement for every participant.

    Paid settlements keep their payment fields; only expected totals move.
    """
    if week_of is None:
        week_of = engine.today() - timedelta(days=7)
    week_start, week_end = engine.calendar.week_bounds(week_of)
    totals: dict[str, int] = {}
    for participant_id in engine.repo.list_participants():
        try:
            totals[participant_id] = engine.create_settlement(participant_id, week_start).total_amount
        except RainbowError as exc:
            logger.warning("Settlement for %s week %s failed: %s", participant_id, week_start, exc)
    if totals:
        engine.notifier.send(
            "Weekly settlement ready",
            f"{week_start} ~ {week_end}: {len(totals)} participant(s), {sum(totals.values())} expected in total.",
            tags=("calendar",),
        )
    return {"week_start": week_start.isoformat(), "week_end": week_end.isoformat(), "totals": totals}


def main() -> None:
    parser = argparse.ArgumentParser(description="Build weekly settlements.")
    parser.add_argument("--week-of", help="Any ISO date inside the week to settle (default: last week)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    init_db(settings.db_path)
    result = run_weekly_settlement(build_engine(settings), date.fromisoformat(args.week_of) if args.week_of else None)
    logger.info("Weekly settlement done: %s", result)


if __name__ == "__main__":
    main()
