from __future__ import annotations

import argparse
import logging
from datetime import date

from rainbow_chick.config import Settings
from rainbow_chick.db import init_db
from rainbow_chick.engine import AttendanceEngine, build_engine
from rainbow_chick.errors import RainbowError

logger = logging.getLogger(__name__)


def run_nightly_reconcile(engine: AttendanceEngine, today: date | None = None) -> dict:
    """Replay missed study days for every participant with a character."""
    today = today or engine.today()
    replayed: dict[str, int] = {}
    failed: list[str] = []
    for participant_id in engine.repo.list_participants():
        try:
            replayed[participant_id] = engine.start_session(participant_id, today).replayed_days
        except RainbowError as exc:
            logger.warning("Nightly reconcile for %s failed: %s", participant_id, exc)
            failed.append(participant_id)
    total = sum(replayed.values())
    if total or failed:
        body = f"{total} missed study day(s) replayed across {len(replayed)} participant(s)."
        if failed:
            body += f" Failed: {', '.join(failed)}."
        engine.notifier.send("Rainbow Chick nightly reconcile", body, priority="high" if failed else "normal", tags=("crescent_moon",))
    return {"today": today.isoformat(), "replayed": replayed, "failed": failed}


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay missed study days for all participants.")
    parser.add_argument("--date", help="Evaluate as of this ISO date instead of the local today")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    init_db(settings.db_path)
    engine = build_engine(settings)
    result = run_nightly_reconcile(engine, date.fromisoformat(args.date) if args.date else None)
    logger.info("Nightly reconcile done: %s", result)


if __name__ == "__main__":
    main()
