import logging
import os
import time

from app.billing.propagator import expire_lapsed_plans
from app.core.config import settings
from app.db.session import get_db

logger = logging.getLogger("plan_sweeper")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

POLL_SECONDS = settings.PLAN_SWEEP_POLL_SECONDS
BATCH_SIZE = settings.PLAN_SWEEP_BATCH_SIZE


def sweep_once(batch_size: int = BATCH_SIZE) -> int:
    """Expire one batch of lapsed plans. Returns how many profiles changed."""
    with next(get_db()) as db:
        lapsed = expire_lapsed_plans(db, batch_size=batch_size)

    for entry in lapsed:
        logger.info(
            "expired plan for %s: %s -> %s",
            entry.user_id,
            entry.previous_plan,
            entry.new_plan,
        )
    return len(lapsed)


def main(once: bool = False) -> None:
    logger.info("plan_sweeper starting (once=%s batch=%d)", once, BATCH_SIZE)

    while True:
        try:
            count = sweep_once()
            if count:
                logger.info("expired %d plan(s)", count)
                # A full batch means more may be waiting
                if count >= BATCH_SIZE:
                    continue
            elif once:
                logger.info("no plans required expiry; exiting (once)")
                return

            if once:
                return
            time.sleep(POLL_SECONDS)

        except Exception:
            if once:
                raise
            logger.exception("plan sweep crashed; sleeping then retrying")
            time.sleep(2)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    main(once=args.once)
