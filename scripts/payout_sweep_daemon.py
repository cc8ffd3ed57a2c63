# scripts/payout_sweep_daemon.py
from __future__ import annotations

import logging
import os

from app.workers.payout_worker import run_forever


logger = logging.getLogger("payouts.worker")


def _interval_seconds() -> int:
    raw = os.getenv("PAYOUT_SWEEP_INTERVAL_SECONDS", "900")
    try:
        value = int(raw)
    except ValueError:
        return 900
    return max(1, value)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    interval = _interval_seconds()
    logger.info("Payout sweep daemon starting; interval=%ss", interval)
    try:
        run_forever(poll_seconds=interval)
    except KeyboardInterrupt:
        logger.info("Payout sweep daemon exiting")
        raise


if __name__ == "__main__":
    main()
