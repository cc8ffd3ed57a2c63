# app/workers/payout_worker.py
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from app.payouts.errors import PayoutError
from app.payouts.service import PayoutService, build_payout_service
from services.metrics import increment_sweep_run
from settings import settings

logger = logging.getLogger("payouts.worker")

# One pass per process; the advisory lock covers other processes.
_sweep_lock = threading.Lock()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _summary(*, ran: bool, selected: int = 0, succeeded: int = 0, failed: int = 0, skipped: int = 0) -> dict:
    return {
        "ran": ran,
        "selected": selected,
        "succeeded": succeeded,
        "failed": failed,
        "skipped": skipped,
    }


def process_once(
    *,
    service: Optional[PayoutService] = None,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> dict:
    """
    Re-attempt every payout whose backoff has elapsed. Never overlaps with
    another pass; a failing payout is counted and the sweep moves on.
    """
    if not _sweep_lock.acquire(blocking=False):
        logger.info("payout_sweep_skipped reason=in_process_overlap")
        increment_sweep_run("overlap")
        return _summary(ran=False)

    try:
        service = service or build_payout_service()
        now = now or _now()
        limit = int(batch_size or settings.PAYOUT_SWEEP_BATCH_SIZE)

        with service.store.sweep_lock() as locked:
            if not locked:
                logger.info("payout_sweep_skipped reason=advisory_lock_held")
                increment_sweep_run("overlap")
                return _summary(ran=False)

            candidates = service.store.list_retryable(now=now, limit=limit)
            succeeded = failed = skipped = 0

            for payout in candidates:
                try:
                    outcome = service.attempt_transfer(payout.order_id, None, now=now)
                except PayoutError as e:
                    failed += 1
                    logger.warning(
                        "payout_sweep_attempt_failed order_id=%s payout_id=%s attempts=%s code=%s error=%s",
                        payout.order_id,
                        payout.id,
                        payout.attempts,
                        e.code,
                        e.message,
                        extra={"order_id": payout.order_id, "payout_id": str(payout.id), "error": e.message},
                    )
                    continue
                except Exception:
                    failed += 1
                    logger.exception(
                        "payout_sweep_attempt_crashed order_id=%s payout_id=%s",
                        payout.order_id,
                        payout.id,
                    )
                    continue

                if outcome.transferred:
                    succeeded += 1
                else:
                    skipped += 1

        summary = _summary(
            ran=True,
            selected=len(candidates),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
        )
        logger.info(
            "payout_sweep_done selected=%s succeeded=%s failed=%s skipped=%s",
            summary["selected"],
            succeeded,
            failed,
            skipped,
        )
        increment_sweep_run("completed")
        return summary
    finally:
        _sweep_lock.release()


def run_forever(*, poll_seconds: Optional[int] = None, batch_size: Optional[int] = None) -> None:
    interval = int(poll_seconds or settings.PAYOUT_SWEEP_INTERVAL_SECONDS)
    logger.info("payout sweep worker started interval=%ss", interval)
    service = build_payout_service()
    while True:
        try:
            process_once(service=service, batch_size=batch_size)
        except Exception:
            # next tick retries
            increment_sweep_run("error")
            logger.exception("payout_sweep_error")
        time.sleep(interval)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_forever()
