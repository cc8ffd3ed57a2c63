from __future__ import annotations

import argparse
import logging

from app.workers.payout_worker import process_once


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one payout retry sweep.")
    parser.add_argument("--batch-size", type=int, default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    summary = process_once(batch_size=args.batch_size)

    if not summary["ran"]:
        print("sweep skipped: another sweep is running")
        return
    print(
        "counts:",
        f"selected={summary['selected']}",
        f"succeeded={summary['succeeded']}",
        f"failed={summary['failed']}",
        f"skipped={summary['skipped']}",
    )


if __name__ == "__main__":
    main()
