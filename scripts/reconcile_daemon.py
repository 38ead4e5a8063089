# scripts/reconcile_daemon.py
from __future__ import annotations

import logging
import os
import time

from deps.escrow import get_engine
from services.reconcile import run_reconcile


logger = logging.getLogger("reconcile_daemon")


def _interval_seconds() -> int:
    raw = os.getenv("RECONCILE_INTERVAL_SECONDS", "300")
    try:
        value = int(raw)
    except ValueError:
        return 300
    return max(1, value)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    interval = _interval_seconds()
    engine = get_engine()
    logger.info("Reconcile daemon starting; interval=%ss", interval)

    while True:
        try:
            result = run_reconcile(engine)
        except KeyboardInterrupt:
            logger.info("Reconcile daemon exiting")
            raise
        except Exception:
            logger.exception("Reconcile daemon failed")
            raise

        summary = result.get("summary") or {}
        logger.info(
            "Reconcile report %s | projects_checked=%s balance_mismatch=%s chain_broken=%s negative_balance=%s payout_exceeds_entry=%s",
            result.get("id"),
            summary.get("projects_checked"),
            summary.get("balance_mismatch"),
            summary.get("chain_broken"),
            summary.get("negative_balance"),
            summary.get("payout_exceeds_entry"),
        )
        time.sleep(interval)


if __name__ == "__main__":
    main()
