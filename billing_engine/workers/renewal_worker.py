"""Subscription renewal worker.

Usage:
    python -m billing_engine.workers.renewal_worker --once
    python -m billing_engine.workers.renewal_worker --loop

Environment flags:
- PAYMENT_PROCESSOR (stripe | paypal) default stripe
- RENEWAL_LOOP_SECONDS (default 300)
- RENEWAL_LOOKAHEAD_SECONDS (default 3600)
- GRACE_PERIOD_DAYS (default 7)
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Awaitable, Callable

from billing_engine.core.config import settings
from billing_engine.core.database import create_all_tables, init_engine
from billing_engine.core.logging import configure_logging
from billing_engine.core.validation import validate_settings
from billing_engine.features.billing.renewal import RenewalReport
from billing_engine.features.billing.service import SubscriptionLifecycleManager

logger = logging.getLogger("billing_engine.workers.renewal")


async def _process_once(manager: SubscriptionLifecycleManager) -> RenewalReport:
    report = await manager.process_automatic_renewals()
    if report.renewed or report.failed or report.downgraded or report.canceled:
        logger.info(
            f"[renewal-worker] renewed={report.renewed} failed={report.failed} "
            f"downgraded={report.downgraded} canceled={report.canceled} errors={len(report.errors)}"
        )
    return report


async def _run_loop(
    manager: SubscriptionLifecycleManager,
    sleep_seconds: int,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    while True:
        try:
            await _process_once(manager)
        except Exception:
            # Keep the loop alive; the next tick retries the same accounts
            logger.exception("[renewal-worker] renewal pass crashed")
        await sleep(sleep_seconds)


async def _main(once: bool, sleep_seconds: int) -> None:
    manager = SubscriptionLifecycleManager.from_settings(settings)
    try:
        if once:
            report = await _process_once(manager)
            logger.info(f"[renewal-worker] pass complete: {report.to_dict()}")
            return
        await _run_loop(manager, sleep_seconds)
    finally:
        await manager.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Subscription renewal worker")
    parser.add_argument("--once", action="store_true", help="Run a single renewal pass and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.RENEWAL_LOOP_SECONDS,
        help="Seconds to sleep between passes (when --loop)",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV)
    validate_settings()
    init_engine()
    create_all_tables()

    if not args.once:
        logger.info(f"[renewal-worker] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        asyncio.run(_main(args.once, args.sleep))
    except KeyboardInterrupt:
        logger.info("[renewal-worker] Stopped")


if __name__ == "__main__":
    main()
