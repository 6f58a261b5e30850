"""
Billing Daemon for the Personal Ledger

Runs the recurring billing scheduler once a day against the configured
database until interrupted.

Usage:
    ledger-billing            # daily at BILLING_RUN_HOUR_UTC
    ledger-billing --once     # one billing run now, then exit
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from src.audit import configure_logging
from src.config import get_settings, validate_all_settings
from src.orchestrator import create_app_components
from src.scheduler import BillingTimer


logger = structlog.get_logger("app.main")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ledger-billing",
        description="Bill due subscriptions into the ledger.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single billing cycle immediately and exit",
    )
    parser.add_argument(
        "--no-sheets",
        action="store_true",
        help="keep audit events in the local log only",
    )
    return parser.parse_args(argv)


async def _run(once: bool, use_storage: bool) -> int:
    settings = get_settings()
    _, _, scheduler = create_app_components(use_storage=use_storage)

    if once:
        report = await scheduler.run_billing_cycle()
        return 1 if report.failed_count else 0

    if not settings.scheduler.enabled:
        logger.warning("billing_disabled")
        return 0

    timer = BillingTimer(scheduler, run_hour_utc=settings.scheduler.run_hour_utc)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, timer.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await timer.run_forever()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(get_settings().app.log_level)

    status = validate_all_settings()
    logger.info("settings_loaded", sections=status)

    return asyncio.run(_run(once=args.once, use_storage=not args.no_sheets))


if __name__ == "__main__":
    sys.exit(main())
