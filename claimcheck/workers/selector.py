"""Run the stale-run selector once, e.g. from cron."""

from __future__ import annotations

import argparse
import asyncio
import logging

from claimcheck.core.config import get_settings
from claimcheck.core.telemetry import configure_logging, start_telemetry, stop_telemetry
from claimcheck.services.dispatch import InvestigationDispatcher
from claimcheck.services.repository import get_repository
from claimcheck.services.selector import run_stale_recovery_selector

logger = logging.getLogger(__name__)


async def run_once(limit: int) -> int:
    settings = get_settings()
    telemetry_runtime = start_telemetry(settings, "selector")
    repository = get_repository()
    try:
        return await run_stale_recovery_selector(repository, InvestigationDispatcher(repository), limit=limit)
    finally:
        await repository.close()
        stop_telemetry(telemetry_runtime)


def main() -> None:
    parser = argparse.ArgumentParser(description="Recover stale investigations and re-dispatch them.")
    parser.add_argument("--limit", type=int, default=get_settings().selector_budget)
    args = parser.parse_args()

    configure_logging()
    armed = asyncio.run(run_once(args.limit))
    logger.info("selector finished armed=%s", armed)


if __name__ == "__main__":
    main()
