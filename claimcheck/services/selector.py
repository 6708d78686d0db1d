from __future__ import annotations

import logging

from claimcheck.services.dispatch import InvestigationDispatcher
from claimcheck.services.lifecycle import InvestigationQueued
from claimcheck.services.models import InvestigationStatus
from claimcheck.services.repository import PostgresRepository

logger = logging.getLogger(__name__)


async def run_stale_recovery_selector(
    repository: PostgresRepository,
    dispatcher: InvestigationDispatcher,
    *,
    limit: int = 100,
) -> int:
    """Recover stale PROCESSING investigations and re-dispatch PENDING runs that lost their job.

    Safe to run concurrently with itself and with the lifecycle coordinator:
    recovery is a conditional update and dispatch is keyed by run.
    Returns how many jobs were armed.
    """
    armed = 0

    for investigation_id in await repository.list_recoverable_investigation_ids(limit):
        if not await repository.recover_stale_run(investigation_id):
            continue
        investigation = await repository.get_investigation(investigation_id)
        if investigation is None or investigation.status is not InvestigationStatus.PENDING:
            continue
        run, _ = await repository.find_or_create_run(investigation_id, status=InvestigationStatus.PENDING)
        logger.info("stale investigation recovered id=%s run_id=%s", investigation_id, run.id)
        if await dispatcher.dispatch(InvestigationQueued(investigation_id=investigation_id, run_id=run.id)):
            armed += 1

    remaining = max(0, limit - armed)
    if remaining:
        for run_id in await repository.list_undispatched_pending_run_ids(remaining):
            run = await repository.get_run(run_id)
            if run is None:
                continue
            if await dispatcher.dispatch(InvestigationQueued(investigation_id=run.investigation_id, run_id=run.id)):
                armed += 1

    if armed:
        logger.info("stale-run selector armed jobs=%s", armed)
    return armed
