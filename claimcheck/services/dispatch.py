from __future__ import annotations

import logging

from claimcheck.services.lifecycle import InvestigationQueued
from claimcheck.services.repository import PostgresRepository

logger = logging.getLogger(__name__)


class InvestigationDispatcher:
    """Hands queued investigations to the job table the workers poll.

    The table holds one job per run, so dispatching the same event twice
    arms at most one job.
    """

    def __init__(self, repository: PostgresRepository) -> None:
        self.repository = repository

    async def dispatch(self, event: InvestigationQueued) -> bool:
        armed = await self.repository.enqueue_investigation_job(event.run_id)
        if armed:
            logger.info(
                "investigation job armed investigation_id=%s run_id=%s",
                event.investigation_id,
                event.run_id,
            )
        return armed

    async def dispatch_all(self, events: list[InvestigationQueued]) -> int:
        armed = 0
        for event in events:
            if await self.dispatch(event):
                armed += 1
        return armed
