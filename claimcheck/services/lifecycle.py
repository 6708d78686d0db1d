from __future__ import annotations

import logging
from dataclasses import dataclass, field

from claimcheck.services.leases import is_recoverable_processing_run
from claimcheck.services.models import InvestigationRecord, InvestigationRunRecord, InvestigationStatus
from claimcheck.services.repository import (
    InvestigationWordLimitError,
    PostgresRepository,
    RepositoryNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InvestigationQueued:
    """Emitted when an investigation ends a coordinator call in the queued state."""

    investigation_id: str
    run_id: str


@dataclass(slots=True)
class EnsureInvestigationResult:
    investigation: InvestigationRecord
    run: InvestigationRunRecord | None
    created: bool
    run_created: bool
    enqueued: bool
    events: list[InvestigationQueued] = field(default_factory=list)

    @property
    def status(self) -> InvestigationStatus:
        return self.investigation.status


async def ensure_investigation_queued(
    repository: PostgresRepository,
    content_version_id: str,
    prompt_id: str,
    *,
    allow_requeue_failed: bool = False,
    enqueue: bool = True,
    parent_investigation_id: str | None = None,
    content_diff: str | None = None,
    reject_over_word_limit: bool = True,
    word_count_limit: int | None = None,
) -> EnsureInvestigationResult:
    """Create or reuse the single investigation and run for a content version.

    Safe to call concurrently for the same content version: creation goes
    through the store's unique keys and every transition is a conditional
    update, so racing callers converge on one investigation and one run.

    Dispatch is not performed here. When ``enqueue`` is set and the final
    status is PENDING, the result carries one ``InvestigationQueued`` event
    for the caller to hand to the dispatcher.
    """
    if reject_over_word_limit and word_count_limit is not None:
        await _check_word_limit(repository, content_version_id, word_count_limit)

    investigation, created = await repository.find_or_create_investigation(
        content_version_id=content_version_id,
        prompt_id=prompt_id,
        parent_investigation_id=parent_investigation_id,
        content_diff=content_diff,
    )
    run: InvestigationRunRecord | None = None
    run_created = False

    if created:
        logger.info("investigation created id=%s content_version_id=%s", investigation.id, content_version_id)
        run, run_created = await repository.find_or_create_run(investigation.id, status=InvestigationStatus.PENDING)

    elif investigation.status is InvestigationStatus.FAILED and allow_requeue_failed:
        requeued = await repository.requeue_failed_investigation(
            investigation.id,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
        )
        if requeued is not None:
            logger.info("failed investigation requeued id=%s", investigation.id)
            investigation = requeued
        else:
            investigation = await _reload(repository, investigation.id)
        run, run_created = await _settle_run(repository, investigation)

    elif investigation.status is InvestigationStatus.PROCESSING:
        run = await repository.get_run_for_investigation(investigation.id)
        if is_recoverable_processing_run(run):
            if await repository.recover_stale_run(investigation.id):
                logger.info("stale investigation recovered id=%s run_id=%s", investigation.id, run.id if run else None)
            investigation = await _reload(repository, investigation.id)
            run, run_created = await _settle_run(repository, investigation)

    else:
        run, run_created = await _settle_run(repository, investigation)

    events: list[InvestigationQueued] = []
    if enqueue and investigation.status is InvestigationStatus.PENDING and run is not None:
        events.append(InvestigationQueued(investigation_id=investigation.id, run_id=run.id))

    return EnsureInvestigationResult(
        investigation=investigation,
        run=run,
        created=created,
        run_created=run_created,
        enqueued=bool(events),
        events=events,
    )


async def _settle_run(
    repository: PostgresRepository,
    investigation: InvestigationRecord,
) -> tuple[InvestigationRunRecord | None, bool]:
    # Only a queued investigation gets a run created on demand.
    if investigation.status is InvestigationStatus.PENDING:
        return await repository.find_or_create_run(investigation.id, status=InvestigationStatus.PENDING)
    return await repository.get_run_for_investigation(investigation.id), False


async def _reload(repository: PostgresRepository, investigation_id: str) -> InvestigationRecord:
    investigation = await repository.get_investigation(investigation_id)
    if investigation is None:
        raise RepositoryNotFoundError("investigation not found")
    return investigation


async def _check_word_limit(repository: PostgresRepository, content_version_id: str, limit: int) -> None:
    content_version = await repository.get_content_version(content_version_id)
    if content_version is None:
        raise RepositoryNotFoundError("content version not found")
    if content_version.word_count <= limit:
        return
    # Already-tracked content stays reachable; only new investigations are refused.
    existing = await repository.find_investigation_by_content_version(content_version_id)
    if existing is None:
        raise InvestigationWordLimitError(content_version.word_count, limit)
