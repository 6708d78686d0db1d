from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from claimcheck.core.config import Settings, get_settings
from claimcheck.core.telemetry import configure_logging, start_telemetry, stop_telemetry
from claimcheck.services.dispatch import InvestigationDispatcher
from claimcheck.services.investigator import HttpInvestigator, Investigator
from claimcheck.services.orchestrator import AttemptContext, OrchestrationOutcome, orchestrate_investigation
from claimcheck.services.repository import (
    InvestigationJobRecord,
    PostgresRepository,
    RepositoryConflictError,
    get_repository,
)
from claimcheck.services.selector import run_stale_recovery_selector

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def attempt_context_for_job(job: InvestigationJobRecord, worker_id: str) -> AttemptContext:
    return AttemptContext(
        attempt_number=job.attempt,
        is_last_attempt=job.attempt >= job.max_attempts,
        worker_identity=f"{worker_id}:job-{job.id}",
    )


def build_investigator(settings: Settings) -> Investigator:
    if not settings.investigator_url:
        raise RuntimeError("CC_INVESTIGATOR_URL is required to run the worker")
    return HttpInvestigator(settings.investigator_url, timeout_seconds=settings.investigator_timeout_seconds)


async def process_job(
    job: InvestigationJobRecord,
    *,
    repository: PostgresRepository,
    investigator: Investigator,
    settings: Settings,
) -> OrchestrationOutcome | None:
    """Run one claimed job and settle it in the queue. Returns None when the job was rescheduled or failed."""
    attempt = attempt_context_for_job(job, settings.worker_id)
    try:
        outcome = await orchestrate_investigation(
            job.run_id,
            logger,
            attempt,
            repository=repository,
            investigator=investigator,
            settings=settings,
        )
    except Exception as exc:
        try:
            resolved_status = await repository.fail_investigation_job(
                job.id,
                worker_id=settings.worker_id,
                error={"error": type(exc).__name__, "message": str(exc)[:2000], "attempt": job.attempt},
            )
        except RepositoryConflictError:
            logger.info("investigation job re-armed elsewhere; failure not settled id=%s run_id=%s", job.id, job.run_id)
            return None
        logger.warning(
            "investigation job failed id=%s run_id=%s attempt=%s resolved_status=%s",
            job.id,
            job.run_id,
            job.attempt,
            resolved_status,
        )
        return None

    try:
        await repository.complete_investigation_job(job.id, worker_id=settings.worker_id)
    except RepositoryConflictError:
        # Recovery re-armed the job after this worker lost the run lease.
        logger.info("investigation job re-armed elsewhere; completion not settled id=%s run_id=%s", job.id, job.run_id)
    return outcome


async def run_maintenance(repository: PostgresRepository, settings: Settings) -> None:
    requeued = await repository.requeue_expired_investigation_jobs(limit=settings.selector_budget)
    if requeued:
        logger.info("requeued expired job claims: %s", requeued)

    await run_stale_recovery_selector(
        repository,
        InvestigationDispatcher(repository),
        limit=settings.selector_budget,
    )

    purged = await repository.delete_expired_key_sources(limit=settings.selector_budget)
    if purged:
        logger.info("purged expired key sources: %s", purged)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = start_telemetry(settings, "worker")
    repository = get_repository()
    investigator = build_investigator(settings)

    backoff = settings.poll_interval_seconds
    last_maintenance_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_maintenance_at >= settings.selector_interval_seconds:
                        await run_maintenance(repository, settings)
                        last_maintenance_at = now

                    jobs = await repository.claim_due_investigation_jobs(
                        worker_id=settings.worker_id,
                        limit=settings.worker_batch_size,
                        lease_seconds=settings.job_claim_lease_seconds,
                    )
                    if not jobs:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    for job in jobs:
                        with tracer.start_as_current_span("worker.process_job") as job_span:
                            job_span.set_attribute("job.id", job.id)
                            job_span.set_attribute("job.run_id", job.run_id)
                            job_span.set_attribute("job.attempt", job.attempt)
                            outcome = await process_job(
                                job,
                                repository=repository,
                                investigator=investigator,
                                settings=settings,
                            )
                            if outcome is not None:
                                job_span.set_attribute("job.outcome", outcome.value)

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - runtime robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        stop_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
