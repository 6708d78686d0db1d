from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from opentelemetry import trace

from claimcheck.core.config import Settings, get_settings
from claimcheck.services.investigator import (
    AnalysisError,
    InvestigationRequest,
    Investigator,
    UpdateContext,
)
from claimcheck.services.key_source import KeySourceError, resolve_run_credential
from claimcheck.services.models import RunClaimOutcome
from claimcheck.services.repository import PostgresRepository

tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class AttemptContext:
    attempt_number: int
    is_last_attempt: bool
    worker_identity: str


class OrchestrationOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DISCARDED = "discarded"
    LEASE_HELD = "lease_held"
    TERMINAL = "terminal"
    MISSING = "missing"


_SKIPPED_CLAIMS = {
    RunClaimOutcome.LEASE_HELD: OrchestrationOutcome.LEASE_HELD,
    RunClaimOutcome.TERMINAL: OrchestrationOutcome.TERMINAL,
    RunClaimOutcome.MISSING: OrchestrationOutcome.MISSING,
}


async def orchestrate_investigation(
    run_id: str,
    logger: logging.Logger | logging.LoggerAdapter,
    attempt: AttemptContext,
    *,
    repository: PostgresRepository,
    investigator: Investigator,
    settings: Settings | None = None,
) -> OrchestrationOutcome:
    """Run one analysis attempt for a run.

    Retryable failures on a non-final attempt are re-raised after the lease is
    released so the job queue schedules the next attempt. Every other outcome
    is returned.
    """
    settings = settings or get_settings()
    with tracer.start_as_current_span("orchestrator.investigate") as span:
        span.set_attribute("investigation.run_id", run_id)
        span.set_attribute("investigation.attempt", attempt.attempt_number)

        claim = await repository.try_claim_run_lease(
            run_id,
            worker_identity=attempt.worker_identity,
            lease_seconds=settings.run_lease_seconds,
        )
        if claim is not RunClaimOutcome.CLAIMED:
            logger.info("investigation run skipped run_id=%s reason=%s", run_id, claim.value)
            return _SKIPPED_CLAIMS[claim]

        started_at = datetime.now(timezone.utc)
        context = await repository.load_run_context(run_id)
        if context is None:
            logger.info("investigation run vanished after claim run_id=%s", run_id)
            return OrchestrationOutcome.MISSING
        span.set_attribute("investigation.id", context.investigation.id)

        heartbeat = asyncio.create_task(
            _heartbeat_loop(
                repository,
                run_id,
                attempt.worker_identity,
                interval_seconds=settings.run_heartbeat_interval_seconds,
                lease_seconds=settings.run_lease_seconds,
                logger=logger,
            )
        )
        try:
            credential = await resolve_run_credential(
                repository,
                run_id,
                key_material=settings.database_encryption_key,
                key_id=settings.database_encryption_key_id,
            )
            update = None
            if context.investigation.parent_investigation_id is not None:
                update = UpdateContext(
                    old_claims=context.parent_claims,
                    content_diff=context.investigation.content_diff or "",
                )
            output = await investigator.investigate(
                InvestigationRequest(content_text=context.content_text, update=update, credential=credential)
            )
        except Exception as exc:
            outcome = await _record_failure(
                repository,
                run_id,
                attempt,
                exc,
                started_at=started_at,
                recover_after_seconds=settings.run_recovery_grace_seconds,
                logger=logger,
            )
            if outcome is None:
                raise
            return outcome
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

        completed = await repository.complete_investigation(
            run_id,
            worker_identity=attempt.worker_identity,
            attempt_number=attempt.attempt_number,
            started_at=started_at,
            claims=output.claims,
            metadata=output.metadata,
        )
        if not completed:
            logger.info("investigation result discarded; run no longer held by this worker run_id=%s", run_id)
            return OrchestrationOutcome.DISCARDED

        logger.info(
            "investigation completed id=%s run_id=%s claims=%s",
            context.investigation.id,
            run_id,
            len(output.claims),
        )
        return OrchestrationOutcome.COMPLETED


def is_terminal_error(exc: BaseException) -> bool:
    if isinstance(exc, KeySourceError):
        return True
    if isinstance(exc, AnalysisError):
        return not exc.retryable
    return False


async def _record_failure(
    repository: PostgresRepository,
    run_id: str,
    attempt: AttemptContext,
    exc: Exception,
    *,
    started_at: datetime,
    recover_after_seconds: int,
    logger: logging.Logger | logging.LoggerAdapter,
) -> OrchestrationOutcome | None:
    """Record a failed attempt. Returns None when the caller should re-raise for a retry."""
    terminal = is_terminal_error(exc)
    mark_failed = terminal or attempt.is_last_attempt
    recorded = await repository.record_failed_attempt(
        run_id,
        worker_identity=attempt.worker_identity,
        attempt_number=attempt.attempt_number,
        started_at=started_at,
        error_name=type(exc).__name__,
        error_message=str(exc)[:2000],
        status_code=getattr(exc, "status_code", None),
        mark_failed=mark_failed,
        recover_after_seconds=recover_after_seconds,
    )
    if not recorded:
        logger.info("stale attempt failure discarded run_id=%s error=%s", run_id, type(exc).__name__)
        return OrchestrationOutcome.DISCARDED

    if mark_failed:
        logger.error(
            "investigation failed run_id=%s attempt=%s terminal=%s error=%s",
            run_id,
            attempt.attempt_number,
            terminal,
            exc,
        )
        return OrchestrationOutcome.FAILED

    logger.warning(
        "investigation attempt failed run_id=%s attempt=%s; retry scheduled: %s",
        run_id,
        attempt.attempt_number,
        exc,
    )
    return None


async def _heartbeat_loop(
    repository: PostgresRepository,
    run_id: str,
    worker_identity: str,
    *,
    interval_seconds: float,
    lease_seconds: int,
    logger: logging.Logger | logging.LoggerAdapter,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            renewed = await repository.heartbeat_run_lease(
                run_id,
                worker_identity=worker_identity,
                lease_seconds=lease_seconds,
            )
        except Exception as exc:
            logger.warning("lease heartbeat failed run_id=%s: %s", run_id, exc)
            continue
        if not renewed:
            logger.info("lease no longer held; heartbeat stopped run_id=%s", run_id)
            return
