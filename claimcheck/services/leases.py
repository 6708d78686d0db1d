from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from claimcheck.services.models import InvestigationRunRecord, InvestigationStatus


class RunLeaseState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STALE = "stale"
    PROTECTED = "protected"


@dataclass(slots=True)
class RunTiming:
    queued_at: datetime | None
    started_at: datetime | None
    heartbeat_at: datetime | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_run_lease(run: InvestigationRunRecord, now: datetime | None = None) -> RunLeaseState:
    """Derive the lease state of a run from its nullable lease columns.

    An owned lease without an expiry is treated as stale: nothing will ever
    renew it. An unowned run is protected only while ``recover_after_at`` is
    in the future, which is how a worker's own retry backoff is told apart
    from a crashed worker.
    """
    now = now or utcnow()
    if run.lease_owner is not None:
        if run.lease_expires_at is None or run.lease_expires_at <= now:
            return RunLeaseState.STALE
        return RunLeaseState.ACTIVE
    if run.recover_after_at is not None and run.recover_after_at > now:
        return RunLeaseState.PROTECTED
    return RunLeaseState.IDLE


def is_recoverable_processing_run(run: InvestigationRunRecord | None, now: datetime | None = None) -> bool:
    if run is None:
        return True
    return classify_run_lease(run, now) in {RunLeaseState.STALE, RunLeaseState.IDLE}


def run_timing_for_status(status: InvestigationStatus, now: datetime | None = None) -> RunTiming:
    """Timestamps a newly created run starts with, given its investigation's status."""
    now = now or utcnow()
    return RunTiming(
        queued_at=now if status is InvestigationStatus.PENDING else None,
        started_at=now if status is InvestigationStatus.PROCESSING else None,
        heartbeat_at=now if status is InvestigationStatus.PROCESSING else None,
    )
